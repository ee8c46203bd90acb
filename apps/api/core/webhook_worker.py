import asyncio
import signal

from core.config import get_settings
from core.logging_utils import log_structured
from core.observability import unexpected_exception_metric

_worker_lock = asyncio.Lock()
_stop_event: asyncio.Event | None = None


async def _worker_loop(app) -> None:
    global _stop_event
    if _stop_event is None:
        _stop_event = asyncio.Event()
    interval = get_settings().webhook_sweep_interval_seconds
    try:
        while not _stop_event.is_set():
            scheduler = getattr(app.state, "delivery_scheduler", None)
            if scheduler is not None:
                try:
                    await asyncio.to_thread(scheduler.run_due)
                except Exception as exc:
                    # A failed sweep must not end the loop; due rows are picked up next cycle.
                    unexpected_exception_metric(exc.__class__.__name__)
                    log_structured("worker.sweep_failed", error_class=exc.__class__.__name__)
            try:
                await asyncio.wait_for(_stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
    except asyncio.CancelledError:
        return


def start_webhook_worker(app) -> None:
    global _stop_event
    if not get_settings().webhook_worker_enabled:
        return
    existing_task = getattr(app.state, "webhook_worker_task", None)
    if existing_task is not None and not existing_task.done():
        return
    # Fresh event per start: an Event stays bound to the loop it was first awaited on.
    _stop_event = asyncio.Event()
    app.state.webhook_worker_task = asyncio.create_task(_worker_loop(app))
    log_structured("worker.started")

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _stop_event.set)
    except (NotImplementedError, RuntimeError):
        # Signal handlers may be unavailable on some platforms/event loops.
        pass


async def stop_webhook_worker(app) -> None:
    global _stop_event
    task = getattr(app.state, "webhook_worker_task", None)
    if _stop_event is not None:
        _stop_event.set()
    if not task:
        return

    async with _worker_lock:
        task = getattr(app.state, "webhook_worker_task", None)
        if not task:
            return
        task.cancel()
        try:
            await asyncio.wait_for(task, timeout=5)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            pass
        app.state.webhook_worker_task = None
        log_structured("worker.stopped")
