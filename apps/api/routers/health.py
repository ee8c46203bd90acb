from pathlib import Path

from alembic.config import Config as AlembicConfig
from alembic.script import ScriptDirectory
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from core.config import get_settings
from core.db import engine
from core.observability import COUNTERS

router = APIRouter(tags=["health"])
settings = get_settings()


def _current_alembic_heads() -> str:
    ini_path = Path(__file__).resolve().parent.parent / "alembic.ini"
    alembic_cfg = AlembicConfig(str(ini_path))
    script = ScriptDirectory.from_config(alembic_cfg)
    return ",".join(sorted(script.get_heads()))


@router.get("/health")
def health():
    # Backward-compatible liveness alias.
    return {"status": "ok"}


@router.get("/live")
def live():
    return {"status": "ok"}


@router.get("/ready")
def ready(request: Request):
    checks: dict[str, str] = {}

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        checks["db"] = "ok"
    except Exception:
        checks["db"] = "failed"

    expected_head = settings.expected_alembic_head.strip()
    if expected_head:
        try:
            checks["migration_head"] = "ok" if _current_alembic_heads() == expected_head else "failed"
        except Exception:
            checks["migration_head"] = "failed"
    else:
        checks["migration_head"] = "skipped"

    state = getattr(request.app, "state", object())
    checks["delivery_scheduler"] = "ok" if getattr(state, "delivery_scheduler", None) is not None else "failed"

    worker_task = getattr(state, "webhook_worker_task", None)
    if settings.webhook_worker_enabled:
        checks["webhook_worker"] = "ok" if (worker_task is not None and not worker_task.done()) else "failed"
    else:
        checks["webhook_worker"] = "skipped"

    failed_checks = [name for name, result in checks.items() if result == "failed"]
    if failed_checks:
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}


@router.get("/version")
def version():
    return {"name": settings.app_name, "version": settings.app_version, "version_hash": settings.version_hash}


@router.get("/metrics")
def metrics():
    return {"counters": COUNTERS.snapshot()}
