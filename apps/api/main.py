import json
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from alembic.config import Config as AlembicConfig
from alembic.script import ScriptDirectory
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from core.clock import SYSTEM_CLOCK
from core.config import get_settings
from core.contracts import ErrorCode, error_body
from core.db import Base, SessionLocal, engine
from core.errors import WebhookEngineError
from core.failure_modes import failure_policy
from core.logging_utils import configure_logging, log_request, log_structured, monotonic_ms, request_id_from_request
from core.observability import unexpected_exception_metric
from core.scheduler import DeliveryScheduler
from core.webhook_worker import start_webhook_worker, stop_webhook_worker
from models import webhook  # noqa: F401  ensure models are imported so tables are registered
from routers.admin import router as admin_router
from routers.events import router as events_router
from routers.health import router as health_router
from routers.webhooks import router as webhooks_router

settings = get_settings()
configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Formatic Webhook Engine",
    description=(
        "Client routes take the authenticated account in `X-Account-Id` (set by the auth gateway). "
        "Admin and event-source routes use `X-Admin-Api-Key`, with the acting admin in `X-Actor-Id`."
    ),
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    openapi_tags=[
        {"name": "webhooks", "description": "Webhook registration and delivery audit."},
        {"name": "admin", "description": "Admin-only approval, lock and deactivation controls."},
        {"name": "events", "description": "Domain event intake from the form subsystem."},
        {"name": "health", "description": "Operational liveness and diagnostics."},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Account-Id", "X-Actor-Id", "X-Admin-Api-Key", "X-Request-Id"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request_id_from_request(request)
    request.state.request_id = request_id
    started = monotonic_ms()
    response = await call_next(request)
    skip_auto_envelope = request.url.path in {"/health", "/live", "/ready", "/version", "/metrics"}
    if (
        not skip_auto_envelope
        and response.status_code < 400
        and response.headers.get("content-type", "").startswith("application/json")
    ):
        body = b""
        async for chunk in response.body_iterator:
            body += chunk
        try:
            decoded = json.loads(body.decode("utf-8")) if body else None
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, dict) and ("data" in decoded or "error" in decoded):
            wrapped = decoded
        else:
            wrapped = {"data": decoded}
        response = JSONResponse(content=wrapped, status_code=response.status_code)
    response.headers["X-Request-Id"] = request_id
    elapsed = monotonic_ms() - started
    log_request(request_id, request.method, request.url.path, response.status_code, elapsed)
    return response


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _map_http_error_code(status_code: int) -> ErrorCode:
    if status_code == 404:
        return ErrorCode.NOT_FOUND
    if status_code == 403:
        return ErrorCode.FORBIDDEN
    if status_code == 401:
        return ErrorCode.AUTH_INVALID
    if status_code == 422:
        return ErrorCode.VALIDATION_ERROR
    return ErrorCode.INTERNAL_ERROR


@app.exception_handler(WebhookEngineError)
async def engine_exception_handler(request: Request, exc: WebhookEngineError):
    log_structured(
        "request.rejected",
        request_id=_request_id(request),
        path=request.url.path,
        status_code=exc.status_code,
        error_class=exc.__class__.__name__,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.code, exc.message, _request_id(request)),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    message = "Request could not be processed"
    if exc.status_code in {401, 403, 404, 409, 422}:
        message = str(exc.detail) if isinstance(exc.detail, str) else message
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(_map_http_error_code(exc.status_code), message, _request_id(request)),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content=error_body(
            ErrorCode.VALIDATION_ERROR,
            "Request validation failed",
            _request_id(request),
        ),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    policy = failure_policy(exc)
    unexpected_exception_metric(exc.__class__.__name__)
    log_structured(
        "request.failed",
        level=logging.ERROR,
        request_id=_request_id(request),
        path=request.url.path,
        error_class=exc.__class__.__name__,
        failure_class=policy.failure_class.value,
    )
    return JSONResponse(
        status_code=policy.http_status,
        content=error_body(
            ErrorCode.INTERNAL_ERROR,
            "Internal server error",
            _request_id(request),
        ),
    )


app.include_router(health_router)


@app.get("/")
def root():
    return {"status": "Formatic webhook engine running"}


app.include_router(webhooks_router)
app.include_router(admin_router)
app.include_router(events_router)


def _current_alembic_heads() -> str:
    ini_path = Path(__file__).resolve().parent / "alembic.ini"
    alembic_cfg = AlembicConfig(str(ini_path))
    script = ScriptDirectory.from_config(alembic_cfg)
    return ",".join(sorted(script.get_heads()))


@app.on_event("startup")
async def on_startup() -> None:
    migration_heads = _current_alembic_heads()
    logger.info(
        "startup env=%s version_hash=%s migration_head=%s",
        settings.env,
        settings.version_hash,
        migration_heads,
    )
    if settings.env == "prod" and not settings.expected_alembic_head:
        logger.warning("EXPECTED_ALEMBIC_HEAD is not set; skipping migration-head enforcement")
    if settings.env != "prod" and settings.auto_create_schema:
        Base.metadata.create_all(bind=engine)

    connectivity_session = SessionLocal()
    try:
        connectivity_session.execute(text("SELECT 1"))
    except Exception as exc:
        raise RuntimeError("database connectivity check failed") from exc
    finally:
        connectivity_session.close()

    app.state.clock = SYSTEM_CLOCK
    app.state.delivery_scheduler = DeliveryScheduler(
        SessionLocal,
        clock=SYSTEM_CLOCK,
        executor=ThreadPoolExecutor(
            max_workers=settings.webhook_worker_pool_size,
            thread_name_prefix="webhook-delivery",
        ),
        settings=settings,
    )
    start_webhook_worker(app)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await stop_webhook_worker(app)
    scheduler = getattr(app.state, "delivery_scheduler", None)
    if scheduler is not None:
        scheduler.shutdown(wait=True)
        app.state.delivery_scheduler = None
