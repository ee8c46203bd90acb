from functools import lru_cache
import logging
import os


logger = logging.getLogger(__name__)


class Settings:
    def __init__(self) -> None:
        self.app_name = os.getenv("APP_NAME", "formatic-webhook-engine")
        self.app_version = os.getenv("APP_VERSION", "0.1.0")
        self.version_hash = os.getenv("VERSION_HASH", os.getenv("GIT_SHA", "unknown"))
        self.env = os.getenv("ENV", "dev").lower()
        if self.env not in {"dev", "test", "staging", "prod"}:
            raise RuntimeError("ENV must be one of: dev, test, staging, prod")
        self.log_level = os.getenv("LOG_LEVEL", "DEBUG" if self.env in {"dev", "test"} else "INFO").upper().strip()

        self.database_url = os.getenv("DATABASE_URL")
        if not self.database_url:
            if self.env == "prod":
                raise RuntimeError("DATABASE_URL is required in prod")
            self.database_url = "sqlite:///./formatic_webhooks.sqlite3"
            logger.warning("DATABASE_URL not set, using local sqlite default")

        self.webhook_signing_secret = os.getenv("WEBHOOK_SIGNING_SECRET")
        if not self.webhook_signing_secret:
            if self.env == "prod":
                raise RuntimeError("WEBHOOK_SIGNING_SECRET is required in prod")
            self.webhook_signing_secret = "dev-webhook-signing-secret-change-me"
            logger.warning("WEBHOOK_SIGNING_SECRET not set, using insecure dev fallback")

        self.admin_api_key = os.getenv("ADMIN_API_KEY")
        if not self.admin_api_key:
            if self.env == "prod":
                raise RuntimeError("ADMIN_API_KEY is required in prod")
            self.admin_api_key = "dev-admin-key-change-me"
            logger.warning("ADMIN_API_KEY not set, using insecure dev fallback")

        self.webhook_worker_enabled = os.getenv("WEBHOOK_WORKER_ENABLED", "false").lower() == "true"
        self.webhook_worker_pool_size = int(os.getenv("WEBHOOK_WORKER_POOL_SIZE", "8"))
        self.webhook_sweep_interval_seconds = int(os.getenv("WEBHOOK_SWEEP_INTERVAL_SECONDS", "10"))
        self.webhook_request_timeout_seconds = int(os.getenv("WEBHOOK_REQUEST_TIMEOUT_SECONDS", "10"))
        self.webhook_response_body_limit = int(os.getenv("WEBHOOK_RESPONSE_BODY_LIMIT", "4096"))
        self.webhook_default_max_attempts = int(os.getenv("WEBHOOK_DEFAULT_MAX_ATTEMPTS", "3"))
        self.webhook_max_attempts_ceiling = int(os.getenv("WEBHOOK_MAX_ATTEMPTS_CEILING", "10"))
        self.webhook_default_retry_interval_seconds = int(os.getenv("WEBHOOK_DEFAULT_RETRY_INTERVAL_SECONDS", "60"))
        self.webhook_min_retry_interval_seconds = int(os.getenv("WEBHOOK_MIN_RETRY_INTERVAL_SECONDS", "30"))
        self.webhook_stale_claim_seconds = int(os.getenv("WEBHOOK_STALE_CLAIM_SECONDS", "300"))
        self.webhook_pending_grace_seconds = int(os.getenv("WEBHOOK_PENDING_GRACE_SECONDS", "60"))
        self.webhook_allow_private_urls = (
            os.getenv("WEBHOOK_ALLOW_PRIVATE_URLS", "false" if self.env == "prod" else "true").lower() == "true"
        )

        self.db_pool_size = int(os.getenv("DB_POOL_SIZE", "5"))
        self.db_max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "10"))
        self.db_pool_timeout = int(os.getenv("DB_POOL_TIMEOUT", "30"))
        self.db_pool_recycle = int(os.getenv("DB_POOL_RECYCLE", "1800"))

        self.expected_alembic_head = os.getenv("EXPECTED_ALEMBIC_HEAD", "")
        self.auto_create_schema = os.getenv("AUTO_CREATE_SCHEMA", "false").lower() == "true"
        self.cors_allowed_origins = self._parse_cors_origins()
        self.validate()

    def _parse_cors_origins(self) -> list[str]:
        raw = os.getenv("CORS_ALLOWED_ORIGINS", "")
        if raw.strip():
            return [origin.strip() for origin in raw.split(",") if origin.strip()]
        if self.env == "dev":
            return ["http://localhost:3000", "http://127.0.0.1:3000"]
        return []

    def validate(self) -> None:
        if self.webhook_worker_pool_size <= 0:
            raise RuntimeError("WEBHOOK_WORKER_POOL_SIZE must be > 0")
        if self.webhook_request_timeout_seconds <= 0:
            raise RuntimeError("WEBHOOK_REQUEST_TIMEOUT_SECONDS must be > 0")
        if self.webhook_stale_claim_seconds <= 2 * self.webhook_request_timeout_seconds:
            raise RuntimeError("WEBHOOK_STALE_CLAIM_SECONDS must exceed twice WEBHOOK_REQUEST_TIMEOUT_SECONDS")
        if not 1 <= self.webhook_default_max_attempts <= self.webhook_max_attempts_ceiling:
            raise RuntimeError("WEBHOOK_DEFAULT_MAX_ATTEMPTS must be between 1 and WEBHOOK_MAX_ATTEMPTS_CEILING")
        # A due retry may sit unseen for up to one sweep interval.
        if self.webhook_min_retry_interval_seconds <= self.webhook_sweep_interval_seconds:
            raise RuntimeError("WEBHOOK_MIN_RETRY_INTERVAL_SECONDS must exceed WEBHOOK_SWEEP_INTERVAL_SECONDS")
        if self.webhook_default_retry_interval_seconds < self.webhook_min_retry_interval_seconds:
            raise RuntimeError("WEBHOOK_DEFAULT_RETRY_INTERVAL_SECONDS is below WEBHOOK_MIN_RETRY_INTERVAL_SECONDS")
        if self.env == "prod":
            if not self.cors_allowed_origins:
                raise RuntimeError("CORS_ALLOWED_ORIGINS must be explicitly set in prod")
            if self.auto_create_schema:
                raise RuntimeError("AUTO_CREATE_SCHEMA must be false in prod")
            if self.log_level == "DEBUG":
                raise RuntimeError("LOG_LEVEL=DEBUG is not allowed in prod")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def reset_settings_cache() -> None:
    get_settings.cache_clear()
