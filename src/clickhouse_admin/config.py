import os
from datetime import timedelta

from pydantic import BaseModel


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    service_name: str = "clickhouse-admin"
    environment: str = os.getenv("APP_ENV", "dev")

    # Bearer token verification
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-only-secret")
    jwt_issuer: str = os.getenv("JWT_ISSUER", "clickhouse-admin")
    jwt_audience: str = os.getenv("JWT_AUDIENCE", "clickhouse-admin-api")
    access_token_ttl_minutes: int = int(os.getenv("ACCESS_TOKEN_TTL_MINUTES", "15"))

    # Connection credentials at rest (Fernet key, urlsafe base64)
    encryption_key: str = os.getenv("RBAC_ENCRYPTION_KEY", "")

    # Engine sessions and clients
    session_max_age_seconds: int = int(os.getenv("SESSION_MAX_AGE_SECONDS", "3600"))
    engine_request_timeout_seconds: float = float(os.getenv("ENGINE_REQUEST_TIMEOUT_SECONDS", "300"))
    engine_ping_on_resolve: bool = _env_bool("ENGINE_PING_ON_RESOLVE", "false")

    # Historical attribution
    audit_lookback_hours: int = int(os.getenv("AUDIT_LOOKBACK_HOURS", "48"))
    audit_fetch_limit: int = int(os.getenv("AUDIT_FETCH_LIMIT", "5000"))
    correlation_window_seconds: int = 60
    correlation_bucket_seconds: int = 5

    # Display-name fan-out
    name_resolution_workers: int = int(os.getenv("NAME_RESOLUTION_WORKERS", "8"))

    @property
    def audit_lookback(self) -> timedelta:
        """How far back audit events are fetched for historical attribution."""
        return timedelta(hours=self.audit_lookback_hours)


settings = Settings()
