# mapbackend/config/settings.py
from __future__ import annotations

from functools import lru_cache
from typing import List

from dotenv import find_dotenv, load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env from repo root even when uvicorn cwd varies.
# We don't override existing env so container/CI secrets still win.
load_dotenv(find_dotenv(usecwd=True), override=False)

# attribute -> env var, checked by require_complete()
_REQUIRED = {
    "supabase_url": "SUPABASE_URL",
    "supabase_anon_key": "SUPABASE_ANON_KEY",
    "supabase_service_role_key": "SUPABASE_SERVICE_ROLE_KEY",
    "jwt_secret": "JWT_SECRET",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    version: str = Field(default="0.3.0", alias="APP_VERSION")

    # Store + signing secrets (required, no insecure defaults)
    supabase_url: str = Field(default="", alias="SUPABASE_URL")
    supabase_anon_key: str = Field(default="", alias="SUPABASE_ANON_KEY")
    supabase_service_role_key: str = Field(default="", alias="SUPABASE_SERVICE_ROLE_KEY")
    jwt_secret: str = Field(default="", alias="JWT_SECRET")
    jwt_expires_hours: int = Field(default=24, alias="JWT_EXPIRES_HOURS")

    # Rate limiting (fixed windows)
    rate_limit_window_seconds: int = Field(default=60, alias="RATE_LIMIT_WINDOW_SECONDS")
    api_rate_limit: int = Field(default=100, alias="API_RATE_LIMIT")
    login_rate_limit: int = Field(default=5, alias="LOGIN_RATE_LIMIT")
    control_rate_limit: int = Field(default=10, alias="CONTROL_RATE_LIMIT")
    trust_proxy_headers: bool = Field(default=True, alias="TRUST_PROXY_HEADERS")

    # App control plane
    app_control_enabled: bool = Field(default=True, alias="APP_CONTROL_ENABLED")
    app_status_cache_seconds: float = Field(default=10.0, alias="APP_STATUS_CACHE_SECONDS")
    app_status_stream_interval: float = Field(default=10.0, alias="APP_STATUS_STREAM_INTERVAL")

    cors_allow_origins_raw: str = Field(default="*", alias="CORS_ALLOW_ORIGINS")
    log_json: bool = Field(default=False, alias="LOG_JSON")
    log_requests: bool = Field(default=True, alias="LOG_REQUESTS")

    @property
    def cors_allow_origins(self) -> List[str]:
        return [o.strip() for o in self.cors_allow_origins_raw.split(",") if o.strip()]

    def require_complete(self) -> "Settings":
        """Raise RuntimeError naming every missing required variable."""
        missing = [env for attr, env in _REQUIRED.items() if not getattr(self, attr)]
        if missing:
            raise RuntimeError(
                "Missing required configuration: "
                + ", ".join(missing)
                + ". Set them in the environment or .env at the repo root."
            )
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings().require_complete()
