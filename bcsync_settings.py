from __future__ import annotations

import os

from dotenv import load_dotenv
from pydantic import BaseModel

from bcsync_models import RetryPolicy

# Load .env at import so env vars are available early
load_dotenv()

DEFAULT_SCOPE = "https://api.businesscentral.dynamics.com/.default"
DEFAULT_STALE_ETAG_MARKER = "Request_EntityChanged"


class RawSettings(BaseModel):
    # Endpoints
    API_BASE: str | None = None
    TOKEN_URL: str | None = None

    # OAuth client
    CLIENT_ID: str | None = None
    CLIENT_SECRET: str | None = None
    SCOPE: str = DEFAULT_SCOPE

    # Optional / tuning
    CONFIG_PATH: str = "bcsync.config.json"
    HTTP_TIMEOUT: int = 30
    MAX_RETRIES: int = 5
    BACKOFF_SECONDS: float = 1.0
    MAX_STALE_ATTEMPTS: int = 5
    STALE_ETAG_MARKER: str = DEFAULT_STALE_ETAG_MARKER


class SettingsStrict(BaseModel):
    API_BASE: str
    TOKEN_URL: str
    CLIENT_ID: str
    CLIENT_SECRET: str
    SCOPE: str = DEFAULT_SCOPE

    CONFIG_PATH: str = "bcsync.config.json"
    HTTP_TIMEOUT: int = 30
    MAX_RETRIES: int = 5
    BACKOFF_SECONDS: float = 1.0
    MAX_STALE_ATTEMPTS: int = 5
    STALE_ETAG_MARKER: str = DEFAULT_STALE_ETAG_MARKER

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.MAX_RETRIES,
            backoff_seconds=self.BACKOFF_SECONDS,
            max_stale_attempts=self.MAX_STALE_ATTEMPTS,
            stale_etag_marker=self.STALE_ETAG_MARKER,
        )


_cache: RawSettings | None = None


def _read_env_dict() -> dict:
    return {
        # Endpoints
        "API_BASE": os.getenv("BC_API_BASE"),
        "TOKEN_URL": os.getenv("BC_TOKEN_URL"),
        # OAuth
        "CLIENT_ID": os.getenv("BC_CLIENT_ID"),
        "CLIENT_SECRET": os.getenv("BC_CLIENT_SECRET"),
        "SCOPE": os.getenv("BC_SCOPE") or DEFAULT_SCOPE,
        # Config + tuning
        "CONFIG_PATH": os.getenv("BCSYNC_CONFIG", "bcsync.config.json"),
        "HTTP_TIMEOUT": int(os.getenv("BC_HTTP_TIMEOUT", "30")),
        "MAX_RETRIES": int(os.getenv("BC_MAX_RETRIES", "5")),
        "BACKOFF_SECONDS": float(os.getenv("BC_BACKOFF_SECONDS", "1.0")),
        "MAX_STALE_ATTEMPTS": int(os.getenv("BC_MAX_STALE_ATTEMPTS", "5")),
        "STALE_ETAG_MARKER": os.getenv("BC_STALE_ETAG_MARKER") or DEFAULT_STALE_ETAG_MARKER,
    }


def get_settings() -> RawSettings:
    global _cache
    if _cache is None:
        _cache = RawSettings(**_read_env_dict())
    return _cache


def require_settings() -> SettingsStrict:
    """Return validated settings; raises ValidationError if any required are missing."""
    data = _read_env_dict()
    return SettingsStrict(**data)


def missing_required_keys() -> list[str]:
    """Return list of missing required env keys for user-friendly errors."""
    required = [
        "BC_API_BASE",
        "BC_TOKEN_URL",
        "BC_CLIENT_ID",
        "BC_CLIENT_SECRET",
    ]
    return [k for k in required if os.getenv(k) in (None, "")]
