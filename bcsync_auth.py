from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import Any, Protocol, cast

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from bcsync_settings import SettingsStrict

logger = structlog.get_logger()


class AuthError(RuntimeError):
    pass


class CredentialProvider(Protocol):
    async def get_token(self) -> str: ...

    async def refresh(self, stale: str | None = None) -> str: ...


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: float


TokenSource = Callable[[], Awaitable[AccessToken]]


class TokenCache:
    """Single-flight bearer token cache shared by every caller of one client.

    Acquisition is serialized with a lock. ``refresh(stale)`` only fetches a
    new token when the cached one is still the token that was rejected, so
    callers racing on the same 401 renew it once.
    """

    def __init__(
        self,
        fetch: TokenSource,
        leeway_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self._leeway = leeway_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._token: AccessToken | None = None

    def _valid(self) -> bool:
        return self._token is not None and self._token.expires_at - self._leeway > self._clock()

    async def get_token(self) -> str:
        if self._valid():
            return cast(AccessToken, self._token).value
        async with self._lock:
            if not self._valid():
                self._token = await self._fetch()
            return cast(AccessToken, self._token).value

    async def refresh(self, stale: str | None = None) -> str:
        async with self._lock:
            if self._valid() and stale is not None and cast(AccessToken, self._token).value != stale:
                return cast(AccessToken, self._token).value
            self._token = await self._fetch()
            logger.debug("Access token refreshed")
            return self._token.value


@retry(
    stop=stop_after_attempt(4),
    wait=wait_exponential_jitter(1, 5),
    retry=retry_if_exception_type((httpx.HTTPStatusError, httpx.ConnectError)),
)
async def client_credentials_token(
    token_url: str,
    client_id: str,
    client_secret: str,
    scope: str = "",
    timeout: float = 30,
) -> AccessToken:
    """Fetch an OAuth2 client-credentials token.

    Raises AuthError with a descriptive message on failure; 429 and connect
    errors are retried.
    """
    logger.info("Fetching OAuth token", url=token_url)
    data = {
        "grant_type": "client_credentials",
        "client_id": client_id,
        "client_secret": client_secret,
    }
    if scope:
        data["scope"] = scope

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            r = await client.post(token_url, data=data)
        r.raise_for_status()
        body = cast(dict[str, Any], r.json())
        token_val = body.get("access_token")
        if not isinstance(token_val, str):
            raise AuthError("Authentication succeeded but no access_token in response")
        expires_in = float(body.get("expires_in") or 3600)
        return AccessToken(token_val, time.monotonic() + expires_in)
    except httpx.HTTPStatusError as e:
        if e.response.status_code == 429:
            logger.warning("Rate limited, backing off", status_code=e.response.status_code)
            raise
        logger.error("Auth failed", status_code=e.response.status_code, response=e.response.text)
        error_msg = f"Authentication failed: {e.response.text}"
        if "invalid_client" in e.response.text:
            error_msg += "\nCheck BC_CLIENT_ID and BC_CLIENT_SECRET"
        raise AuthError(error_msg) from e
    except (AuthError, httpx.ConnectError):
        raise
    except Exception as e:
        logger.error("Auth error", error=str(e))
        raise AuthError(f"Authentication error: {str(e)}") from e


def build_token_cache(settings: SettingsStrict) -> TokenCache:
    """Token cache fed by the client-credentials endpoint from settings."""
    fetch = partial(
        client_credentials_token,
        settings.TOKEN_URL,
        settings.CLIENT_ID,
        settings.CLIENT_SECRET,
        settings.SCOPE,
        settings.HTTP_TIMEOUT,
    )
    return TokenCache(fetch)
