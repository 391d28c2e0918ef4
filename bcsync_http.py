from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any
from urllib.parse import quote

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from bcsync_auth import CredentialProvider
from bcsync_models import (
    Err,
    ErrorKind,
    Ok,
    Record,
    RecordCollection,
    RetryPolicy,
    SendResult,
    field_text,
)

logger = structlog.get_logger()

JSON_HEADERS = {"Content-Type": "application/json"}
TRANSIENT_STATUS = (409, 503)


class WriteError(Exception):
    """A send that ended in a failure status; carries the status code and body."""

    kind = ErrorKind.PERMANENT

    def __init__(self, message: str, status_code: int = 500, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class TransientWriteError(WriteError):
    kind = ErrorKind.TRANSIENT


class StaleEtagError(WriteError):
    kind = ErrorKind.STALE_ETAG


class CloneError(WriteError):
    pass


def resolve_url(base: str | None, path: str, company_id: str | None = None) -> str:
    """Build a full URL for the API by injecting the company.

    - Replaces an optional "{company}" placeholder in the path.
    - Absolute paths are returned as-is; relative ones are joined to base.
    """
    if "{company}" in path:
        path = path.replace("{company}", str(company_id or ""))
    if path.startswith(("http://", "https://")) or not base:
        return path
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


def odata_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def build_filter(field: str, value: str) -> str:
    return f"{field} eq {odata_literal(value)}"


def build_url(collection_url: str, filter: str | None = None, expand: Iterable[str] = ()) -> str:
    params = []
    if filter:
        params.append("$filter=" + quote(filter, safe=""))
    expand = list(expand)
    if expand:
        params.append("$expand=" + ",".join(expand))
    if not params:
        return collection_url
    sep = "&" if "?" in collection_url else "?"
    return collection_url + sep + "&".join(params)


def item_url(collection_url: str, system_id: str) -> str:
    """<collection>(<systemId>), keeping any query string of the collection URL."""
    base, _, query = collection_url.partition("?")
    url = f"{base.rstrip('/')}({system_id})"
    return f"{url}?{query}" if query else url


def format_duration(seconds: float) -> str:
    ms = seconds * 1000
    if ms < 1:
        return f"{ms * 1000:.0f}µs"
    if ms < 1000:
        return f"{ms:.0f}ms"
    total_ms = int(ms)
    h, rem = divmod(total_ms, 3_600_000)
    m, rem = divmod(rem, 60_000)
    s, ms_part = divmod(rem, 1000)
    if total_ms < 60_000:
        return f"{s}s {ms_part}ms"
    if total_ms < 3_600_000:
        return f"{m}m {s}s {ms_part}ms"
    return f"{h}h {m}m {s}s {ms_part}ms"


async def clone_request(request: httpx.Request) -> httpx.Request:
    """Independent copy of ``request`` with its body buffered in memory.

    The copy can be sent even after the original body stream was consumed.
    Raises CloneError when the body cannot be read.
    """
    try:
        body = await request.aread()
    except (httpx.StreamError, RuntimeError, OSError) as e:
        raise CloneError(f"Could not buffer request body: {e}") from e
    return httpx.Request(
        request.method,
        request.url,
        headers=request.headers.copy(),
        content=body or None,
        extensions=dict(request.extensions),
    )


def _encode(payload: Mapping[str, Any] | str | None) -> bytes | None:
    if payload is None:
        return None
    if isinstance(payload, str):
        return payload.encode("utf-8") if payload.strip() else None
    return json.dumps(payload, ensure_ascii=False).encode("utf-8")


def _page_items(payload: Any) -> tuple[list[Any], str | None]:
    if isinstance(payload, list):
        return payload, None
    if not isinstance(payload, dict):
        return [], None
    value = payload.get("value")
    items = value if isinstance(value, list) else []
    next_link = payload.get("@odata.nextLink")
    return items, next_link if isinstance(next_link, str) and next_link else None


def _bearer(header: str | None) -> str | None:
    if header and header.lower().startswith("bearer "):
        return header[7:]
    return header


class BcClient:
    """Send pipeline and collection reader over a shared httpx.AsyncClient.

    The caller owns ``http`` and reuses it across calls. Failures come back
    as ``Err`` values; only cancellation propagates as an exception.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        credentials: CredentialProvider | None = None,
        policy: RetryPolicy | None = None,
        company: str = "",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.http = http
        self.credentials = credentials
        self.policy = policy or RetryPolicy()
        self.company = company
        self.sleep = sleep
        self.log = logger.bind(company=company or "SYSTEM")

    async def authorize(self) -> None:
        """Put a bearer token on the client if it has none yet."""
        if self.credentials is not None and "Authorization" not in self.http.headers:
            token = await self.credentials.get_token()
            self.http.headers["Authorization"] = f"Bearer {token}"

    async def build_request(
        self,
        method: str,
        url: str,
        payload: Mapping[str, Any] | str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Request:
        await self.authorize()
        content = _encode(payload)
        merged = {**JSON_HEADERS, **(headers or {})} if content else dict(headers or {})
        return self.http.build_request(method, url, content=content, headers=merged)

    async def send(
        self,
        request: httpx.Request,
        *,
        source: str = "",
        success_message: str | None = None,
        error_message: str = "Request failed",
    ) -> SendResult:
        """Send ``request`` and classify the outcome.

        401 renews the token once and resends. A PATCH rejected with the
        stale-etag marker comes back straight away as STALE_ETAG. 409 and 503
        are retried with linear backoff up to ``policy.max_retries`` times.
        Anything else that is not 2xx, and every exception raised on the
        way, ends as a PERMANENT ``Err``.
        """
        started = time.perf_counter()
        try:
            response = await self._send_with_retry(request, source)
        except StaleEtagError as e:
            self.log.warning(f"{source} => stale etag", source=source, url=str(request.url))
            return Err(ErrorKind.STALE_ETAG, e.status_code, str(e), e.body)
        except WriteError as e:
            self.log.error(
                f"{source} => {error_message}",
                source=source,
                url=str(request.url),
                status_code=e.status_code,
                error=str(e),
            )
            return Err(ErrorKind.PERMANENT, e.status_code, f"{error_message} - {e}", e.body)
        except Exception as e:
            self.log.error(f"{source} => {error_message}", source=source, url=str(request.url), error=str(e))
            return Err(ErrorKind.PERMANENT, 500, f"{error_message} - {e}")

        if success_message:
            self.log.info(
                f"{source} => {success_message}",
                source=source,
                duration=format_duration(time.perf_counter() - started),
            )
        return Ok(response)

    async def _send_with_retry(self, request: httpx.Request, source: str) -> httpx.Response:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_retries + 1),
            wait=wait_incrementing(
                start=self.policy.backoff_seconds, increment=self.policy.backoff_seconds
            ),
            retry=retry_if_exception_type(TransientWriteError),
            sleep=self.sleep,
            before_sleep=self._log_retry(source),
            reraise=True,
        )
        current = request
        refreshed = False
        async for attempt in retrying:
            with attempt:
                response = await self.http.send(await clone_request(current))
                if response.status_code == 401 and self.credentials is not None and not refreshed:
                    refreshed = True
                    current = await self._renew_token(self.credentials, current)
                    response = await self.http.send(await clone_request(current))
                self._check_response(current, response)
        return response

    async def _renew_token(
        self, credentials: CredentialProvider, request: httpx.Request
    ) -> httpx.Request:
        token = await credentials.refresh(_bearer(request.headers.get("Authorization")))
        self.http.headers["Authorization"] = f"Bearer {token}"
        renewed = await clone_request(request)
        renewed.headers["Authorization"] = f"Bearer {token}"
        self.log.info("Access token renewed after 401", url=str(request.url))
        return renewed

    def _check_response(self, request: httpx.Request, response: httpx.Response) -> None:
        if response.is_success:
            return
        status = response.status_code
        body = response.text
        if status == 409 and request.method == "PATCH" and self.policy.stale_etag_marker in body:
            raise StaleEtagError(f"Stale etag on {request.url}", status, body)
        if status in TRANSIENT_STATUS:
            raise TransientWriteError(f"StatusCode: {status}, Content: {body}", status, body)
        raise WriteError(f"StatusCode: {status}, Content: {body}", status, body)

    def _log_retry(self, source: str) -> Callable[[RetryCallState], None]:
        def before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            self.log.warning(
                "Transient failure, retrying",
                source=source,
                status_code=getattr(exc, "status_code", None),
                attempt=state.attempt_number,
                delay=state.next_action.sleep if state.next_action else None,
            )

        return before_sleep

    async def request(
        self,
        method: str,
        url: str,
        payload: Mapping[str, Any] | str | None = None,
        headers: Mapping[str, str] | None = None,
        *,
        source: str = "",
        success_message: str | None = None,
        error_message: str = "Request failed",
    ) -> SendResult:
        """Build and send one request; building failures also end as ``Err``."""
        try:
            request = await self.build_request(method, url, payload, headers)
        except Exception as e:
            self.log.error(f"{source} => {error_message}", source=source, url=url, error=str(e))
            return Err(ErrorKind.PERMANENT, 500, f"{error_message} - {e}")
        return await self.send(
            request,
            source=source,
            success_message=success_message,
            error_message=error_message,
        )

    async def fetch_all(
        self, url: str, key_field: str, *, source: str = "", max_pages: int = 0
    ) -> RecordCollection:
        """Follow @odata.nextLink pages and key every record by ``key_field``.

        Stops at the first failed or unparsable page and returns what was
        gathered so far, with ``complete`` set to False. ``max_pages`` > 0
        stops after that many pages; the result still counts as complete.
        """
        if not key_field:
            raise ValueError("key_field is required")

        started = time.perf_counter()
        records = RecordCollection()
        next_url: str | None = url
        page = 0

        while next_url:
            page += 1
            result = await self.request("GET", next_url, source=f"{source}: GET", error_message="Failed")
            if isinstance(result, Err):
                records.complete = False
                break

            try:
                payload = result.response.json()
            except ValueError as e:
                self.log.error("Could not parse page", source=source, url=next_url, error=str(e))
                records.complete = False
                break

            items, next_url = _page_items(payload)
            for item in items:
                if not isinstance(item, dict):
                    continue
                key = field_text(Record(item).get(key_field))
                if not key:
                    continue
                records[key] = Record(item)

            self.log.debug("Fetched page", source=source, page=page, item_count=len(items), total_so_far=len(records))
            if max_pages and page >= max_pages:
                break

        self.log.info(
            f"{source} => fetch completed",
            source=source,
            records=len(records),
            complete=records.complete,
            duration=format_duration(time.perf_counter() - started),
        )
        return records

    async def fetch_one(self, url: str, key_field: str, *, source: str = "") -> Record | None:
        """First record of the first page; the lookup never follows nextLink."""
        return (await self.fetch_all(url, key_field, source=source, max_pages=1)).first()

    async def post(
        self,
        url: str,
        payload: Mapping[str, Any] | str | None = None,
        *,
        source: str = "",
        success_message: str | None = "Created successfully",
        error_message: str = "Creation failed",
    ) -> SendResult:
        return await self.request(
            "POST",
            url,
            payload,
            source=f"{source}: POST",
            success_message=success_message,
            error_message=error_message,
        )

    async def patch(
        self,
        url: str,
        payload: Mapping[str, Any] | str | None,
        etag: str | None = None,
        *,
        source: str = "",
        success_message: str | None = "Patch successfully",
        error_message: str = "Patch failed",
    ) -> SendResult:
        if payload is None or (isinstance(payload, str) and not payload.strip()):
            return Err(ErrorKind.PERMANENT, 500, f"{error_message} - PATCH requires a payload")
        return await self.request(
            "PATCH",
            url,
            payload,
            _write_headers(etag),
            source=f"{source}: PATCH",
            success_message=success_message,
            error_message=error_message,
        )

    async def delete(
        self,
        url: str,
        etag: str | None = None,
        payload: Mapping[str, Any] | str | None = None,
        *,
        source: str = "",
        success_message: str | None = "Delete successfully",
        error_message: str = "Delete failed",
    ) -> SendResult:
        return await self.request(
            "DELETE",
            url,
            payload,
            _write_headers(etag),
            source=f"{source}: DELETE",
            success_message=success_message,
            error_message=error_message,
        )


def _write_headers(etag: str | None) -> dict[str, str]:
    return {"If-Match": etag or "*", "Prefer": "return=representation"}
