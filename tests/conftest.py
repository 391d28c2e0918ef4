"""Shared fixtures: an in-memory OData collection served through httpx.MockTransport."""

from __future__ import annotations

import itertools
import json
import re
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from bcsync_http import BcClient
from bcsync_models import RetryPolicy

COLLECTION_URL = "https://bc.test/api/v2.0/companies(c1)/items"
STALE_BODY = json.dumps(
    {
        "error": {
            "code": "Request_EntityChanged",
            "message": "Another user has already changed the record.",
        }
    }
)

_FILTER = re.compile(r"^(\w+) eq '((?:[^']|'')*)'$")
_ITEM = re.compile(r"^(\w+)\((.+)\)$")


class FakeCollection:
    """Minimal OData collection: $filter on one field, POST, PATCH with If-Match, DELETE.

    ``script`` queues canned responses per HTTP method; queued responses are
    served before the collection handles the request itself.
    """

    def __init__(self) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.script: dict[str, list[httpx.Response]] = {}
        self._ids = itertools.count(1)

    def add(self, fields: dict[str, Any]) -> dict[str, Any]:
        system_id = f"id-{next(self._ids)}"
        record = {"@odata.etag": 'W/"1"', "systemId": system_id, **fields}
        self.records[system_id] = record
        return record

    def calls(self, method: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method]

    def reset_calls(self) -> None:
        self.requests.clear()

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queued = self.script.get(request.method)
        if queued:
            return queued.pop(0)
        if request.method == "GET":
            return self._get(request)
        if request.method == "POST":
            payload = json.loads(request.content) if request.content else {}
            return httpx.Response(201, json=self.add(payload))
        return self._write(request)

    def _get(self, request: httpx.Request) -> httpx.Response:
        expr = request.url.params.get("$filter")
        records = list(self.records.values())
        if expr:
            match = _FILTER.match(expr)
            if match is None:
                return httpx.Response(400, json={"error": {"code": "BadRequest_InvalidFilter"}})
            name, value = match.group(1), match.group(2).replace("''", "'")
            records = [r for r in records if str(r.get(name, "")).casefold() == value.casefold()]
        return httpx.Response(200, json={"value": records})

    def _write(self, request: httpx.Request) -> httpx.Response:
        match = _ITEM.match(request.url.path.rsplit("/", 1)[-1])
        record = self.records.get(match.group(2)) if match else None
        if record is None:
            return httpx.Response(404, json={"error": {"code": "Internal_RecordNotFound"}})
        if request.headers.get("If-Match") not in ("*", record["@odata.etag"]):
            return httpx.Response(409, text=STALE_BODY)
        if request.method == "DELETE":
            del self.records[record["systemId"]]
            return httpx.Response(204)
        record.update(json.loads(request.content))
        version = int(record["@odata.etag"].strip('W/"')) + 1
        record["@odata.etag"] = f'W/"{version}"'
        return httpx.Response(200, json=record)


class Scripted:
    """Transport handler returning the given responses in order."""

    def __init__(self, *responses: httpx.Response | Exception):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeCredentials:
    def __init__(self, token: str = "fresh") -> None:
        self.token = token
        self.refreshes = 0
        self.stale_seen: list[str | None] = []

    async def get_token(self) -> str:
        return "initial"

    async def refresh(self, stale: str | None = None) -> str:
        self.refreshes += 1
        self.stale_seen.append(stale)
        return self.token


class FailingCredentials:
    async def get_token(self) -> str:
        raise RuntimeError("identity provider down")

    async def refresh(self, stale: str | None = None) -> str:
        raise RuntimeError("identity provider down")


@pytest.fixture
def backend() -> FakeCollection:
    return FakeCollection()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def make_client(sleeps: SleepRecorder) -> Callable[..., BcClient]:
    """Factory: BcClient over a MockTransport handler, with recorded backoff sleeps."""

    def _make(handler: Callable[[httpx.Request], httpx.Response], credentials: Any = None, **policy: Any) -> BcClient:
        http = httpx.AsyncClient(
            transport=httpx.MockTransport(handler),
            headers={"Authorization": "Bearer initial"},
        )
        return BcClient(http, credentials, RetryPolicy(**policy), company="TEST", sleep=sleeps)

    return _make
