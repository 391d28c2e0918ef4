from __future__ import annotations

import json
from collections.abc import Iterator, Mapping, MutableMapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union

import httpx
from pydantic import BaseModel, Field


def field_text(value: Any) -> str:
    """Textual form of a JSON value as used for comparisons and natural keys.

    Strings are kept as-is (blank strings collapse to ""), null becomes "",
    booleans are lower-case, integral floats print as integers and nested
    objects/arrays use their compact JSON text.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value if value.strip() else ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return repr(value)
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


class Record(Mapping[str, Any]):
    """Read-only view of one remote record with case-insensitive field names.

    Values are plain JSON values, so nested arrays and objects survive a
    round trip untouched.
    """

    __slots__ = ("_fields",)

    def __init__(self, fields: Mapping[str, Any] | None = None):
        self._fields: dict[str, tuple[str, Any]] = {}
        for name, value in (fields or {}).items():
            self._fields[name.casefold()] = (name, value)

    def __getitem__(self, name: str) -> Any:
        return self._fields[name.casefold()][1]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.casefold() in self._fields

    def __iter__(self) -> Iterator[str]:
        return (name for name, _ in self._fields.values())

    def __len__(self) -> int:
        return len(self._fields)

    def __repr__(self) -> str:
        return f"Record({self.to_dict()!r})"

    @property
    def system_id(self) -> str | None:
        return self.text("systemId") or None

    @property
    def etag(self) -> str | None:
        return self.text("@odata.etag") or None

    def text(self, name: str) -> str | None:
        if name not in self:
            return None
        return field_text(self[name])

    def to_dict(self) -> dict[str, Any]:
        return {name: value for name, value in self._fields.values()}


class RecordCollection(MutableMapping[str, Record]):
    """Natural key -> Record, keys compared case-insensitively.

    A later put with an equal key replaces the earlier record. ``complete``
    is False when the read that produced the collection stopped early.
    """

    def __init__(self, records: Mapping[str, Record] | None = None):
        self._records: dict[str, tuple[str, Record]] = {}
        self.complete = True
        for key, record in (records or {}).items():
            self[key] = record

    def __getitem__(self, key: str) -> Record:
        return self._records[key.casefold()][1]

    def __setitem__(self, key: str, record: Record) -> None:
        self._records[key.casefold()] = (key, record)

    def __delitem__(self, key: str) -> None:
        del self._records[key.casefold()]

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.casefold() in self._records

    def __iter__(self) -> Iterator[str]:
        return (key for key, _ in self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def first(self) -> Record | None:
        for _, record in self._records.values():
            return record
        return None


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    STALE_ETAG = "stale_etag"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class Ok:
    response: httpx.Response
    ok: ClassVar[bool] = True

    @property
    def status_code(self) -> int:
        return self.response.status_code

    def json(self) -> Any:
        """Parsed response body, or None when the body is empty or not JSON."""
        if not self.response.content:
            return None
        try:
            return self.response.json()
        except ValueError:
            return None


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    status_code: int
    reason: str
    body: str = ""
    ok: ClassVar[bool] = False


SendResult = Union[Ok, Err]


class RetryPolicy(BaseModel):
    max_retries: int = Field(5, ge=0)
    backoff_seconds: float = Field(1.0, ge=0)
    max_stale_attempts: int = Field(5, ge=1)
    stale_etag_marker: str = "Request_EntityChanged"


class UpsertStatus(str, Enum):
    CREATED = "created"
    PATCHED = "patched"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    DELETED = "deleted"
    EXECUTED = "executed"
    FAILED = "failed"


@dataclass
class UpsertOutcome:
    status: UpsertStatus
    key: str | None = None
    result: SendResult | None = None
    record: Record | None = None
    changed_field: str | None = None
    reason: str = ""

    @property
    def failed(self) -> bool:
        return self.status is UpsertStatus.FAILED


@dataclass
class BatchSummary:
    processed: int = 0
    counts: dict[UpsertStatus, int] = field(
        default_factory=lambda: {status: 0 for status in UpsertStatus}
    )
    failures: list[UpsertOutcome] = field(default_factory=list)

    def add(self, outcome: UpsertOutcome) -> None:
        self.processed += 1
        self.counts[outcome.status] += 1
        if outcome.failed:
            self.failures.append(outcome)

    def count(self, status: UpsertStatus) -> int:
        return self.counts[status]
