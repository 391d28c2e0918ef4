from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from bcsync_models import Record, field_text

logger = structlog.get_logger()

__all__ = ["field_text", "is_patch_required", "load_payload", "remove_fields"]


def load_payload(payload: Mapping[str, Any] | str) -> dict[str, Any]:
    """Return the payload as a field map.

    Raises ValueError if it is not a JSON object or holds values JSON
    cannot represent (dates, decimals, ...).
    """
    if isinstance(payload, Mapping):
        data = dict(payload)
        try:
            json.dumps(data)
        except TypeError as e:
            raise ValueError(f"Payload is not JSON serializable: {e}") from e
        return data
    data = json.loads(payload)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _folded(names: Iterable[str] | None) -> set[str]:
    return {name.casefold() for name in (names or ())}


def is_patch_required(
    existing: Mapping[str, Any] | None,
    desired: Mapping[str, Any] | str | None,
    ignored_fields: Iterable[str] | None = None,
    keep_existing_values: Mapping[str, Iterable[str]] | None = None,
) -> str | None:
    """Return the first desired field that differs from the existing record.

    Fields in ``ignored_fields`` are never compared. A field listed in
    ``keep_existing_values`` is left alone when the existing value is one of
    the listed values, whatever the desired value is. Values are compared
    case-insensitively on their textual form; a field missing from the
    existing record counts as a difference. Returns None when no write is
    needed.
    """
    if not existing or not desired:
        return None

    try:
        fields = load_payload(desired)
    except ValueError as e:
        logger.error("Could not parse payload for comparison", error=str(e))
        return None

    current = existing if isinstance(existing, Record) else Record(existing)
    ignored = _folded(ignored_fields)
    exempt = {
        name.casefold(): {field_text(v).casefold() for v in values}
        for name, values in (keep_existing_values or {}).items()
    }

    for name, value in fields.items():
        folded = name.casefold()
        if folded in ignored:
            continue
        existing_text = current.text(name)
        if existing_text is None:
            return name
        if existing_text.casefold() in exempt.get(folded, ()):
            continue
        if existing_text.casefold() != field_text(value).casefold():
            return name
    return None


def remove_fields(payload: Mapping[str, Any] | str, fields: Iterable[str] | None) -> str:
    """Serialize ``payload`` without ``fields``.

    If the payload cannot be parsed it is returned unchanged and a warning
    is logged, so a formatting quirk never blocks the write.
    """
    excluded = _folded(fields)
    if isinstance(payload, str) and (not payload.strip() or not excluded):
        return payload

    try:
        data = load_payload(payload)
    except ValueError as e:
        logger.warning("Could not filter fields before PATCH", error=str(e))
        return payload if isinstance(payload, str) else json.dumps(payload)

    filtered = {k: v for k, v in data.items() if k.casefold() not in excluded}
    return json.dumps(filtered, ensure_ascii=False)
