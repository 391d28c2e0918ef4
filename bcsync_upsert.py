from __future__ import annotations

import dataclasses
import time
from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from bcsync_config import EntityConfig
from bcsync_diff import is_patch_required, load_payload, remove_fields
from bcsync_http import (
    BcClient,
    build_filter,
    build_url,
    format_duration,
    item_url,
    resolve_url,
)
from bcsync_models import (
    BatchSummary,
    Err,
    ErrorKind,
    Ok,
    Record,
    RecordCollection,
    SendResult,
    UpsertOutcome,
    UpsertStatus,
    field_text,
)

logger = structlog.get_logger()


class PayloadError(ValueError):
    pass


def _record_from(result: SendResult) -> Record | None:
    """The record echoed back by a write, when the body carries one."""
    if not isinstance(result, Ok):
        return None
    body = result.json()
    if isinstance(body, dict) and body.get("systemId"):
        return Record(body)
    return None


class EntityUpsert:
    """Create-or-update orchestration for one entity collection.

    Each record goes through lookup by natural key, then POST when absent,
    nothing when unchanged, or PATCH with the current etag. PATCHes rejected
    for a stale etag are retried with a freshly fetched etag.
    """

    def __init__(
        self,
        client: BcClient,
        entity: str,
        config: EntityConfig,
        base_url: str | None = None,
        company_id: str | None = None,
        dry_run: bool = False,
    ):
        self.client = client
        self.entity = entity
        self.config = config
        self.dry_run = dry_run
        self.collection_url = resolve_url(base_url, config.destination_api_url, company_id)
        self.lookup_url = resolve_url(
            base_url, config.lookup_api_url or config.destination_api_url, company_id
        )
        self.action_urls = {
            name: resolve_url(base_url, template, company_id)
            for name, template in config.actions.items()
        }
        self.log = client.log.bind(entity=entity)

    def natural_key(self, payload: Mapping[str, Any]) -> tuple[str, str]:
        """First non-empty key field of the payload as (field, value)."""
        for name in self.config.key_fields:
            value = payload.get(name)
            if isinstance(value, (str, int)) and not isinstance(value, bool):
                text = field_text(value)
                if text.strip():
                    return name, text
        raise PayloadError(f"No natural key ({', '.join(self.config.key_fields)}) in payload")

    def _cacheable(self, name: str) -> bool:
        return self.config.filter_field(name).casefold() == self.config.key_field.casefold()

    async def _fetch(self, name: str, key: str) -> RecordCollection:
        url = build_url(
            self.lookup_url, build_filter(self.config.filter_field(name), key), self.config.expand
        )
        return await self.client.fetch_all(
            url, self.config.key_field, source=self.entity, max_pages=1
        )

    async def _lookup(
        self, name: str, key: str, cache: RecordCollection | None
    ) -> RecordCollection:
        if cache is not None and self._cacheable(name) and key in cache:
            return RecordCollection({key: cache[key]})
        found = await self._fetch(name, key)
        record = found.first()
        if cache is not None and record is not None and self._cacheable(name):
            cache[key] = record
        return found

    async def _refetch(self, name: str, key: str, cache: RecordCollection | None) -> Record | None:
        record = (await self._fetch(name, key)).first()
        if cache is not None and record is not None and self._cacheable(name):
            cache[key] = record
        return record

    def _is_locked(self, existing: Record) -> bool:
        for name, values in self.config.skip_update_when.items():
            current = (existing.text(name) or "").casefold()
            if current and current in {v.casefold() for v in values}:
                return True
        return False

    async def preload(self, filter: str | None = None) -> RecordCollection:
        """Fetch the whole collection as a per-run cache keyed by ``key_field``."""
        url = build_url(self.lookup_url, filter, self.config.expand)
        return await self.client.fetch_all(url, self.config.key_field, source=self.entity)

    async def upsert(
        self, payload: Mapping[str, Any] | str, cache: RecordCollection | None = None
    ) -> UpsertOutcome:
        started = time.perf_counter()
        try:
            desired = load_payload(payload)
            name, key = self.natural_key(desired)
        except ValueError as e:
            self.log.error("Invalid payload", error=str(e))
            return UpsertOutcome(UpsertStatus.FAILED, reason=str(e))

        try:
            return await self._upsert(desired, name, key, cache)
        finally:
            self.log.info(
                f"Upsert {self.entity} {key} completed",
                key=key,
                duration=format_duration(time.perf_counter() - started),
            )

    async def _upsert(
        self, desired: dict[str, Any], name: str, key: str, cache: RecordCollection | None
    ) -> UpsertOutcome:
        found = await self._lookup(name, key, cache)
        if not found.complete:
            return UpsertOutcome(UpsertStatus.FAILED, key, reason=f"Lookup of {key} failed")

        existing = found.first()
        if existing is None or existing.system_id is None:
            return await self._create(desired, name, key, cache)

        if self._is_locked(existing):
            self.log.info(f"{self.entity} {key} is locked, no update performed.", key=key)
            return UpsertOutcome(UpsertStatus.SKIPPED, key, record=existing, reason="locked")

        changed = is_patch_required(
            existing, desired, self.config.ignored_fields, self.config.keep_existing_values
        )
        if changed is None:
            self.log.info(f"{self.entity} {key} already exists. No update required.", key=key)
            return UpsertOutcome(UpsertStatus.UNCHANGED, key, record=existing)

        return await self._patch(existing, desired, name, key, changed, cache)

    async def _create(
        self, desired: dict[str, Any], name: str, key: str, cache: RecordCollection | None
    ) -> UpsertOutcome:
        if self.dry_run:
            self.log.info("DRY RUN - Would create record", key=key, payload=desired)
            return UpsertOutcome(UpsertStatus.CREATED, key)

        result = await self.client.post(
            self.collection_url,
            desired,
            source=self.entity,
            success_message=f"{self.entity} {key} created successfully.",
            error_message=f"Failed to create {self.entity} {key}.",
        )
        if isinstance(result, Err):
            return UpsertOutcome(UpsertStatus.FAILED, key, result, reason=result.reason)

        if self.config.refetch_after_create or (cache is not None and self._cacheable(name)):
            record = await self._refetch(name, key, cache)
        else:
            record = _record_from(result)
        return UpsertOutcome(UpsertStatus.CREATED, key, result, record)

    async def _patch(
        self,
        existing: Record,
        desired: dict[str, Any],
        name: str,
        key: str,
        changed: str,
        cache: RecordCollection | None,
    ) -> UpsertOutcome:
        body = remove_fields(desired, self.config.fields_to_exclude_from_update)
        if self.dry_run:
            self.log.info("DRY RUN - Would update record", key=key, field=changed, payload=body)
            return UpsertOutcome(UpsertStatus.PATCHED, key, record=existing, changed_field=changed)

        self.log.debug("Patch required", key=key, field=changed)
        attempts = self.client.policy.max_stale_attempts
        attempt = 1
        result = await self._send_patch(existing, body, key)

        while isinstance(result, Err) and result.kind is ErrorKind.STALE_ETAG:
            if attempt >= attempts:
                result = dataclasses.replace(
                    result,
                    kind=ErrorKind.PERMANENT,
                    reason=f"Stale etag for {self.entity} {key} after {attempts} attempts",
                )
                break
            fresh = (await self._fetch(name, key)).first()
            if fresh is None or fresh.system_id is None:
                result = dataclasses.replace(
                    result,
                    kind=ErrorKind.PERMANENT,
                    reason=f"{self.entity} {key} disappeared while refreshing its etag",
                )
                break
            self.log.warning("Stale etag, resubmitting with refreshed etag", key=key, attempt=attempt)
            attempt += 1
            result = await self._send_patch(fresh, body, key)

        if isinstance(result, Err):
            return UpsertOutcome(
                UpsertStatus.FAILED, key, result, record=existing, changed_field=changed, reason=result.reason
            )

        if cache is not None and self._cacheable(name):
            record = await self._refetch(name, key, cache)
        else:
            record = _record_from(result)
        return UpsertOutcome(UpsertStatus.PATCHED, key, result, record, changed_field=changed)

    async def _send_patch(self, target: Record, body: str, key: str) -> SendResult:
        return await self.client.patch(
            item_url(self.collection_url, target.system_id or ""),
            body,
            target.etag,
            source=self.entity,
            success_message=f"{self.entity} {key} updated successfully.",
            error_message=f"Failed to update {self.entity} {key}.",
        )

    async def delete(self, key: str, name: str | None = None) -> UpsertOutcome:
        """Delete the record whose natural key ``name`` (default: first key field) is ``key``."""
        name = name or self.config.key_fields[0]
        found = await self._fetch(name, key)
        if not found.complete:
            return UpsertOutcome(UpsertStatus.FAILED, key, reason=f"Lookup of {key} failed")
        existing = found.first()
        if existing is None or existing.system_id is None:
            self.log.info("Delete not possible, record not found", key=key)
            return UpsertOutcome(UpsertStatus.SKIPPED, key, reason="not found")
        if self.dry_run:
            self.log.info("DRY RUN - Would delete record", key=key)
            return UpsertOutcome(UpsertStatus.DELETED, key, record=existing)

        result = await self.client.delete(
            item_url(self.collection_url, existing.system_id),
            existing.etag,
            source=self.entity,
            success_message=f"{self.entity} {key} deleted successfully.",
            error_message=f"Failed to delete {self.entity} {key}.",
        )
        status = UpsertStatus.FAILED if isinstance(result, Err) else UpsertStatus.DELETED
        reason = result.reason if isinstance(result, Err) else "deleted"
        return UpsertOutcome(status, key, result, existing, reason=reason)

    async def run_action(self, key: str, action: str, name: str | None = None) -> UpsertOutcome:
        """POST to a configured bound action, e.g. releasing an order."""
        template = self.action_urls.get(action)
        if template is None:
            known = ", ".join(sorted(self.action_urls)) or "none"
            return UpsertOutcome(
                UpsertStatus.FAILED, key, reason=f"Unknown action {action!r} (configured: {known})"
            )
        name = name or self.config.key_fields[0]
        found = await self._fetch(name, key)
        if not found.complete:
            return UpsertOutcome(UpsertStatus.FAILED, key, reason=f"Lookup of {key} failed")
        existing = found.first()
        if existing is None or existing.system_id is None:
            return UpsertOutcome(UpsertStatus.FAILED, key, reason=f"{self.entity} {key} not found")
        if self.dry_run:
            self.log.info("DRY RUN - Would run action", key=key, action=action)
            return UpsertOutcome(UpsertStatus.EXECUTED, key, record=existing)

        result = await self.client.post(
            template.replace("{id}", existing.system_id),
            source=self.entity,
            success_message=f"{self.entity} {key} {action} successfully.",
            error_message=f"Failed to {action} {self.entity} {key}.",
        )
        if isinstance(result, Err):
            return UpsertOutcome(UpsertStatus.FAILED, key, result, existing, reason=result.reason)
        return UpsertOutcome(UpsertStatus.EXECUTED, key, result, existing, reason=action)

    async def upsert_many(
        self,
        payloads: Iterable[Mapping[str, Any] | str],
        cache: RecordCollection | None = None,
        limit: int = 0,
    ) -> BatchSummary:
        """Upsert records one at a time; a failed record never stops the batch."""
        summary = BatchSummary()
        for payload in payloads:
            outcome = await self.upsert(payload, cache)
            summary.add(outcome)
            if outcome.failed:
                self.log.error("Failed to process record", key=outcome.key, reason=outcome.reason)
            if limit and summary.processed >= limit:
                break
        return summary
