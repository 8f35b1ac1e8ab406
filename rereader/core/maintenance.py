"""Bulk edits, retention cleanup and snapshot export/import."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from rereader.core.errors import (
    ConstraintError,
    ItemResult,
    RecallError,
    ValidationError,
)
from rereader.core.models import CycleRecord, DeliveryRecord, Highlight, Source, to_iso, utcnow
from rereader.core.settings import RecallConfig
from rereader.core.storage import EDITABLE_FIELDS, TAG_PATCH_KEYS, Store
from rereader.core.validation import (
    validate_cycle_record,
    validate_delivery_record,
    validate_highlight_record,
    validate_source_record,
)

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = "1.0"


@dataclass
class BulkResult:
    results: list[ItemResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class CleanupPolicy:
    """Retention limits. None switches that part of the cleanup off."""

    max_cycle_records: int | None = 100
    max_delivery_records: int | None = 100
    remove_orphans: bool = True

    @classmethod
    def from_config(cls, config: RecallConfig) -> CleanupPolicy:
        return cls(
            max_cycle_records=config.max_cycle_records,
            max_delivery_records=config.max_delivery_records,
        )


@dataclass
class CleanupResult:
    cycle_records_removed: int = 0
    delivery_records_removed: int = 0
    orphaned_highlights_removed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_records_removed": self.cycle_records_removed,
            "delivery_records_removed": self.delivery_records_removed,
            "orphaned_highlights_removed": len(self.orphaned_highlights_removed),
            "orphaned_highlight_ids": list(self.orphaned_highlights_removed),
        }


@dataclass
class ImportResult:
    """Counts per record type plus the records that were rejected."""

    imported: dict[str, int] = field(
        default_factory=lambda: {"sources": 0, "highlights": 0, "cycle_records": 0, "delivery_records": 0}
    )
    skipped: int = 0
    errors: list[ItemResult] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "imported": dict(self.imported),
            "skipped": self.skipped,
            "errors": [e.to_dict() for e in self.errors],
            "cancelled": self.cancelled,
        }


def _cancelled(cancel: asyncio.Event | None) -> bool:
    return cancel is not None and cancel.is_set()


def _record_label(kind: str, index: int, data: Any) -> str:
    if isinstance(data, dict) and isinstance(data.get("id"), str) and data["id"]:
        return data["id"]
    return f"{kind}[{index}]"


class Maintenance:
    """User-facing maintenance operations over a Store."""

    def __init__(self, store: Store) -> None:
        self.store = store

    # ==================== Bulk edits ====================

    async def bulk_update(
        self,
        ids: list[str],
        patch: dict[str, Any],
        cancel: asyncio.Event | None = None,
    ) -> BulkResult:
        """Apply the same patch to every id, independently.

        Patch keys: text, note, tags, category, location_label, plus
        add_tags / remove_tags to edit the tag set without replacing it.

        Raises:
            ValidationError: the patch itself is malformed (nothing is applied)
        """
        unknown = set(patch) - EDITABLE_FIELDS - TAG_PATCH_KEYS
        if unknown:
            raise ValidationError(f"Cannot patch field(s): {', '.join(sorted(unknown))}")
        if not patch:
            raise ValidationError("Patch is empty")
        if "tags" in patch and TAG_PATCH_KEYS & set(patch):
            raise ValidationError("Use either tags or add_tags/remove_tags, not both")

        result = BulkResult()
        for highlight_id in ids:
            if _cancelled(cancel):
                result.cancelled = True
                break
            try:
                await self.store.update_highlight(highlight_id, patch)
                result.results.append(ItemResult(highlight_id))
            except RecallError as e:
                result.results.append(ItemResult(highlight_id, e))

        logger.info(f"Bulk update: {result.succeeded} updated, {result.failed} failed")
        return result

    async def bulk_delete(self, ids: list[str], cancel: asyncio.Event | None = None) -> BulkResult:
        result = BulkResult()
        for highlight_id in ids:
            if _cancelled(cancel):
                result.cancelled = True
                break
            try:
                await self.store.delete_highlight(highlight_id)
                result.results.append(ItemResult(highlight_id))
            except RecallError as e:
                result.results.append(ItemResult(highlight_id, e))

        logger.info(f"Bulk delete: {result.succeeded} deleted, {result.failed} failed")
        return result

    # ==================== Retention ====================

    async def cleanup(self, policy: CleanupPolicy | None = None) -> CleanupResult:
        policy = policy or CleanupPolicy()
        result = CleanupResult()
        if policy.max_cycle_records is not None:
            result.cycle_records_removed = await self.store.prune_cycle_records(policy.max_cycle_records)
        if policy.max_delivery_records is not None:
            result.delivery_records_removed = await self.store.prune_delivery_records(
                policy.max_delivery_records
            )
        if policy.remove_orphans:
            result.orphaned_highlights_removed = await self.store.delete_orphaned_highlights()

        logger.info(
            f"Cleanup: removed {result.cycle_records_removed} cycle records, "
            f"{result.delivery_records_removed} delivery records, "
            f"{len(result.orphaned_highlights_removed)} orphaned highlights"
        )
        return result

    # ==================== Export / import ====================

    async def export_all(self) -> dict[str, Any]:
        """Self-describing snapshot of everything except settings."""
        sources = await self.store.list_sources()
        highlights = await self.store.list_highlights()
        cycles = await self.store.list_cycle_records(limit=None)
        deliveries = await self.store.list_delivery_records(limit=None)
        return {
            "version": SNAPSHOT_VERSION,
            "exported_at": to_iso(utcnow()),
            "sources": [s.to_dict() for s in sources],
            "highlights": [h.to_dict() for h in highlights],
            "cycle_records": [c.to_dict() for c in cycles],
            "delivery_records": [d.to_dict() for d in deliveries],
            "metadata": {
                "total_sources": len(sources),
                "total_highlights": len(highlights),
                "total_cycle_records": len(cycles),
                "total_delivery_records": len(deliveries),
            },
        }

    async def import_all(
        self,
        snapshot: Any,
        overwrite: bool = False,
        skip_duplicates: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> ImportResult:
        """Import a snapshot produced by export_all().

        Every record is validated before anything is written. Invalid
        records are reported individually and do not block valid ones.
        On an id collision `overwrite` replaces the stored record (and wins
        when both flags are set), `skip_duplicates` keeps it, and with
        neither flag the record is rejected with a ConstraintError.

        Raises:
            ValidationError: not a snapshot, or an unsupported version
        """
        if not isinstance(snapshot, dict):
            raise ValidationError("Snapshot must be an object")
        version = snapshot.get("version")
        if version != SNAPSHOT_VERSION:
            raise ValidationError(f"Unsupported snapshot version: {version!r}")

        result = ImportResult()
        now = utcnow()

        sources = self._parse_records(
            result, snapshot, "sources", validate_source_record, Source.from_dict
        )
        highlights = self._parse_records(
            result, snapshot, "highlights", lambda d: validate_highlight_record(d, now=now), Highlight.from_dict
        )
        cycles = self._parse_records(
            result, snapshot, "cycle_records", validate_cycle_record, CycleRecord.from_dict
        )
        deliveries = self._parse_records(
            result, snapshot, "delivery_records", validate_delivery_record, DeliveryRecord.from_dict
        )

        # Referential check against the store plus the valid snapshot sources
        snapshot_source_ids = {s.id for s in sources}
        checked: list[Highlight] = []
        for h in highlights:
            if h.source_id in snapshot_source_ids or await self.store.source_exists(h.source_id):
                checked.append(h)
            else:
                result.errors.append(
                    ItemResult(h.id, ConstraintError(f"Highlight {h.id} references unknown source {h.source_id}"))
                )

        plan: list[tuple[str, Any, Callable[[str], Awaitable[bool]], Callable[[Any], Awaitable[None]]]] = []
        plan += [("sources", s, self.store.source_exists, self.store.replace_source) for s in sources]
        plan += [("highlights", h, self.store.highlight_exists, self.store.replace_highlight) for h in checked]
        plan += [
            ("cycle_records", c, self.store.cycle_record_exists, self.store.replace_cycle_record) for c in cycles
        ]
        plan += [
            ("delivery_records", d, self.store.delivery_record_exists, self.store.replace_delivery_record)
            for d in deliveries
        ]

        for kind, entity, exists, write in plan:
            if _cancelled(cancel):
                result.cancelled = True
                break
            try:
                if await exists(entity.id):
                    if overwrite:
                        await write(entity)
                    elif skip_duplicates:
                        result.skipped += 1
                        continue
                    else:
                        raise ConstraintError(
                            f"{entity.id} already exists; pass overwrite or skip_duplicates"
                        )
                else:
                    await write(entity)
                result.imported[kind] += 1
            except RecallError as e:
                result.errors.append(ItemResult(entity.id, e))

        logger.info(
            f"Import: {sum(result.imported.values())} records imported, "
            f"{result.skipped} skipped, {len(result.errors)} rejected"
            + (" (cancelled)" if result.cancelled else "")
        )
        return result

    @staticmethod
    def _parse_records(
        result: ImportResult,
        snapshot: dict[str, Any],
        kind: str,
        validate: Callable[[Any], list[str]],
        build: Callable[[dict[str, Any]], Any],
    ) -> list[Any]:
        raw = snapshot.get(kind) or []
        if not isinstance(raw, list):
            result.errors.append(ItemResult(kind, ValidationError(f"{kind} must be a list")))
            return []
        parsed = []
        for i, data in enumerate(raw):
            label = _record_label(kind, i, data)
            reasons = validate(data)
            if reasons:
                result.errors.append(ItemResult(label, ValidationError(f"Invalid {kind} record {label}", reasons)))
                continue
            try:
                parsed.append(build(data))
            except (ValueError, TypeError, RecallError) as e:
                result.errors.append(ItemResult(label, ValidationError(f"Invalid {kind} record {label}: {e}")))
        return parsed
