"""Record validation for ingest and snapshot import.

Each validator returns a list of human-readable reasons; an empty list means
the record is valid. Batch callers turn a non-empty list into a per-item
ValidationError instead of aborting the batch.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from rereader.core.categories import CATEGORIES
from rereader.core.models import (
    CycleKind,
    CycleStatus,
    DeliveryStatus,
    Highlight,
    Source,
    parse_timestamp,
    utcnow,
)

MAX_TITLE_LENGTH = 500
MAX_CREATOR_LENGTH = 200
MAX_TEXT_LENGTH = 10000
MAX_NOTE_LENGTH = 5000
MAX_LOCATION_LENGTH = 100
MAX_TAGS = 20
MAX_TAG_LENGTH = 64

# Tolerated clock skew between the extractor host and this process
CLOCK_SKEW = timedelta(minutes=5)


def _check_str(
    errors: list[str],
    data: dict[str, Any],
    name: str,
    *,
    required: bool = False,
    max_length: int | None = None,
) -> None:
    value = data.get(name)
    if value is None or value == "":
        if required:
            errors.append(f"{name} is required")
        return
    if not isinstance(value, str):
        errors.append(f"{name} must be a string")
        return
    if required and not value.strip():
        errors.append(f"{name} is required")
    if max_length is not None and len(value) > max_length:
        errors.append(f"{name} must be no more than {max_length} characters")


def _check_timestamp(
    errors: list[str],
    data: dict[str, Any],
    name: str,
    *,
    required: bool = False,
    not_after: datetime | None = None,
) -> datetime | None:
    value = data.get(name)
    if value is None or value == "":
        if required:
            errors.append(f"{name} is required")
        return None
    try:
        ts = parse_timestamp(value)
    except (TypeError, ValueError):
        errors.append(f"{name} must be an ISO-8601 timestamp or epoch milliseconds")
        return None
    if not_after is not None and ts > not_after + CLOCK_SKEW:
        errors.append(f"{name} must not be in the future")
    return ts


def _check_int(errors: list[str], data: dict[str, Any], name: str, *, minimum: int = 0) -> int | None:
    value = data.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append(f"{name} must be an integer")
        return None
    if value < minimum:
        errors.append(f"{name} must be at least {minimum}")
    return value


def _check_tags(errors: list[str], tags: Any) -> None:
    if tags is None:
        return
    if not isinstance(tags, (list, tuple, set, frozenset)):
        errors.append("tags must be a list of strings")
        return
    if len(tags) > MAX_TAGS:
        errors.append(f"tags must have no more than {MAX_TAGS} items")
    for tag in tags:
        if not isinstance(tag, str) or not tag.strip():
            errors.append("tags must be non-empty strings")
            break
        if len(tag) > MAX_TAG_LENGTH:
            errors.append(f"tag '{tag[:20]}...' is longer than {MAX_TAG_LENGTH} characters")
            break


def validate_source_record(data: Any) -> list[str]:
    """Validate a raw source record from a snapshot."""
    if not isinstance(data, dict):
        return ["source record must be an object"]
    errors: list[str] = []
    _check_str(errors, data, "id", required=True, max_length=200)
    _check_str(errors, data, "title", required=True, max_length=MAX_TITLE_LENGTH)
    _check_str(errors, data, "creator", max_length=MAX_CREATOR_LENGTH)
    _check_str(errors, data, "cover_ref", max_length=2000)
    _check_timestamp(errors, data, "last_updated")
    return errors


def validate_highlight_record(data: Any, now: datetime | None = None) -> list[str]:
    """Validate a raw highlight record from a snapshot."""
    if not isinstance(data, dict):
        return ["highlight record must be an object"]
    now = now or utcnow()
    errors: list[str] = []
    _check_str(errors, data, "id", required=True, max_length=200)
    _check_str(errors, data, "source_id", required=True, max_length=200)
    _check_str(errors, data, "text", required=True, max_length=MAX_TEXT_LENGTH)
    _check_str(errors, data, "location_label", max_length=MAX_LOCATION_LENGTH)
    _check_str(errors, data, "note", max_length=MAX_NOTE_LENGTH)
    _check_timestamp(errors, data, "date_created")
    _check_timestamp(errors, data, "date_ingested")
    last_shown = _check_timestamp(errors, data, "last_shown_at", not_after=now)
    _check_int(errors, data, "page_number")
    times_shown = _check_int(errors, data, "times_shown")
    _check_tags(errors, data.get("tags"))

    category = data.get("category")
    if category is not None and category not in CATEGORIES:
        errors.append(f"category must be one of: {', '.join(CATEGORIES)}")

    shown = bool(times_shown)
    has_last_shown = last_shown is not None or bool(data.get("last_shown_at"))
    if shown != has_last_shown:
        errors.append("times_shown and last_shown_at must agree (0 <=> never shown)")
    return errors


def validate_cycle_record(data: Any) -> list[str]:
    if not isinstance(data, dict):
        return ["cycle record must be an object"]
    errors: list[str] = []
    _check_str(errors, data, "id", required=True)
    _check_timestamp(errors, data, "timestamp", required=True)
    _check_int(errors, data, "items_added")
    _check_int(errors, data, "items_total")
    if data.get("status") not in {s.value for s in CycleStatus}:
        errors.append(f"status must be one of: {', '.join(s.value for s in CycleStatus)}")
    kind = data.get("kind")
    if kind is not None and kind not in {k.value for k in CycleKind}:
        errors.append(f"kind must be one of: {', '.join(k.value for k in CycleKind)}")
    return errors


def validate_delivery_record(data: Any) -> list[str]:
    if not isinstance(data, dict):
        return ["delivery record must be an object"]
    errors: list[str] = []
    _check_str(errors, data, "id", required=True)
    _check_timestamp(errors, data, "timestamp", required=True)
    _check_str(errors, data, "recipient", max_length=255)
    ids = data.get("highlight_ids")
    if ids is not None and (
        not isinstance(ids, (list, tuple)) or not all(isinstance(i, str) for i in ids)
    ):
        errors.append("highlight_ids must be a list of strings")
    if data.get("status") not in {s.value for s in DeliveryStatus}:
        errors.append(f"status must be one of: {', '.join(s.value for s in DeliveryStatus)}")
    return errors


def validate_source(source: Source) -> list[str]:
    """Validate an already-built Source (ingest path)."""
    return validate_source_record(source.to_dict())


def validate_highlight(highlight: Highlight, now: datetime | None = None) -> list[str]:
    """Validate an already-built Highlight (ingest path)."""
    return validate_highlight_record(highlight.to_dict(), now=now)
