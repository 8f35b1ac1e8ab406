"""Entity model: sources, highlights and the append-only cycle/delivery records."""

from __future__ import annotations

import hashlib
import json
import re
import sqlite3
import string
import unicodedata
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from rereader.core.categories import DEFAULT_CATEGORY, normalize_category
from rereader.core.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse a stored or imported timestamp into an aware UTC datetime.

    Accepts datetime objects, ISO-8601 strings (a trailing 'Z' is allowed)
    and epoch milliseconds, which is what older snapshot exports contain.
    Naive values are taken to be UTC.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        dt = datetime.fromisoformat(raw)
    else:
        raise ValueError(f"Not a timestamp: {value!r}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat(timespec="microseconds") if value else None


def normalize_highlight_text(text: str) -> str:
    """Normalize text for id derivation.

    - Unicode NFC normalization
    - Normalize whitespace (multiple spaces → single space)
    - Trim
    """
    text = unicodedata.normalize("NFC", text)
    text = " ".join(text.split())
    return text


def highlight_id(source_id: str, text: str) -> str:
    """Derive the stable highlight id from its source and normalized text."""
    normalized = normalize_highlight_text(text)
    digest = hashlib.sha256(f"{source_id}\x1f{normalized}".encode()).hexdigest()
    return f"hl_{digest[:16]}"


_ID_ALPHABET = string.digits + string.ascii_uppercase


def derive_source_id(title: str, creator: str = "") -> str:
    """Surrogate catalog id for sources that arrive without one.

    Shaped like a catalog id: 'B' followed by nine base-36 characters.
    """
    key = f"{normalize_highlight_text(title).lower()}|{normalize_highlight_text(creator).lower()}"
    n = int(hashlib.sha256(key.encode()).hexdigest(), 16)
    chars = []
    for _ in range(9):
        n, rem = divmod(n, 36)
        chars.append(_ID_ALPHABET[rem])
    return "B" + "".join(chars)


_PAGE_RE = re.compile(r"(?:page|p\.?)\s*(\d+)", re.IGNORECASE)
_INT_RE = re.compile(r"(\d+)")


def extract_page_number(location_label: str | None) -> int | None:
    """Pull a page/position number out of a free-form location label.

    'Page 12' and 'p. 12' win; otherwise the first integer in the label
    ('Location 1406-1410' -> 1406). None when the label has no digits.
    """
    if not location_label:
        return None
    match = _PAGE_RE.search(location_label) or _INT_RE.search(location_label)
    return int(match.group(1)) if match else None


class CycleStatus(str, Enum):
    """Outcome of an ingestion or selection cycle."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class CycleKind(str, Enum):
    INGEST = "ingest"
    SELECTION = "selection"


class DeliveryStatus(str, Enum):
    """Status of one hand-off to the notifier."""

    SENT = "sent"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class Source:
    """A work (book, article) that highlights belong to."""

    id: str
    title: str
    creator: str = ""
    cover_ref: str | None = None
    last_updated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "creator": self.creator,
            "cover_ref": self.cover_ref,
            "last_updated": to_iso(self.last_updated),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Source:
        title = str(data.get("title") or "").strip()
        creator = str(data.get("creator") or data.get("author") or "").strip()
        source_id = str(data.get("id") or data.get("asin") or "").strip()
        last_updated = data.get("last_updated", data.get("lastUpdated"))
        return cls(
            id=source_id or derive_source_id(title, creator),
            title=title,
            creator=creator,
            cover_ref=data.get("cover_ref", data.get("coverUrl")) or None,
            last_updated=parse_timestamp(last_updated) if last_updated is not None else utcnow(),
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Source:
        return cls(
            id=row["id"],
            title=row["title"],
            creator=row["creator"] or "",
            cover_ref=row["cover_ref"],
            last_updated=parse_timestamp(row["last_updated"]),
        )


@dataclass(frozen=True)
class Highlight:
    """One stored excerpt with its metadata and show history."""

    id: str
    source_id: str
    text: str
    location_label: str = ""
    page_number: int | None = None
    date_created: datetime = field(default_factory=utcnow)
    date_ingested: datetime = field(default_factory=utcnow)
    category: str = DEFAULT_CATEGORY
    note: str = ""
    tags: frozenset[str] = frozenset()
    times_shown: int = 0
    last_shown_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.times_shown < 0:
            raise ValidationError(f"Highlight {self.id}: times_shown must be >= 0")
        if (self.times_shown == 0) != (self.last_shown_at is None):
            raise ValidationError(
                f"Highlight {self.id}: times_shown and last_shown_at disagree"
            )

    @classmethod
    def create(
        cls,
        *,
        source_id: str,
        text: str,
        location_label: str = "",
        date_created: datetime | None = None,
        category: str | None = None,
        note: str = "",
        tags: Iterable[str] = (),
        now: datetime | None = None,
    ) -> Highlight:
        """Build a never-shown highlight with derived id and page number."""
        now = now or utcnow()
        return cls(
            id=highlight_id(source_id, text),
            source_id=source_id,
            text=text.strip(),
            location_label=location_label or "",
            page_number=extract_page_number(location_label),
            date_created=date_created or now,
            date_ingested=now,
            category=normalize_category(category),
            note=note or "",
            tags=frozenset(t.strip() for t in tags if t and t.strip()),
        )

    @property
    def has_note(self) -> bool:
        return bool(self.note and self.note.strip())

    @property
    def never_shown(self) -> bool:
        return self.last_shown_at is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "text": self.text,
            "location_label": self.location_label,
            "page_number": self.page_number,
            "date_created": to_iso(self.date_created),
            "date_ingested": to_iso(self.date_ingested),
            "category": self.category,
            "note": self.note,
            "tags": sorted(self.tags),
            "times_shown": self.times_shown,
            "last_shown_at": to_iso(self.last_shown_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Highlight:
        """Build from a snapshot/extractor record. Callers validate first."""
        source_id = str(data.get("source_id") or data.get("bookAsin") or "").strip()
        text = str(data.get("text") or "").strip()
        location_label = str(data.get("location_label") or data.get("location") or "")
        created = data.get("date_created", data.get("dateHighlighted"))
        ingested = data.get("date_ingested", data.get("dateAdded"))
        last_shown = data.get("last_shown_at", data.get("lastShown"))
        times_shown = int(data.get("times_shown", data.get("timesShown")) or 0)
        page_number = data.get("page_number")
        now = utcnow()
        return cls(
            id=str(data.get("id") or highlight_id(source_id, text)),
            source_id=source_id,
            text=text,
            location_label=location_label,
            page_number=int(page_number) if page_number not in (None, "") else extract_page_number(location_label),
            date_created=parse_timestamp(created) if created is not None else now,
            date_ingested=parse_timestamp(ingested) if ingested is not None else now,
            category=normalize_category(data.get("category", data.get("color"))),
            note=str(data.get("note") or ""),
            tags=frozenset(str(t).strip() for t in (data.get("tags") or []) if str(t).strip()),
            times_shown=times_shown,
            last_shown_at=parse_timestamp(last_shown) if last_shown and times_shown else None,
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Highlight:
        return cls(
            id=row["id"],
            source_id=row["source_id"],
            text=row["text"],
            location_label=row["location_label"] or "",
            page_number=row["page_number"],
            date_created=parse_timestamp(row["date_created"]),
            date_ingested=parse_timestamp(row["date_ingested"]),
            category=row["category"],
            note=row["note"] or "",
            tags=frozenset(json.loads(row["tags"] or "[]")),
            times_shown=row["times_shown"],
            last_shown_at=parse_timestamp(row["last_shown_at"]) if row["last_shown_at"] else None,
        )


@dataclass(frozen=True)
class CycleRecord:
    """Outcome of one ingestion or selection cycle."""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)
    kind: CycleKind = CycleKind.INGEST
    items_added: int = 0
    items_total: int = 0
    status: CycleStatus = CycleStatus.SUCCESS
    error_message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": to_iso(self.timestamp),
            "kind": self.kind.value,
            "items_added": self.items_added,
            "items_total": self.items_total,
            "status": self.status.value,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CycleRecord:
        ts = data.get("timestamp", data.get("syncDate"))
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            timestamp=parse_timestamp(ts) if ts is not None else utcnow(),
            kind=CycleKind(data.get("kind") or CycleKind.INGEST.value),
            items_added=int(data.get("items_added", data.get("highlightsAdded")) or 0),
            items_total=int(data.get("items_total", data.get("highlightsTotal")) or 0),
            status=CycleStatus(data.get("status") or CycleStatus.SUCCESS.value),
            error_message=str(data.get("error_message", data.get("errorMessage")) or ""),
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> CycleRecord:
        return cls(
            id=row["id"],
            timestamp=parse_timestamp(row["timestamp"]),
            kind=CycleKind(row["kind"]),
            items_added=row["items_added"],
            items_total=row["items_total"],
            status=CycleStatus(row["status"]),
            error_message=row["error_message"] or "",
        )


@dataclass(frozen=True)
class DeliveryRecord:
    """One hand-off of a highlight set to the notifier."""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)
    recipient: str = ""
    highlight_ids: tuple[str, ...] = ()
    status: DeliveryStatus = DeliveryStatus.PENDING
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": to_iso(self.timestamp),
            "recipient": self.recipient,
            "highlight_ids": list(self.highlight_ids),
            "status": self.status.value,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeliveryRecord:
        ts = data.get("timestamp", data.get("sentDate"))
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            timestamp=parse_timestamp(ts) if ts is not None else utcnow(),
            recipient=str(data.get("recipient") or ""),
            highlight_ids=tuple(str(h) for h in (data.get("highlight_ids", data.get("highlightIds")) or [])),
            status=DeliveryStatus(data.get("status") or DeliveryStatus.PENDING.value),
            detail=str(data.get("detail") or ""),
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> DeliveryRecord:
        return cls(
            id=row["id"],
            timestamp=parse_timestamp(row["timestamp"]),
            recipient=row["recipient"] or "",
            highlight_ids=tuple(json.loads(row["highlight_ids"] or "[]")),
            status=DeliveryStatus(row["status"]),
            detail=row["detail"] or "",
        )
