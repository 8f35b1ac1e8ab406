"""Contract with the external content extractor.

The extractor runs outside this process (it scrapes the reading service's
notebook pages) and hands over a JSON payload shaped like:

    {"status": "success", "data": {"books": [...], "highlights": [...]}}
    {"status": "error", "message": "Not signed in"}

A failed extraction is a value, not an exception: it becomes an
ExtractionBatch with no entities and the message in `errors`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from rereader.core.errors import ValidationError
from rereader.core.models import Highlight, Source, derive_source_id, parse_timestamp, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ExtractionBatch:
    """Sources and highlights delivered by one extractor run."""

    sources: list[Source] = field(default_factory=list)
    highlights: list[Highlight] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @classmethod
    def failure(cls, message: str) -> ExtractionBatch:
        return cls(errors=[message])

    @classmethod
    def from_dict(cls, payload: Any) -> ExtractionBatch:
        """Turn a raw extractor payload into entities.

        Items that cannot be parsed are skipped and described in `errors`;
        field-level validation happens later in Store.ingest_batch.
        """
        if not isinstance(payload, dict):
            return cls.failure("Extractor payload must be an object")

        status = payload.get("status", "success")
        if status != "success":
            message = payload.get("message") or payload.get("error") or "Extraction failed"
            return cls.failure(str(message))

        data = payload.get("data", payload)
        if not isinstance(data, dict):
            return cls.failure("Extractor payload data must be an object")

        batch = cls()
        now = utcnow()
        # Lowercased title -> id, for highlights that only name their book
        ids_by_title: dict[str, str] = {}

        for i, raw in enumerate(data.get("books") or data.get("sources") or []):
            try:
                source = _parse_source(raw, now)
            except (TypeError, ValueError, KeyError) as e:
                batch.errors.append(f"book[{i}]: {e}")
                continue
            ids_by_title[source.title.lower()] = source.id
            batch.sources.append(source)

        for i, raw in enumerate(data.get("highlights") or []):
            try:
                batch.highlights.append(_parse_highlight(raw, ids_by_title, now))
            except (TypeError, ValueError, KeyError, ValidationError) as e:
                batch.errors.append(f"highlight[{i}]: {e}")

        if batch.errors:
            logger.warning(f"Extractor payload had {len(batch.errors)} unparseable items")
        return batch


def _parse_source(raw: Any, now: datetime) -> Source:
    if not isinstance(raw, dict):
        raise TypeError("book must be an object")
    title = str(raw.get("title") or "").strip()
    if not title:
        raise ValueError("book has no title")
    creator = str(raw.get("creator") or raw.get("author") or "").strip()
    source_id = str(raw.get("id") or raw.get("asin") or "").strip()
    return Source(
        id=source_id or derive_source_id(title, creator),
        title=title,
        creator=creator,
        cover_ref=raw.get("cover_ref") or raw.get("coverUrl") or None,
        last_updated=now,
    )


def _parse_highlight(raw: Any, ids_by_title: dict[str, str], now: datetime) -> Highlight:
    if not isinstance(raw, dict):
        raise TypeError("highlight must be an object")
    text = str(raw.get("text") or "").strip()
    if not text:
        raise ValueError("highlight has no text")

    source_id = str(raw.get("source_id") or raw.get("bookAsin") or "").strip()
    if not source_id:
        book_title = str(raw.get("bookTitle") or raw.get("source_title") or "").strip()
        source_id = ids_by_title.get(book_title.lower(), "")
        if not source_id and book_title:
            source_id = derive_source_id(book_title, str(raw.get("author") or ""))
    if not source_id:
        raise ValueError("highlight does not name its book")

    created = raw.get("date_created", raw.get("dateHighlighted"))
    tags = raw.get("tags") or []
    if isinstance(tags, str):
        tags = tags.split(",")

    return Highlight.create(
        source_id=source_id,
        text=text,
        location_label=str(raw.get("location_label") or raw.get("location") or ""),
        date_created=parse_timestamp(created) if created else now,
        category=raw.get("category") or raw.get("color"),
        note=str(raw.get("note") or ""),
        tags=[str(t) for t in tags],
        now=now,
    )
