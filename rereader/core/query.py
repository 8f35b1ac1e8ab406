from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import cmp_to_key
from typing import Iterable

from rereader.core.categories import normalize_category
from rereader.core.errors import ValidationError
from rereader.core.models import Highlight, extract_page_number
from rereader.core.storage import Store

logger = logging.getLogger(__name__)

SORT_KEYS = ("date_ingested", "date_created", "category", "position")


@dataclass
class SearchFilters:
    """Narrowing filters for HighlightQuery.search. Empty means 'any'."""

    source_ids: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    created_after: datetime | None = None
    created_before: datetime | None = None
    has_note: bool | None = None
    tags: tuple[str, ...] = field(default_factory=tuple)

    def matches(self, h: Highlight) -> bool:
        if self.source_ids and h.source_id not in self.source_ids:
            return False
        if self.categories and h.category not in {normalize_category(c) for c in self.categories}:
            return False
        if self.created_after and h.date_created < self.created_after:
            return False
        if self.created_before and h.date_created > self.created_before:
            return False
        if self.has_note is not None and h.has_note != self.has_note:
            return False
        if self.tags and not (h.tags & set(self.tags)):
            return False
        return True


def _matches_text(h: Highlight, needle: str) -> bool:
    if needle in h.text.lower() or needle in h.note.lower():
        return True
    return any(needle in t.lower() for t in h.tags)


class HighlightQuery:
    """Search over the committed highlight set."""

    def __init__(self, store: Store) -> None:
        self.store = store

    async def search(self, text: str = "", filters: SearchFilters | None = None) -> list[Highlight]:
        """Case-insensitive substring search over text, note and tags.

        Results are ordered by date_created, newest first.
        """
        filters = filters or SearchFilters()
        needle = (text or "").strip().lower()
        highlights = await self.store.list_highlights()
        results = [
            h for h in highlights
            if filters.matches(h) and (not needle or _matches_text(h, needle))
        ]
        results.sort(key=lambda h: (h.date_created, h.id), reverse=True)
        logger.debug(f"search {needle!r}: {len(results)} of {len(highlights)} highlights")
        return results


def _compare_position(a: Highlight, b: Highlight) -> int:
    pa = extract_page_number(a.location_label)
    pb = extract_page_number(b.location_label)
    if pa is not None and pb is not None:
        if pa != pb:
            return -1 if pa < pb else 1
    elif a.location_label != b.location_label:
        return -1 if a.location_label < b.location_label else 1
    # Ties: newest first
    if a.date_created != b.date_created:
        return -1 if a.date_created > b.date_created else 1
    return 0


def sort_highlights(highlights: Iterable[Highlight], key: str) -> list[Highlight]:
    """Sort by one of SORT_KEYS. Dates sort newest first; category and position ascending."""
    items = list(highlights)
    if key == "date_ingested":
        return sorted(items, key=lambda h: h.date_ingested, reverse=True)
    if key == "date_created":
        return sorted(items, key=lambda h: h.date_created, reverse=True)
    if key == "category":
        # Stable: within a category keep newest first
        items = sorted(items, key=lambda h: h.date_created, reverse=True)
        return sorted(items, key=lambda h: h.category)
    if key == "position":
        return sorted(items, key=cmp_to_key(_compare_position))
    raise ValidationError(f"Unknown sort key: {key}. Must be one of: {', '.join(SORT_KEYS)}")


def paginate(highlights: list[Highlight], page_size: int, page_number: int) -> list[Highlight]:
    """Return one 1-based page. Out-of-range pages are empty."""
    if page_size <= 0 or page_number <= 0:
        return []
    start = (page_number - 1) * page_size
    return highlights[start : start + page_size]
