from __future__ import annotations

import logging
import math
from collections import Counter
from typing import Any

from rereader.core.categories import CATEGORIES, DEFAULT_CATEGORY
from rereader.core.models import CycleKind, Highlight, Source, to_iso
from rereader.core.selection import SPACED_REPETITION_INTERVALS
from rereader.core.storage import Store

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


def category_counts(highlights: list[Highlight]) -> dict[str, int]:
    counts = {c: 0 for c in CATEGORIES}
    for h in highlights:
        counts[h.category] = counts.get(h.category, 0) + 1
    return counts


def most_frequent_category(highlights: list[Highlight]) -> str:
    """Most used category; ties go to the alphabetically first name."""
    if not highlights:
        return DEFAULT_CATEGORY
    counts = Counter(h.category for h in highlights)
    return min(counts, key=lambda c: (-counts[c], c))


def top_tags(highlights: list[Highlight], n: int = 5) -> list[dict[str, Any]]:
    counts = Counter(tag for h in highlights for tag in h.tags)
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [{"tag": tag, "count": count} for tag, count in ranked[:n]]


def most_highlighted_source(sources: list[Source], highlights: list[Highlight]) -> dict[str, Any] | None:
    """Source with the most highlights; ties by most recent last_updated, then id."""
    counts = Counter(h.source_id for h in highlights)
    candidates = [s for s in sources if counts.get(s.id)]
    if not candidates:
        return None
    best = min(candidates, key=lambda s: (-counts[s.id], -s.last_updated.timestamp(), s.id))
    return {
        "id": best.id,
        "title": best.title,
        "creator": best.creator,
        "highlight_count": counts[best.id],
    }


def time_span(highlights: list[Highlight]) -> dict[str, Any]:
    """Span in whole days (ceil, at least 1) between oldest and newest date_created."""
    if not highlights:
        return {
            "oldest_highlight": None,
            "newest_highlight": None,
            "highlighting_span_days": 0,
            "average_highlights_per_day": 0.0,
        }
    dates = sorted(h.date_created for h in highlights)
    oldest, newest = dates[0], dates[-1]
    span_days = max(1, math.ceil((newest - oldest).total_seconds() / SECONDS_PER_DAY))
    return {
        "oldest_highlight": to_iso(oldest),
        "newest_highlight": to_iso(newest),
        "highlighting_span_days": span_days,
        "average_highlights_per_day": round(len(highlights) / span_days, 1),
    }


class Analytics:
    """Read-only aggregates over the committed store."""

    def __init__(self, store: Store) -> None:
        self.store = store

    async def get_stats(self) -> dict[str, Any]:
        sources = await self.store.list_sources()
        highlights = await self.store.list_highlights()
        last_ingest = await self.store.latest_cycle_record(CycleKind.INGEST)
        return {
            "total_sources": len(sources),
            "total_highlights": len(highlights),
            "last_sync_time": to_iso(last_ingest.timestamp) if last_ingest else None,
            "sync_status": last_ingest.status.value if last_ingest else "never_synced",
        }

    async def get_advanced_stats(self, top_n: int = 5) -> dict[str, Any]:
        sources = await self.store.list_sources()
        highlights = await self.store.list_highlights()
        stats = await self.get_stats()

        per_source = Counter(h.source_id for h in highlights)
        source_ids = {s.id for s in sources}
        with_highlights = sum(1 for sid in per_source if sid in source_ids)
        with_notes = sum(1 for h in highlights if h.has_note)

        stats.update(
            {
                "sources_with_highlights": with_highlights,
                "sources_without_highlights": len(sources) - with_highlights,
                "average_highlights_per_source": (
                    round(sum(per_source.values()) / len(per_source), 1) if per_source else 0.0
                ),
                "most_highlighted_source": most_highlighted_source(sources, highlights),
                "category_distribution": category_counts(highlights),
                "most_used_category": most_frequent_category(highlights),
                "highlights_with_notes": with_notes,
                "highlights_without_notes": len(highlights) - with_notes,
                "unique_tags": len({t for h in highlights for t in h.tags}),
                "top_tags": top_tags(highlights, top_n),
                **time_span(highlights),
            }
        )
        return stats

    async def get_selection_stats(self) -> dict[str, Any]:
        highlights = await self.store.list_highlights()
        deliveries = await self.store.list_delivery_records(limit=50)
        total = len(highlights)
        distribution = Counter(h.times_shown for h in highlights)
        return {
            "total_highlights": total,
            "highlights_with_notes": sum(1 for h in highlights if h.has_note),
            "tagged_highlights": sum(1 for h in highlights if h.tags),
            "never_shown": sum(1 for h in highlights if h.never_shown),
            "average_times_shown": round(sum(h.times_shown for h in highlights) / total, 1) if total else 0.0,
            "show_distribution": {str(k): distribution[k] for k in sorted(distribution)},
            "recent_deliveries": len(deliveries),
            "spaced_repetition_intervals": list(SPACED_REPETITION_INTERVALS),
        }
