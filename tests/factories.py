"""Builders for test entities. Times are relative to a fixed NOW."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

from rereader.core.models import Highlight, Source
from rereader.core.storage import Store

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_source(source_id: str = "B000000001", title: str = "Meditations", **kwargs) -> Source:
    kwargs.setdefault("creator", "Marcus Aurelius")
    kwargs.setdefault("last_updated", NOW - timedelta(days=1))
    return Source(id=source_id, title=title, **kwargs)


def make_highlight(
    text: str = "The impediment to action advances action.",
    source_id: str = "B000000001",
    *,
    created_days_ago: float = 30,
    times_shown: int = 0,
    shown_days_ago: float | None = None,
    **kwargs,
) -> Highlight:
    created = NOW - timedelta(days=created_days_ago)
    h = Highlight.create(
        source_id=source_id,
        text=text,
        location_label=kwargs.pop("location_label", "Location 100"),
        date_created=created,
        category=kwargs.pop("category", None),
        note=kwargs.pop("note", ""),
        tags=kwargs.pop("tags", ()),
        now=created,
    )
    if times_shown:
        h = replace(
            h,
            times_shown=times_shown,
            last_shown_at=NOW - timedelta(days=shown_days_ago if shown_days_ago is not None else 1),
        )
    return h


async def seed(store: Store, sources: list[Source], highlights: list[Highlight]) -> None:
    for s in sources:
        await store.upsert_source(s)
    for h in highlights:
        await store.replace_highlight(h)
