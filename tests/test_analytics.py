"""Tests for analytics.py"""

from datetime import timedelta

import pytest

from factories import NOW, make_highlight, make_source, seed
from rereader.core.analytics import (
    Analytics,
    most_frequent_category,
    most_highlighted_source,
    time_span,
    top_tags,
)
from rereader.core.models import CycleRecord, CycleStatus


class TestHelpers:
    def test_most_frequent_category_ties_by_name(self):
        highlights = [make_highlight("a", category="pink"), make_highlight("b", category="blue")]
        assert most_frequent_category(highlights) == "blue"
        assert most_frequent_category([]) == "yellow"

    def test_top_tags_ties_by_tag(self):
        highlights = [
            make_highlight("a", tags=["zen", "stoa"]),
            make_highlight("b", tags=["stoa", "art"]),
            make_highlight("c", tags=["zen"]),
        ]
        assert top_tags(highlights, 2) == [{"tag": "stoa", "count": 2}, {"tag": "zen", "count": 2}]

    def test_most_highlighted_source_ties_by_last_updated(self):
        older = make_source("B1", last_updated=NOW - timedelta(days=5))
        newer = make_source("B2", last_updated=NOW)
        highlights = [make_highlight("a", "B1"), make_highlight("b", "B2")]
        assert most_highlighted_source([older, newer], highlights)["id"] == "B2"
        assert most_highlighted_source([older], []) is None

    def test_span_ceil_with_minimum_one_day(self):
        same_day = [make_highlight("a", created_days_ago=1), make_highlight("b", created_days_ago=1)]
        assert time_span(same_day)["highlighting_span_days"] == 1
        assert time_span(same_day)["average_highlights_per_day"] == 2.0

        spread = [make_highlight("a", created_days_ago=10), make_highlight("b", created_days_ago=7.5)]
        span = time_span(spread)
        assert span["highlighting_span_days"] == 3
        assert span["average_highlights_per_day"] == 0.7


class TestAnalytics:
    @pytest.mark.asyncio
    async def test_stats_never_synced(self, store):
        stats = await Analytics(store).get_stats()
        assert stats == {
            "total_sources": 0,
            "total_highlights": 0,
            "last_sync_time": None,
            "sync_status": "never_synced",
        }

    @pytest.mark.asyncio
    async def test_advanced_stats(self, store):
        await seed(
            store,
            [make_source("B1"), make_source("B2"), make_source("B3")],
            [
                make_highlight("a", "B1", note="n", tags=["t1"], category="blue"),
                make_highlight("b", "B1", tags=["t1", "t2"], category="blue"),
                make_highlight("c", "B2"),
            ],
        )
        await store.append_cycle_record(CycleRecord(timestamp=NOW, status=CycleStatus.PARTIAL))

        stats = await Analytics(store).get_advanced_stats()

        assert stats["total_highlights"] == 3
        assert stats["sync_status"] == "partial"
        assert stats["sources_with_highlights"] == 2
        assert stats["sources_without_highlights"] == 1
        assert stats["average_highlights_per_source"] == 1.5
        assert stats["most_highlighted_source"]["id"] == "B1"
        assert stats["category_distribution"]["blue"] == 2
        assert stats["most_used_category"] == "blue"
        assert stats["highlights_with_notes"] == 1
        assert stats["unique_tags"] == 2
        assert stats["top_tags"][0] == {"tag": "t1", "count": 2}

    @pytest.mark.asyncio
    async def test_deterministic(self, store):
        await seed(store, [make_source()], [make_highlight("a"), make_highlight("b", tags=["x"])])
        analytics = Analytics(store)
        assert await analytics.get_advanced_stats() == await analytics.get_advanced_stats()

    @pytest.mark.asyncio
    async def test_selection_stats(self, store):
        await seed(
            store,
            [make_source()],
            [make_highlight("a"), make_highlight("b", times_shown=3, shown_days_ago=2)],
        )
        stats = await Analytics(store).get_selection_stats()
        assert stats["never_shown"] == 1
        assert stats["average_times_shown"] == 1.5
        assert stats["show_distribution"] == {"0": 1, "3": 1}
        assert stats["spaced_repetition_intervals"] == [1, 3, 7, 14, 30, 90, 180, 365]
