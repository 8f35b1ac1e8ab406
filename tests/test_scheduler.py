"""Tests for scheduler.py"""

import asyncio
import random
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from factories import NOW, make_highlight, make_source, seed
from rereader.core.errors import DeliveryError, SchedulingError, ValidationError
from rereader.core.models import CycleKind, CycleStatus, DeliveryStatus
from rereader.core.scheduler import (
    CycleScheduler,
    RetryPolicy,
    next_trigger_time,
    parse_time_of_day,
    with_retry,
)
from rereader.core.selection import HighlightSelector
from rereader.core.settings import RecallConfig
from rereader.providers.notifier import DeliveryOutcome

FAST = RetryPolicy(timeout=1.0, attempts=3, base_delay=0.0, max_delay=0.0)


def cfg(**kwargs) -> RecallConfig:
    kwargs.setdefault("timezone", "UTC")
    return RecallConfig(**kwargs)


def at(hour: int, minute: int = 0, day: int = 1) -> datetime:
    # 2024-06-01 is a Saturday
    return datetime(2024, 6, day, hour, minute, tzinfo=timezone.utc)


class TestNextTriggerTime:
    def test_daily_rolls_to_tomorrow_when_passed(self):
        config = cfg(recurrence="daily", time_of_day="09:00")
        assert next_trigger_time(config, at(10)) == at(9, day=2)

    def test_daily_later_today(self):
        config = cfg(recurrence="daily", time_of_day="09:00")
        assert next_trigger_time(config, at(8, 30)) == at(9)

    def test_exactly_now_rolls_forward(self):
        config = cfg(recurrence="daily", time_of_day="09:00")
        assert next_trigger_time(config, at(9)) == at(9, day=2)

    def test_weekly_goes_to_configured_weekday(self):
        monday = cfg(recurrence="weekly", time_of_day="09:00", weekday=0)
        assert next_trigger_time(monday, at(10)) == at(9, day=3)

        saturday = cfg(recurrence="weekly", time_of_day="09:00", weekday=5)
        assert next_trigger_time(saturday, at(8)) == at(9)
        assert next_trigger_time(saturday, at(10)) == at(9, day=8)

    def test_manual_has_no_trigger(self):
        assert next_trigger_time(cfg(recurrence="manual"), at(10)) is None

    def test_time_of_day_is_local_to_configured_zone(self):
        # June: New York is UTC-4, so 09:00 there is 13:00 UTC
        config = cfg(recurrence="daily", time_of_day="09:00", timezone="America/New_York")
        assert next_trigger_time(config, at(12)) == at(13)
        assert next_trigger_time(config, at(14)) == at(13, day=2)

    def test_weekly_weekday_is_local_to_configured_zone(self):
        # 2024-06-01 23:30 UTC is already Sunday in Tokyo
        config = cfg(recurrence="weekly", time_of_day="08:00", weekday=6, timezone="Asia/Tokyo")
        assert next_trigger_time(config, at(23, 30)) == at(23, day=8)

    def test_unknown_timezone(self):
        with pytest.raises(SchedulingError):
            next_trigger_time(cfg(timezone="Mars/Olympus_Mons"), at(10))

    @pytest.mark.parametrize("value", ["25:00", "9am", "", "12:60"])
    def test_unparseable_time(self, value):
        with pytest.raises(SchedulingError):
            parse_time_of_day(value)
        with pytest.raises(SchedulingError):
            next_trigger_time(cfg(time_of_day=value), at(10))


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_retries_with_exponential_backoff(self):
        op = AsyncMock(side_effect=[DeliveryError("503"), DeliveryError("503"), "ok"])
        sleep = AsyncMock()
        result = await with_retry(op, RetryPolicy(base_delay=1.0, max_delay=10.0), sleep=sleep)
        assert result == "ok"
        assert op.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        op = AsyncMock(side_effect=DeliveryError("down"))
        with pytest.raises(DeliveryError):
            await with_retry(op, FAST, sleep=AsyncMock())
        assert op.await_count == 3

    @pytest.mark.asyncio
    async def test_non_retriable_raises_immediately(self):
        op = AsyncMock(side_effect=ValidationError("bad"))
        with pytest.raises(ValidationError):
            await with_retry(op, FAST, sleep=AsyncMock())
        assert op.await_count == 1

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self):
        async def hang():
            await asyncio.Event().wait()

        with pytest.raises(asyncio.TimeoutError):
            await with_retry(hang, RetryPolicy(timeout=0.01, attempts=2, base_delay=0.0), sleep=AsyncMock())

    def test_backoff_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0)
        assert [policy.delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 10.0]


def build_scheduler(store, notifier, sleep=None):
    selector = HighlightSelector(store, rng=random.Random(1), clock=lambda: NOW)
    return CycleScheduler(
        store,
        selector,
        notifier,
        retry=FAST,
        clock=lambda: NOW,
        sleep=sleep or AsyncMock(),
    )


def sent_notifier():
    notifier = AsyncMock()
    notifier.deliver.return_value = DeliveryOutcome(DeliveryStatus.SENT, "HTTP 200")
    return notifier


class TestFire:
    @pytest.mark.asyncio
    async def test_successful_cycle_commits_and_records(self, store):
        highlights = [make_highlight(f"h{i}") for i in range(3)]
        await seed(store, [make_source()], highlights)
        notifier = sent_notifier()
        scheduler = build_scheduler(store, notifier)

        outcome = await scheduler.run_now(cfg(highlights_per_cycle=2, recipient="me@example.com"))

        assert outcome.status == "success"
        assert len(outcome.highlight_ids) == 2
        deliverable = notifier.deliver.await_args.args[0]
        assert deliverable.recipient == "me@example.com"
        assert deliverable.sources["B000000001"].title == "Meditations"

        for hid in outcome.highlight_ids:
            assert (await store.get_highlight(hid)).times_shown == 1
        delivery = (await store.list_delivery_records())[0]
        assert delivery.status == DeliveryStatus.SENT
        assert list(delivery.highlight_ids) == outcome.highlight_ids
        cycle = await store.latest_cycle_record(CycleKind.SELECTION)
        assert cycle.status == CycleStatus.SUCCESS
        assert cycle.items_added == 2

    @pytest.mark.asyncio
    async def test_rejected_delivery_does_not_commit(self, store):
        h = make_highlight()
        await seed(store, [make_source()], [h])
        notifier = AsyncMock()
        notifier.deliver.return_value = DeliveryOutcome(DeliveryStatus.FAILED, "HTTP 400: bad recipient")
        scheduler = build_scheduler(store, notifier)

        outcome = await scheduler.run_now(cfg())

        assert outcome.status == "failed"
        assert (await store.get_highlight(h.id)).times_shown == 0
        assert (await store.list_delivery_records())[0].status == DeliveryStatus.FAILED
        assert (await store.latest_cycle_record(CycleKind.SELECTION)).status == CycleStatus.FAILED

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried_then_recorded(self, store):
        await seed(store, [make_source()], [make_highlight()])
        notifier = AsyncMock()
        notifier.deliver.side_effect = DeliveryError("connection refused")
        scheduler = build_scheduler(store, notifier)

        outcome = await scheduler.run_now(cfg())

        assert notifier.deliver.await_count == 3
        assert outcome.status == "failed"
        assert "connection refused" in outcome.delivery.detail

    @pytest.mark.asyncio
    async def test_unexpected_notifier_error_is_recorded(self, store):
        h = make_highlight()
        await seed(store, [make_source()], [h])
        notifier = AsyncMock()
        notifier.deliver.side_effect = RuntimeError("renderer exploded")
        scheduler = build_scheduler(store, notifier)

        outcome = await scheduler.run_now(cfg())

        assert outcome.status == "failed"
        assert notifier.deliver.await_count == 1
        delivery = (await store.list_delivery_records())[0]
        assert delivery.status == DeliveryStatus.FAILED
        assert "renderer exploded" in delivery.detail
        cycle = await store.latest_cycle_record(CycleKind.SELECTION)
        assert cycle.status == CycleStatus.FAILED
        assert (await store.get_highlight(h.id)).times_shown == 0

    @pytest.mark.asyncio
    async def test_empty_corpus_skips_delivery(self, store):
        notifier = sent_notifier()
        outcome = await build_scheduler(store, notifier).run_now(cfg())
        assert outcome.status == "success"
        notifier.deliver.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_overlapping_fire_is_coalesced(self, store):
        await seed(store, [make_source()], [make_highlight()])
        release = asyncio.Event()

        async def slow_deliver(deliverable):
            await release.wait()
            return DeliveryOutcome(DeliveryStatus.SENT)

        notifier = AsyncMock()
        notifier.deliver.side_effect = slow_deliver
        scheduler = build_scheduler(store, notifier)

        first = asyncio.create_task(scheduler.fire("daily", cfg()))
        while notifier.deliver.await_count == 0:
            await asyncio.sleep(0)
        second = await scheduler.fire("daily", cfg())
        release.set()

        assert second.status == "skipped"
        assert (await first).status == "success"
        assert notifier.deliver.await_count == 1


class TestRegister:
    @pytest.mark.asyncio
    async def test_reregister_replaces_pending_trigger(self, store):
        scheduler = build_scheduler(store, sent_notifier(), sleep=lambda _: asyncio.Event().wait())
        first = scheduler.register("daily", cfg(time_of_day="13:00"))
        old_timer = scheduler._timers["daily"]
        second = scheduler.register("daily", cfg(time_of_day="14:00"))
        await asyncio.sleep(0)

        assert first == NOW.replace(hour=13)
        assert second == NOW.replace(hour=14)
        assert old_timer.cancelled()
        assert scheduler.next_run("daily") == second
        scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_invalid_config_keeps_existing_schedule(self, store):
        scheduler = build_scheduler(store, sent_notifier(), sleep=lambda _: asyncio.Event().wait())
        scheduler.register("daily", cfg(time_of_day="13:00"))
        with pytest.raises(SchedulingError):
            scheduler.register("daily", cfg(time_of_day="noon"))
        assert scheduler.next_run("daily") == NOW.replace(hour=13)
        scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_manual_clears_schedule(self, store):
        scheduler = build_scheduler(store, sent_notifier(), sleep=lambda _: asyncio.Event().wait())
        scheduler.register("daily", cfg(time_of_day="13:00"))
        assert scheduler.register("daily", cfg(recurrence="manual")) is None
        assert scheduler.next_run("daily") is None

    @pytest.mark.asyncio
    async def test_schedule_survives_a_crashed_cycle(self, store):
        await seed(store, [make_source()], [make_highlight()])
        delays = []
        second_wait = asyncio.Event()

        async def fake_sleep(delay):
            delays.append(delay)
            if len(delays) > 1:
                second_wait.set()
                await asyncio.Event().wait()

        notifier = sent_notifier()
        scheduler = build_scheduler(store, notifier, sleep=fake_sleep)
        scheduler.selector.select = AsyncMock(side_effect=RuntimeError("index corrupted"))

        scheduler.register("daily", cfg(time_of_day="13:00"))
        await asyncio.wait_for(second_wait.wait(), timeout=1.0)

        assert delays[0] == timedelta(hours=1).total_seconds()
        assert scheduler.selector.select.await_count == 1
        notifier.deliver.assert_not_awaited()
        assert "daily" in scheduler.scheduled_tasks()
        scheduler.stop_all()

    @pytest.mark.asyncio
    async def test_reregister_lets_running_cycle_finish(self, store):
        h = make_highlight()
        await seed(store, [make_source()], [h])
        release = asyncio.Event()
        sleeps = []

        async def fake_sleep(delay):
            sleeps.append(delay)
            if len(sleeps) > 1:
                await asyncio.Event().wait()

        async def slow_deliver(deliverable):
            await release.wait()
            return DeliveryOutcome(DeliveryStatus.SENT)

        notifier = AsyncMock()
        notifier.deliver.side_effect = slow_deliver
        scheduler = build_scheduler(store, notifier, sleep=fake_sleep)

        scheduler.register("daily", cfg(time_of_day="13:00"))
        while notifier.deliver.await_count == 0:
            await asyncio.sleep(0)
        scheduler.register("daily", cfg(time_of_day="14:00"))
        release.set()

        for _ in range(200):
            if await store.latest_cycle_record(CycleKind.SELECTION) is not None:
                break
            await asyncio.sleep(0.005)

        cycle = await store.latest_cycle_record(CycleKind.SELECTION)
        assert cycle is not None and cycle.status == CycleStatus.SUCCESS
        assert (await store.list_delivery_records())[0].status == DeliveryStatus.SENT
        assert (await store.get_highlight(h.id)).times_shown == 1
        assert scheduler.next_run("daily") == NOW.replace(hour=14)
        scheduler.stop_all()
