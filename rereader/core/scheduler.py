"""Recurring selection/delivery cycles.

A registered task owns one asyncio.Task that sleeps until the next trigger
time, fires a cycle and goes back to sleep. A failed cycle is recorded and
the schedule stays installed; the next trigger simply tries again.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo
from datetime import timezone as dt_timezone
from typing import Any, Awaitable, Callable, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from rereader.core.errors import (
    DeliveryError,
    NotFoundError,
    RecallError,
    SchedulingError,
    StorageError,
)
from rereader.core.models import (
    CycleKind,
    CycleRecord,
    CycleStatus,
    DeliveryRecord,
    DeliveryStatus,
    Highlight,
    Source,
    to_iso,
    utcnow,
)
from rereader.core.selection import HighlightSelector, SelectionConstraints
from rereader.core.settings import RecallConfig, Settings
from rereader.core.storage import Store
from rereader.providers.notifier import Deliverable, DeliveryOutcome, Notifier

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

# Errors worth another attempt; everything else fails the cycle immediately
RETRIABLE_ERRORS = (DeliveryError, StorageError, asyncio.TimeoutError)


def parse_time_of_day(value: str) -> tuple[int, int]:
    """Parse 'HH:MM' (24h) into (hour, minute)."""
    match = _TIME_RE.match((value or "").strip())
    if not match:
        raise SchedulingError(f"Invalid time of day: {value!r} (expected HH:MM)")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise SchedulingError(f"Invalid time of day: {value!r} (expected HH:MM)")
    return hour, minute


def resolve_timezone(name: str) -> tzinfo | None:
    """IANA zone for `name`; None means the host's local time.

    Raises:
        SchedulingError: unknown zone name
    """
    name = (name or "").strip()
    if not name:
        return None
    if name.upper() == "UTC":
        return dt_timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise SchedulingError(f"Unknown timezone: {name!r}") from e


def next_trigger_time(config: RecallConfig, now: datetime) -> datetime | None:
    """When the next cycle should fire, strictly after `now`.

    time_of_day is wall-clock time in config.timezone (host local time when
    unset); the result is expressed in now's timezone. Returns None for
    manual recurrence.

    Raises:
        SchedulingError: unparseable time_of_day, unknown timezone or
            unknown recurrence
    """
    if config.recurrence == "manual":
        return None
    hour, minute = parse_time_of_day(config.time_of_day)
    zone = resolve_timezone(config.timezone)
    today = now.astimezone(zone).date()

    def at(day: date) -> datetime:
        wall = datetime.combine(day, time(hour, minute))
        # Naive astimezone() reads the wall time as host local time
        local = wall.replace(tzinfo=zone) if zone is not None else wall.astimezone()
        return local.astimezone(now.tzinfo)

    if config.recurrence == "daily":
        candidate = at(today)
        if candidate <= now:
            candidate = at(today + timedelta(days=1))
        return candidate
    if config.recurrence == "weekly":
        day = today + timedelta(days=(config.weekday - today.weekday()) % 7)
        candidate = at(day)
        if candidate <= now:
            candidate = at(day + timedelta(days=7))
        return candidate
    raise SchedulingError(f"Unknown recurrence: {config.recurrence!r}")


@dataclass(frozen=True)
class RetryPolicy:
    timeout: float = 30.0
    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            timeout=settings.operation_timeout_seconds,
            attempts=max(1, settings.max_retries),
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    def delay(self, attempt: int) -> float:
        """Backoff after the given (1-based) failed attempt."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)


async def with_retry(
    op: Callable[[], Awaitable[T]],
    policy: RetryPolicy = RetryPolicy(),
    *,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run op with a timeout per attempt and exponential backoff between attempts.

    Only RETRIABLE_ERRORS are retried; the last one is re-raised once the
    attempts run out.
    """
    for attempt in range(1, policy.attempts + 1):
        try:
            return await asyncio.wait_for(op(), timeout=policy.timeout)
        except RETRIABLE_ERRORS as e:
            if attempt == policy.attempts:
                logger.error(f"{description} failed after {attempt} attempts: {e!r}")
                raise
            wait_time = policy.delay(attempt)
            logger.warning(
                f"{description} failed ({e!r}). Retrying in {wait_time:.1f}s "
                f"(attempt {attempt}/{policy.attempts})"
            )
            await sleep(wait_time)
    # Should not reach here, attempts >= 1
    raise RuntimeError(f"{description}: retry loop exited without a result")


@dataclass
class CycleOutcome:
    """Result of one fired cycle. status is a CycleStatus value or 'skipped'."""

    task: str
    status: str
    highlight_ids: list[str] = field(default_factory=list)
    message: str = ""
    delivery: DeliveryRecord | None = None
    cycle_record: CycleRecord | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task,
            "status": self.status,
            "highlight_ids": list(self.highlight_ids),
            "message": self.message,
            "delivery": self.delivery.to_dict() if self.delivery else None,
            "cycle_record": self.cycle_record.to_dict() if self.cycle_record else None,
        }


class CycleScheduler:
    def __init__(
        self,
        store: Store,
        selector: HighlightSelector,
        notifier: Notifier,
        retry: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.selector = selector
        self.notifier = notifier
        self.retry = retry or RetryPolicy()
        self.clock = clock
        self._sleep = sleep
        self._timers: dict[str, asyncio.Task] = {}
        self._next_runs: dict[str, datetime] = {}
        self._in_flight: set[str] = set()
        self._cycles: set[asyncio.Task] = set()

    # ==================== Registration ====================

    def register(self, task: str, config: RecallConfig) -> datetime | None:
        """(Re)install the schedule for `task`. Must be called from the event loop.

        Any pending trigger for the same task is cancelled first, so calling
        this again after a config change never leaves two timers behind.
        Returns the next trigger time, or None for manual recurrence.

        Raises:
            SchedulingError: invalid time_of_day or recurrence; the previous
                schedule is left untouched
        """
        next_at = next_trigger_time(config, self.clock())
        self.clear(task)
        if next_at is None:
            logger.info(f"Task {task}: manual recurrence, nothing scheduled")
            return None
        self._next_runs[task] = next_at
        self._timers[task] = asyncio.get_running_loop().create_task(
            self._run_schedule(task, config), name=f"cycle:{task}"
        )
        logger.info(f"Task {task}: next cycle at {to_iso(next_at)}")
        return next_at

    def clear(self, task: str) -> bool:
        """Cancel the pending trigger for `task`. Returns True if one existed.

        A cycle that is already running is not interrupted.
        """
        self._next_runs.pop(task, None)
        timer = self._timers.pop(task, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def stop_all(self) -> None:
        """Cancel every timer and any cycle still running (shutdown)."""
        for task in list(self._timers):
            self.clear(task)
        for cycle in list(self._cycles):
            cycle.cancel()
        logger.info("All scheduled cycles stopped")

    def next_run(self, task: str) -> datetime | None:
        return self._next_runs.get(task)

    def scheduled_tasks(self) -> dict[str, str | None]:
        return {task: to_iso(at) for task, at in self._next_runs.items()}

    async def _run_schedule(self, task: str, config: RecallConfig) -> None:
        while True:
            next_at = next_trigger_time(config, self.clock())
            if next_at is None:
                return
            self._next_runs[task] = next_at
            await self._sleep(max(0.0, (next_at - self.clock()).total_seconds()))
            # The cycle runs in its own task: cancelling this timer (re-register)
            # must not interrupt a delivery that is already under way.
            cycle = asyncio.get_running_loop().create_task(self.fire(task, config), name=f"cycle-run:{task}")
            self._cycles.add(cycle)
            cycle.add_done_callback(functools.partial(self._cycle_done, task))
            await asyncio.wait({cycle})

    def _cycle_done(self, task: str, cycle: asyncio.Task) -> None:
        self._cycles.discard(cycle)
        if cycle.cancelled():
            return
        exc = cycle.exception()
        if exc is not None:
            # The schedule must survive a broken cycle
            logger.error(f"Task {task}: cycle crashed: {exc!r}", exc_info=exc)

    # ==================== Firing ====================

    async def run_now(self, config: RecallConfig, task: str = "default") -> CycleOutcome:
        """Manual trigger: fire one cycle immediately."""
        return await self.fire(task, config)

    async def fire(self, task: str, config: RecallConfig) -> CycleOutcome:
        """Run one cycle. A firing while the same task is in flight is skipped."""
        if task in self._in_flight:
            logger.warning(f"Task {task}: cycle already in flight, skipping trigger")
            return CycleOutcome(task=task, status="skipped", message="Cycle already in progress")
        self._in_flight.add(task)
        try:
            return await self._run_cycle(task, config)
        finally:
            self._in_flight.discard(task)

    async def _run_cycle(self, task: str, config: RecallConfig) -> CycleOutcome:
        started = self.clock()
        logger.info(f"Task {task}: cycle started ({config.selection_mode}, {config.highlights_per_cycle} highlights)")

        try:
            highlights = await with_retry(
                lambda: self.selector.select(
                    config.highlights_per_cycle,
                    config.selection_mode,
                    SelectionConstraints.from_config(config),
                ),
                self.retry,
                description=f"Task {task}: selection",
                sleep=self._sleep,
            )
        except (RecallError, asyncio.TimeoutError) as e:
            return await self._fail(task, started, f"Selection failed: {_describe(e)}")

        if not highlights:
            record = await self._record_cycle(
                CycleRecord(
                    timestamp=started,
                    kind=CycleKind.SELECTION,
                    status=CycleStatus.SUCCESS,
                    error_message="No highlights available",
                )
            )
            return CycleOutcome(
                task=task, status=CycleStatus.SUCCESS.value, message="No highlights available", cycle_record=record
            )

        ids = [h.id for h in highlights]
        deliverable = Deliverable(
            highlights=tuple(highlights),
            recipient=config.recipient,
            render_hints={"selection_mode": config.selection_mode, "cycle_started_at": to_iso(started)},
            sources=await self._sources_for(highlights),
        )

        try:
            outcome = await with_retry(
                lambda: self.notifier.deliver(deliverable),
                self.retry,
                description=f"Task {task}: delivery",
                sleep=self._sleep,
            )
        except Exception as e:
            # Notifier is a protocol; whatever it raises is a failed delivery
            if not isinstance(e, RETRIABLE_ERRORS):
                logger.exception(f"Task {task}: notifier raised {e!r}")
            outcome = DeliveryOutcome(DeliveryStatus.FAILED, _describe(e))

        delivery = DeliveryRecord(
            timestamp=self.clock(),
            recipient=config.recipient,
            highlight_ids=tuple(ids),
            status=outcome.status,
            detail=outcome.detail,
        )
        try:
            await with_retry(
                lambda: self.store.append_delivery_record(delivery),
                self.retry,
                description=f"Task {task}: delivery record",
                sleep=self._sleep,
            )
        except (StorageError, asyncio.TimeoutError) as e:
            logger.error(f"Task {task}: could not persist delivery record: {_describe(e)}")

        if not outcome.sent:
            failed = await self._fail(task, started, f"Delivery failed: {outcome.detail}", ids=ids)
            failed.delivery = delivery
            return failed

        results = await self.selector.commit_selection(ids)
        committed = [r.id for r in results if r.ok]
        errors = [f"{r.id}: {r.error.message}" for r in results if r.error is not None]
        status = CycleStatus.PARTIAL if errors else CycleStatus.SUCCESS
        record = await self._record_cycle(
            CycleRecord(
                timestamp=started,
                kind=CycleKind.SELECTION,
                items_added=len(committed),
                items_total=len(ids),
                status=status,
                error_message="; ".join(errors),
            )
        )
        logger.info(f"Task {task}: delivered {len(ids)} highlights ({status.value})")
        return CycleOutcome(
            task=task,
            status=status.value,
            highlight_ids=ids,
            message=f"Delivered {len(ids)} highlights",
            delivery=delivery,
            cycle_record=record,
        )

    async def _sources_for(self, highlights: list[Highlight]) -> dict[str, Source]:
        sources: dict[str, Source] = {}
        for source_id in {h.source_id for h in highlights}:
            try:
                sources[source_id] = await self.store.get_source(source_id)
            except NotFoundError:
                # Orphaned highlight; the notifier gets it without source details
                continue
        return sources

    async def _fail(self, task: str, started: datetime, message: str, ids: list[str] | None = None) -> CycleOutcome:
        logger.error(f"Task {task}: {message}")
        record = await self._record_cycle(
            CycleRecord(
                timestamp=started,
                kind=CycleKind.SELECTION,
                items_total=len(ids or []),
                status=CycleStatus.FAILED,
                error_message=message[:1000],
            )
        )
        return CycleOutcome(
            task=task,
            status=CycleStatus.FAILED.value,
            highlight_ids=list(ids or []),
            message=message,
            cycle_record=record,
        )

    async def _record_cycle(self, record: CycleRecord) -> CycleRecord | None:
        try:
            return await with_retry(
                lambda: self.store.append_cycle_record(record),
                self.retry,
                description="cycle record",
                sleep=self._sleep,
            )
        except (StorageError, asyncio.TimeoutError) as e:
            logger.error(f"Could not persist cycle record: {_describe(e)}")
            return None


def _describe(e: BaseException) -> str:
    if isinstance(e, RecallError):
        return e.message
    if isinstance(e, asyncio.TimeoutError):
        return "timed out"
    return str(e) or e.__class__.__name__
