"""Highlight selection strategies.

All strategies are pure reads over the committed store: select() and
preview() never change show history. The scheduler calls
commit_selection() once a delivery has actually gone out.
"""

from __future__ import annotations

import logging
import random
from collections import defaultdict
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from rereader.core.categories import normalize_category
from rereader.core.errors import ItemResult, RecallError, ValidationError
from rereader.core.models import Highlight, utcnow
from rereader.core.settings import MODE_ALIASES, RecallConfig
from rereader.core.storage import Store

logger = logging.getLogger(__name__)

# Review ladder in days, indexed by times_shown (capped at the last rung)
SPACED_REPETITION_INTERVALS = (1, 3, 7, 14, 30, 90, 180, 365)

# Days-since-shown assumed for a highlight that was never shown
NEVER_SHOWN_DAYS = 999.0

NOTE_BOOST = 1.5
TAG_BOOST = 1.2
OVERSHOWN_PENALTY = 0.8
OVERSHOWN_THRESHOLD = 5
MAX_JITTER = 0.1

SECONDS_PER_DAY = 86400.0


class SelectionMode(str, Enum):
    RANDOM = "random"
    SPACED_REPETITION = "spaced-repetition"
    OLDEST_FIRST = "oldest-first"
    NEWEST_FIRST = "newest-first"
    BALANCED_BY_SOURCE = "balanced-by-source"
    WEIGHTED = "weighted"

    @classmethod
    def parse(cls, value: str | SelectionMode | None) -> SelectionMode:
        """Resolve a mode name, accepting legacy aliases.

        Raises:
            ValidationError: unknown mode
        """
        if value is None or value == "":
            return cls.SPACED_REPETITION
        if isinstance(value, cls):
            return value
        name = MODE_ALIASES.get(str(value).strip(), str(value).strip())
        try:
            return cls(name)
        except ValueError:
            raise ValidationError(
                f"Unknown selection mode: {value}. Must be one of: {', '.join(m.value for m in cls)}"
            ) from None


@dataclass(frozen=True)
class SelectionConstraints:
    """Which highlights are eligible for a cycle. Empty tuples mean 'any'."""

    source_ids: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    min_age_days: int = 0
    tags: tuple[str, ...] = ()

    @classmethod
    def from_config(cls, config: RecallConfig) -> SelectionConstraints:
        return cls(
            source_ids=config.source_filter,
            categories=config.category_filter,
            min_age_days=config.min_age_days,
            tags=config.tag_filter,
        )

    def allows(self, h: Highlight, now: datetime) -> bool:
        if self.source_ids and h.source_id not in self.source_ids:
            return False
        if self.categories and h.category not in {normalize_category(c) for c in self.categories}:
            return False
        if self.min_age_days > 0 and h.date_created > now - timedelta(days=self.min_age_days):
            return False
        if self.tags and not (h.tags & set(self.tags)):
            return False
        return True


@dataclass(frozen=True)
class WeightVector:
    """Component weights for the weighted strategy. Must sum to 1."""

    spaced_repetition: float = 0.4
    has_note: float = 0.2
    recency: float = 0.15
    frequency: float = 0.1
    has_tags: float = 0.1
    randomness: float = 0.05

    def __post_init__(self) -> None:
        values = [getattr(self, f.name) for f in fields(self)]
        if any(v < 0 for v in values):
            raise ValidationError("Weights must be non-negative")
        if abs(sum(values) - 1.0) > 1e-6:
            raise ValidationError(f"Weights must sum to 1 (got {sum(values):.4f})")


DEFAULT_WEIGHTS = WeightVector()


def days_since_shown(h: Highlight, now: datetime) -> float:
    if h.last_shown_at is None:
        return NEVER_SHOWN_DAYS
    return max(0.0, (now - h.last_shown_at).total_seconds() / SECONDS_PER_DAY)


def target_interval(times_shown: int) -> int:
    return SPACED_REPETITION_INTERVALS[min(times_shown, len(SPACED_REPETITION_INTERVALS) - 1)]


def base_overdue_score(h: Highlight, now: datetime) -> float:
    """How overdue a highlight is relative to its place on the ladder."""
    return days_since_shown(h, now) / target_interval(h.times_shown)


def spaced_repetition_score(h: Highlight, now: datetime, jitter: float = 0.0) -> float:
    score = base_overdue_score(h, now)
    if h.has_note:
        score *= NOTE_BOOST
    if h.tags:
        score *= TAG_BOOST
    if h.times_shown > OVERSHOWN_THRESHOLD:
        score *= OVERSHOWN_PENALTY
    return score + jitter


def weighted_score(
    h: Highlight,
    now: datetime,
    *,
    spaced_max: float,
    weights: WeightVector = DEFAULT_WEIGHTS,
    noise: float = 0.0,
) -> float:
    """Weighted multi-criteria score; every component lies in [0, 1]."""
    spaced = spaced_repetition_score(h, now) / spaced_max if spaced_max > 0 else 0.0
    age_days = (now - h.date_created).total_seconds() / SECONDS_PER_DAY
    recency = max(0.0, 1 - age_days / 365)
    frequency = max(0.0, 1 - h.times_shown / 10)
    return (
        spaced * weights.spaced_repetition
        + (1.0 if h.has_note else 0.0) * weights.has_note
        + min(recency, 1.0) * weights.recency
        + frequency * weights.frequency
        + (1.0 if h.tags else 0.0) * weights.has_tags
        + noise * weights.randomness
    )


@dataclass
class SelectionExplanation:
    highlight_id: str
    mode: str
    reasons: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {"highlight_id": self.highlight_id, "mode": self.mode, "reasons": list(self.reasons)}


class HighlightSelector:
    """Chooses highlights for a cycle using one of the SelectionMode strategies."""

    def __init__(
        self,
        store: Store,
        rng: random.Random | None = None,
        weights: WeightVector = DEFAULT_WEIGHTS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.rng = rng or random.Random()
        self.weights = weights
        self.clock = clock

    async def candidates(self, constraints: SelectionConstraints | None = None) -> list[Highlight]:
        constraints = constraints or SelectionConstraints()
        now = self.clock()
        return [h for h in await self.store.list_highlights() if constraints.allows(h, now)]

    async def select(
        self,
        count: int,
        mode: str | SelectionMode | None = None,
        constraints: SelectionConstraints | None = None,
    ) -> list[Highlight]:
        """Pick up to `count` highlights. Never mutates the store.

        Returns fewer than `count` only when fewer highlights satisfy
        the constraints; an empty corpus gives [].

        Raises:
            ValidationError: unknown mode or negative count
        """
        mode = SelectionMode.parse(mode)
        if count < 0:
            raise ValidationError("count must be >= 0")
        pool = await self.candidates(constraints)
        if count == 0 or not pool:
            return []

        now = self.clock()
        if mode is SelectionMode.SPACED_REPETITION:
            chosen = self._spaced_repetition(pool, count, now)
        elif mode is SelectionMode.WEIGHTED:
            chosen = self._weighted(pool, count, now)
        elif mode is SelectionMode.BALANCED_BY_SOURCE:
            chosen = self._balanced_by_source(pool, count)
        elif mode is SelectionMode.OLDEST_FIRST:
            chosen = sorted(pool, key=lambda h: (h.date_created, h.id))[:count]
        elif mode is SelectionMode.NEWEST_FIRST:
            chosen = sorted(pool, key=lambda h: (h.date_created, h.id), reverse=True)[:count]
        else:
            chosen = self.rng.sample(pool, min(count, len(pool)))

        logger.debug(f"Selected {len(chosen)}/{count} highlights ({mode.value}, {len(pool)} candidates)")
        return chosen

    def _spaced_repetition(self, pool: list[Highlight], count: int, now: datetime) -> list[Highlight]:
        scored = [
            (spaced_repetition_score(h, now, jitter=self.rng.random() * MAX_JITTER), h) for h in pool
        ]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        top = [h for _, h in scored[: count * 2]]
        return self.rng.sample(top, min(count, len(top)))

    def _weighted(self, pool: list[Highlight], count: int, now: datetime) -> list[Highlight]:
        spaced_max = max(spaced_repetition_score(h, now) for h in pool)
        scored = [
            (
                weighted_score(h, now, spaced_max=spaced_max, weights=self.weights, noise=self.rng.random()),
                h,
            )
            for h in pool
        ]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [h for _, h in scored[:count]]

    def _balanced_by_source(self, pool: list[Highlight], count: int) -> list[Highlight]:
        groups: dict[str, list[Highlight]] = defaultdict(list)
        for h in pool:
            groups[h.source_id].append(h)
        # Most highlighted sources first; id keeps the order stable on ties
        order = sorted(groups, key=lambda sid: (-len(groups[sid]), sid))

        selected: list[Highlight] = []
        target = min(count, len(pool))
        while len(selected) < target:
            for sid in order:
                remaining = groups[sid]
                if not remaining or len(selected) >= target:
                    continue
                unshown = [h for h in remaining if h.never_shown]
                pick = self.rng.choice(unshown or remaining)
                remaining.remove(pick)
                selected.append(pick)
        return selected

    async def preview(
        self,
        count: int,
        mode: str | SelectionMode | None = None,
        constraints: SelectionConstraints | None = None,
    ) -> dict[str, Any]:
        """Run a selection and explain each pick, without committing anything."""
        mode = SelectionMode.parse(mode)
        pool = await self.candidates(constraints)
        chosen = await self.select(count, mode, constraints)
        now = self.clock()
        return {
            "mode": mode.value,
            "requested": count,
            "candidates": len(pool),
            "highlights": [h.to_dict() for h in chosen],
            "explanations": [self.explain(h, mode, now).to_dict() for h in chosen],
        }

    def explain(self, h: Highlight, mode: SelectionMode, now: datetime) -> SelectionExplanation:
        reasons: list[str] = []
        age_days = int((now - h.date_created).total_seconds() // SECONDS_PER_DAY)
        if mode in (SelectionMode.SPACED_REPETITION, SelectionMode.WEIGHTED):
            if h.never_shown:
                reasons.append("Never shown before")
            else:
                days = int(days_since_shown(h, now))
                reasons.append(
                    f"Shown {h.times_shown} times, last shown {days} days ago "
                    f"(review interval {target_interval(h.times_shown)} days)"
                )
            if h.has_note:
                reasons.append("Has a personal note (prioritized)")
            if h.tags:
                reasons.append(f"Tagged: {', '.join(sorted(h.tags))}")
            if mode is SelectionMode.WEIGHTED:
                reasons.append(f"Created {age_days} days ago")
        elif mode is SelectionMode.OLDEST_FIRST:
            reasons.append(f"Oldest highlight ({age_days} days old)")
        elif mode is SelectionMode.NEWEST_FIRST:
            reasons.append(f"Recent highlight ({age_days} days old)")
        elif mode is SelectionMode.BALANCED_BY_SOURCE:
            reasons.append(f"Rotating through sources (source {h.source_id})")
            if h.never_shown:
                reasons.append("Never shown before")
        else:
            reasons.append("Randomly selected")
        return SelectionExplanation(highlight_id=h.id, mode=mode.value, reasons=reasons)

    async def commit_selection(self, ids: list[str], at: datetime | None = None) -> list[ItemResult]:
        """Mark exactly these highlights as shown once more.

        Each id is its own atomic SQL increment; an unknown id is reported
        in its result and does not stop the others.
        """
        at = at or self.clock()
        results: list[ItemResult] = []
        for highlight_id in ids:
            try:
                await self.store.mark_shown(highlight_id, at)
                results.append(ItemResult(highlight_id))
            except RecallError as e:
                logger.warning(f"Could not mark {highlight_id} as shown: {e.message}")
                results.append(ItemResult(highlight_id, e))
        return results
