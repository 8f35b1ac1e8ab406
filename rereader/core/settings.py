from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Mapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    log_level: str
    notifier_webhook_url: str | None
    notifier_token: str | None
    operation_timeout_seconds: float
    max_retries: int
    retry_base_delay: float
    retry_max_delay: float

    @staticmethod
    def from_env() -> "Settings":
        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        def _opt(name: str) -> str | None:
            value = os.getenv(name, "").strip()
            return value or None

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "./_local/data/rereader.db").strip(),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
            notifier_webhook_url=_opt("NOTIFIER_WEBHOOK_URL"),
            notifier_token=_opt("NOTIFIER_TOKEN"),
            operation_timeout_seconds=_f("OPERATION_TIMEOUT_SECONDS", "30"),
            max_retries=_i("MAX_RETRIES", "3"),
            retry_base_delay=_f("RETRY_BASE_DELAY", "1.0"),
            retry_max_delay=_f("RETRY_MAX_DELAY", "10.0"),
        )


SELECTION_MODES = (
    "spaced-repetition",
    "random",
    "oldest-first",
    "newest-first",
    "balanced-by-source",
    "weighted",
)
RECURRENCES = ("daily", "weekly", "manual")

# Names used by older configs
MODE_ALIASES = {
    "weighted-smart": "weighted",
    "most-highlighted": "balanced-by-source",
}


def _split_list(raw: Any) -> tuple[str, ...]:
    if raw is None or raw == "":
        return ()
    if isinstance(raw, str):
        return tuple(p.strip() for p in raw.split(",") if p.strip())
    return tuple(str(p).strip() for p in raw if str(p).strip())


def _int_or(raw: Any, default: int, *, name: str, minimum: int = 0) -> int:
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring invalid {name}={raw!r}, using {default}")
        return default
    if value < minimum:
        logger.warning(f"Ignoring {name}={value} (< {minimum}), using {default}")
        return default
    return value


@dataclass(frozen=True)
class RecallConfig:
    """User configuration persisted as a flat key/value structure.

    Unrecognized keys are kept in `extra` so that saving the config back
    never drops settings owned by other parts of the host.
    """

    selection_mode: str = "spaced-repetition"
    highlights_per_cycle: int = 5
    recurrence: str = "daily"
    time_of_day: str = "09:00"
    weekday: int = 0  # Monday
    timezone: str = ""  # IANA name; empty means host local time
    recipient: str = ""
    source_filter: tuple[str, ...] = ()
    category_filter: tuple[str, ...] = ()
    tag_filter: tuple[str, ...] = ()
    min_age_days: int = 0
    max_cycle_records: int = 100
    max_delivery_records: int = 100
    extra: dict[str, str] = field(default_factory=dict)

    @classmethod
    def known_keys(cls) -> set[str]:
        return {f.name for f in fields(cls)} - {"extra"}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> RecallConfig:
        """Parse stored settings. Invalid values fall back to defaults with a warning."""
        defaults = cls()
        mode = str(data.get("selection_mode") or defaults.selection_mode).strip()
        mode = MODE_ALIASES.get(mode, mode)
        if mode not in SELECTION_MODES:
            logger.warning(f"Unknown selection_mode {mode!r}, using {defaults.selection_mode}")
            mode = defaults.selection_mode
        recurrence = str(data.get("recurrence") or defaults.recurrence).strip().lower()
        if recurrence not in RECURRENCES:
            logger.warning(f"Unknown recurrence {recurrence!r}, using {defaults.recurrence}")
            recurrence = defaults.recurrence

        known = cls.known_keys()
        return cls(
            selection_mode=mode,
            highlights_per_cycle=_int_or(
                data.get("highlights_per_cycle"), defaults.highlights_per_cycle,
                name="highlights_per_cycle", minimum=1,
            ),
            recurrence=recurrence,
            # time_of_day is validated by the scheduler, which raises SchedulingError
            time_of_day=str(data.get("time_of_day") or defaults.time_of_day).strip(),
            weekday=_int_or(data.get("weekday"), defaults.weekday, name="weekday") % 7,
            timezone=str(data.get("timezone") or "").strip(),
            recipient=str(data.get("recipient") or "").strip(),
            source_filter=_split_list(data.get("source_filter")),
            category_filter=_split_list(data.get("category_filter")),
            tag_filter=_split_list(data.get("tag_filter")),
            min_age_days=_int_or(data.get("min_age_days"), 0, name="min_age_days"),
            max_cycle_records=_int_or(
                data.get("max_cycle_records"), defaults.max_cycle_records, name="max_cycle_records",
            ),
            max_delivery_records=_int_or(
                data.get("max_delivery_records"), defaults.max_delivery_records,
                name="max_delivery_records",
            ),
            extra={k: str(v) for k, v in data.items() if k not in known},
        )

    def to_mapping(self) -> dict[str, str]:
        """Flatten to string values for the key/value settings table."""
        out = dict(self.extra)
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if isinstance(value, tuple):
                out[f.name] = ",".join(value)
            else:
                out[f.name] = str(value)
        return out
