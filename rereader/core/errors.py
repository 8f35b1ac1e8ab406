"""Error taxonomy shared by the store, engines and HTTP surface."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class RecallError(Exception):
    """Base exception. Carries a machine-readable kind and a human message."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(RecallError):
    """Malformed entity on ingest/import or invalid argument."""

    kind = "validation"

    def __init__(self, message: str, reasons: list[str] | None = None) -> None:
        super().__init__(message)
        self.reasons = reasons or []

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        if self.reasons:
            d["reasons"] = list(self.reasons)
        return d


class NotFoundError(RecallError):
    """Operation on an unknown id."""

    kind = "not_found"


class ConstraintError(RecallError):
    """Referential integrity or uniqueness violation."""

    kind = "constraint"


class StorageError(RecallError):
    """Underlying persistence failure."""

    kind = "storage"


class SchedulingError(RecallError):
    """Invalid schedule configuration (e.g. unparseable time of day)."""

    kind = "scheduling"


class DeliveryError(RecallError):
    """Retriable notifier failure (transport error, 5xx, timeout)."""

    kind = "delivery"


@dataclass
class ItemResult:
    """Per-id outcome inside a batch operation."""

    id: str
    error: RecallError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"id": self.id, "ok": self.ok}
        if self.error is not None:
            d["error"] = self.error.to_dict()
        return d
