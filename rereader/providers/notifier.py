"""Notifier adapters: hand a selected highlight set to whatever delivers it."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from rereader.core.errors import DeliveryError
from rereader.core.models import DeliveryStatus, Highlight, Source

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Deliverable:
    """What the notifier receives. Rendering is the notifier's business."""

    highlights: tuple[Highlight, ...]
    recipient: str
    render_hints: dict[str, Any] = field(default_factory=dict)
    sources: dict[str, Source] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipient": self.recipient,
            "highlights": [
                {
                    **h.to_dict(),
                    "source_title": self.sources[h.source_id].title if h.source_id in self.sources else None,
                    "source_creator": self.sources[h.source_id].creator if h.source_id in self.sources else None,
                }
                for h in self.highlights
            ],
            "render_hints": dict(self.render_hints),
        }


@dataclass(frozen=True)
class DeliveryOutcome:
    status: DeliveryStatus
    detail: str = ""

    @property
    def sent(self) -> bool:
        return self.status is DeliveryStatus.SENT


class Notifier(Protocol):
    async def deliver(self, deliverable: Deliverable) -> DeliveryOutcome:
        """Deliver once. Raise DeliveryError for failures worth retrying."""
        ...


class LoggingNotifier:
    """Writes deliveries to the log. Used when no webhook is configured."""

    def __init__(self) -> None:
        self.delivered: list[Deliverable] = []

    async def deliver(self, deliverable: Deliverable) -> DeliveryOutcome:
        self.delivered.append(deliverable)
        logger.info(
            f"Delivery to {deliverable.recipient or '(no recipient)'}: "
            f"{len(deliverable.highlights)} highlights"
        )
        for h in deliverable.highlights:
            logger.debug(f"  {h.id}: {h.text[:80]}")
        return DeliveryOutcome(DeliveryStatus.SENT, f"logged {len(deliverable.highlights)} highlights")


class WebhookNotifier:
    """POSTs the deliverable as JSON to a webhook.

    2xx counts as sent. A 4xx is a permanent rejection and becomes a failed
    outcome. Transport errors and 5xx raise DeliveryError so the scheduler
    retries them.
    """

    def __init__(
        self,
        url: str,
        token: str | None = None,
        *,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not url:
            raise ValueError("Webhook URL is required")
        self.url = url
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def deliver(self, deliverable: Deliverable) -> DeliveryOutcome:
        try:
            resp = await self._client.post(self.url, json=deliverable.to_dict(), headers=self._headers)
        except httpx.HTTPError as e:
            raise DeliveryError(f"Webhook request failed: {e}") from e

        if resp.status_code >= 500:
            raise DeliveryError(f"Webhook returned {resp.status_code}")
        if resp.status_code >= 400:
            logger.warning(f"Webhook rejected delivery: {resp.status_code} {resp.text[:200]}")
            return DeliveryOutcome(DeliveryStatus.FAILED, f"HTTP {resp.status_code}: {resp.text[:200]}")
        return DeliveryOutcome(DeliveryStatus.SENT, f"HTTP {resp.status_code}")
