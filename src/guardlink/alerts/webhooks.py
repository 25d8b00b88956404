"""Webhook alerts for events a parent should hear about outside the dashboard."""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx

from guardlink.presence.events import BaseEvent, EventType

logger = logging.getLogger(__name__)

# Event types worth an out-of-band alert.
ALERT_EVENTS = frozenset(
    {
        EventType.emergency_lockdown_activated,
        EventType.emergency_released,
        EventType.command_expired,
    }
)


@dataclass(frozen=True)
class Delivery:
    url: str
    status_code: int | None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300


def wants_alert(event: BaseEvent) -> bool:
    return event.type in ALERT_EVENTS


def build_payload(event: BaseEvent) -> dict[str, Any]:
    """The JSON body posted to every webhook for ``event``."""
    return {
        "event": event.type,
        "timestamp": datetime.now(UTC).isoformat(),
        "owner_member_id": event.owner_member_id,
        "device_id": event.device_id,
        "detail": event.model_dump(mode="json"),
    }


def deliver(event: BaseEvent, webhook_urls: list[str], timeout: float = 10.0) -> list[Delivery]:
    """POST ``event`` to each URL. Failures are logged and reported, never raised.

    Blocking; the dispatcher runs it in a worker thread.
    """
    if not webhook_urls or not wants_alert(event):
        return []

    payload = build_payload(event)
    deliveries: list[Delivery] = []
    with httpx.Client(timeout=timeout) as client:
        for url in webhook_urls:
            try:
                response = client.post(url, json=payload)
            except httpx.HTTPError as e:
                logger.error("Webhook %s -> %s failed: %s", event.type, url, e)
                deliveries.append(Delivery(url=url, status_code=None, error=str(e)))
                continue

            delivery = Delivery(url=url, status_code=response.status_code)
            if delivery.ok:
                logger.info("Webhook %s -> %s (HTTP %d)", event.type, url, response.status_code)
            else:
                logger.warning(
                    "Webhook %s -> %s rejected (HTTP %d)", event.type, url, response.status_code
                )
            deliveries.append(delivery)
    return deliveries
