"""Notification publishers.

The engine fires events and never waits on delivery. Publishers must
return immediately from publish(); the webhook publisher hands delivery to
a background executor.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, ConfigDict, Field

from vendoreval.models.evaluation import utc_now
from vendoreval.notifications.delivery import (
    DEFAULT_TIMEOUT_SECONDS,
    DeliveryResult,
    deliver_notification,
)
from vendoreval.notifications.signing import sign_payload

logger = logging.getLogger(__name__)


class NotificationType(StrEnum):
    """Events the engine announces."""

    RECONCILIATION_NEEDED = "reconciliation-needed"
    ANOMALY_DETECTED = "anomaly-detected"
    SCORE_LOCKED = "score-locked"


class NotificationEvent(BaseModel):
    """One outbound notification."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: NotificationType
    evaluation_id: str
    occurred_at: datetime = Field(default_factory=utc_now)
    payload: dict[str, Any] = Field(default_factory=dict)


@runtime_checkable
class NotificationPublisher(Protocol):
    """Fire-and-forget event publisher."""

    def publish(self, event: NotificationEvent) -> None:
        """Queue an event for delivery without blocking on it."""
        ...


class InMemoryNotificationPublisher:
    """Collects published events (tests and embedded use)."""

    def __init__(self) -> None:
        self._events: list[NotificationEvent] = []
        self._lock = threading.Lock()

    def publish(self, event: NotificationEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[NotificationEvent]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: NotificationType) -> list[NotificationEvent]:
        return [e for e in self.events if e.event_type == event_type]


class WebhookNotificationPublisher:
    """Signs events with HMAC-SHA256 and POSTs them from a background pool."""

    def __init__(
        self,
        url: str,
        secret: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_workers: int = 2,
        client: httpx.Client | None = None,
    ) -> None:
        self._url = url
        self._secret = secret
        self._client = client or httpx.Client(timeout=timeout_seconds)
        self._owns_client = client is None
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="vendoreval-notify"
        )

    def publish(self, event: NotificationEvent) -> None:
        self.submit(event)

    def submit(self, event: NotificationEvent) -> Future[DeliveryResult]:
        """Queue delivery and return its future."""
        body = json.dumps(
            event.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
        ).encode("utf-8")
        signature = sign_payload(self._secret, int(time.time()), body)
        logger.debug("Queued %s notification %s", event.event_type.value, event.event_id)
        return self._executor.submit(
            deliver_notification,
            self._client,
            self._url,
            body,
            signature.headers,
            event_id=event.event_id,
            event_type=event.event_type.value,
        )

    def close(self, wait: bool = True) -> None:
        """Stop the pool and release the HTTP client."""
        self._executor.shutdown(wait=wait)
        if self._owns_client:
            self._client.close()
