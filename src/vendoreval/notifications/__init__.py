"""Outbound notifications: reconciliation-needed, anomaly-detected, score-locked."""

from vendoreval.notifications.delivery import DeliveryResult, deliver_notification
from vendoreval.notifications.publisher import (
    InMemoryNotificationPublisher,
    NotificationEvent,
    NotificationPublisher,
    NotificationType,
    WebhookNotificationPublisher,
)
from vendoreval.notifications.signing import sign_payload, verify_signature

__all__ = [
    "DeliveryResult",
    "InMemoryNotificationPublisher",
    "NotificationEvent",
    "NotificationPublisher",
    "NotificationType",
    "WebhookNotificationPublisher",
    "deliver_notification",
    "sign_payload",
    "verify_signature",
]
