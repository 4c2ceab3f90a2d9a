"""Webhook delivery of notification events.

One POST per event with an OpenTelemetry span per attempt. Span attributes
carry only the sanitised target (scheme, host, port, path), never userinfo,
query strings or signature headers.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

import httpx
from opentelemetry import trace

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
USER_AGENT = "vendoreval-notifier/0.1"


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one delivery attempt."""

    success: bool
    status_code: int | None
    error: str | None
    event_id: str
    duration_ms: int


def sanitize_url(url: str) -> str:
    """Strip userinfo, query and fragment from url, or return "unknown"."""
    try:
        parts = urlsplit(url)
        host = parts.hostname or ""
        port = f":{parts.port}" if parts.port else ""
    except ValueError:
        return "unknown"
    if not host:
        return "unknown"
    return urlunsplit((parts.scheme, f"{host}{port}", parts.path, "", ""))


def deliver_notification(
    client: httpx.Client,
    url: str,
    body: bytes,
    headers: dict[str, str],
    *,
    event_id: str,
    event_type: str,
) -> DeliveryResult:
    """POST a signed notification body to url.

    Transport failures are reported on the result rather than raised, since
    delivery runs off the caller's thread and nothing waits on it.
    """
    tracer = trace.get_tracer("vendoreval.notifications")
    target = sanitize_url(url)

    with tracer.start_as_current_span(
        "notification.delivery",
        attributes={
            "vendoreval.event_id": event_id,
            "vendoreval.event_type": event_type,
            "http.method": "POST",
            "http.url": target,
        },
    ) as span:
        start = time.monotonic()
        status_code: int | None = None
        error: str | None = None
        success = False
        request_headers = dict(headers)
        request_headers["User-Agent"] = USER_AGENT
        request_headers["Content-Type"] = "application/json"
        try:
            response = client.post(url, content=body, headers=request_headers)
            status_code = response.status_code
            span.set_attribute("http.status_code", status_code)
            success = 200 <= status_code < 300
            if not success:
                error = f"HTTP {status_code}"
                span.set_status(trace.StatusCode.ERROR, f"Notification delivery failed: {error}")
        except httpx.TimeoutException as e:
            error = f"Timeout: {e}"
            span.set_status(trace.StatusCode.ERROR, error)
            span.record_exception(e)
        except httpx.HTTPError as e:
            error = f"Transport error: {type(e).__name__}"
            span.set_status(trace.StatusCode.ERROR, error)
            span.record_exception(e)
        duration_ms = int((time.monotonic() - start) * 1000)
        span.set_attribute("vendoreval.delivery_duration_ms", duration_ms)

    if not success:
        logger.warning("Notification %s (%s) to %s failed: %s", event_id, event_type, target, error)
    return DeliveryResult(
        success=success,
        status_code=status_code,
        error=error,
        event_id=event_id,
        duration_ms=duration_ms,
    )
