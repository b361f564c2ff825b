"""Alarm notification delivery and webhook dispatch."""

import asyncio
import logging
from collections import deque
from datetime import UTC, datetime
from typing import Any

import httpx

from anchorwatch.alarms.models import AlarmEvent, Severity

logger = logging.getLogger(__name__)


def build_payload(event: AlarmEvent, device_id: str | None = None) -> dict[str, Any]:
    """Webhook body for a newly raised alarm or warning."""
    return {
        "event": str(event.type),
        "severity": str(event.severity),
        "message": event.message,
        "timestamp": datetime.now(UTC).isoformat(),
        "alarm": {
            "id": event.id,
            "raised_at": event.timestamp.isoformat(),
            "latitude": event.latitude,
            "longitude": event.longitude,
            "distance_from_anchor": event.distance_from_anchor,
        },
        "device_id": device_id,
    }


def dispatch_webhooks(payloads: list[dict[str, Any]], url: str) -> list[dict[str, Any]]:
    """POST each payload to ``url``. Return results with status codes.

    Returns:
        List of dicts with keys: payload, url, status_code, success, error (if failed)
    """
    results = []

    for payload in payloads:
        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.post(url, json=payload)
                results.append(
                    {
                        "payload": payload,
                        "url": url,
                        "status_code": response.status_code,
                        "success": response.is_success,
                    }
                )
                if response.is_success:
                    logger.info(
                        "Webhook delivered: %s -> %s (HTTP %d)",
                        payload["event"],
                        url,
                        response.status_code,
                    )
                else:
                    logger.warning(
                        "Webhook failed: %s -> %s (HTTP %d)",
                        payload["event"],
                        url,
                        response.status_code,
                    )
        except Exception as e:
            logger.error("Webhook dispatch error: %s -> %s: %s", payload["event"], url, e)
            results.append(
                {
                    "payload": payload,
                    "url": url,
                    "status_code": None,
                    "success": False,
                    "error": str(e),
                }
            )

    return results


class AlarmNotifier:
    """Local alarm delivery: log the alarm and forward it to the webhook, if any."""

    def __init__(self, webhook_url: str | None = None, device_id: str | None = None) -> None:
        self.webhook_url = webhook_url
        self.device_id = device_id
        self.delivered: deque[AlarmEvent] = deque(maxlen=100)

    async def notify(self, event: AlarmEvent) -> list[dict[str, Any]]:
        if event.severity == Severity.alarm:
            logger.warning("ALARM: %s", event.message)
        else:
            logger.info("Warning: %s", event.message)
        self.delivered.append(event)

        if not self.webhook_url:
            return []
        payload = build_payload(event, self.device_id)
        return await asyncio.to_thread(dispatch_webhooks, [payload], self.webhook_url)
