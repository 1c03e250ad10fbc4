"""
Checkout event consumers.

Each consumer owns its queue, so both receive every checkout independently.
"""

from typing import Any, Dict, Optional

from shared.logging import get_logger
from shared.messaging import MessageHandler
from shared.metrics import MetricsCollector
from shared.results import Ok, Result

NOTIFICATION_QUEUE = "notification_queue"
ANALYTICS_QUEUE = "analytics_queue"


class NotificationConsumer(MessageHandler):
    """Sends (logs) a receipt for every checkout event."""

    name = NOTIFICATION_QUEUE

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.metrics = metrics
        self.logger = get_logger("worker.notifications")
        self.sent = 0

    async def on_message(self, payload: Any) -> Result:
        payload = payload if isinstance(payload, dict) else {}
        recipient = payload.get("userEmail") or "unknown user"
        self.logger.info("Receipt notification sent", recipient=recipient,
                         subject=f"Receipt for list {payload.get('listId')}")
        self.sent += 1
        if self.metrics is not None:
            self.metrics.record_business_event("receipt_sent")
        return Ok(recipient)


class AnalyticsConsumer(MessageHandler):
    """Accumulates checkout volume."""

    name = ANALYTICS_QUEUE

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.metrics = metrics
        self.logger = get_logger("worker.analytics")
        self.checkouts = 0
        self.volume = 0.0
        self.items = 0

    async def on_message(self, payload: Any) -> Result:
        payload = payload if isinstance(payload, dict) else {}
        total = payload.get("total") or 0
        items = payload.get("itemsCount") or 0
        try:
            total = float(total)
            items = int(items)
        except (TypeError, ValueError):
            self.logger.error("Checkout event with non-numeric totals dropped", payload=payload)
            return Ok()

        self.checkouts += 1
        self.volume += total
        self.items += items

        self.logger.info("Checkout recorded", volume=round(total, 2), items=items,
                         list_id=payload.get("listId"))
        if self.metrics is not None:
            self.metrics.record_business_event("checkout_recorded")
        return Ok(self.snapshot())

    def snapshot(self) -> Dict[str, Any]:
        return {"checkouts": self.checkouts, "volume": round(self.volume, 2), "items": self.items}
