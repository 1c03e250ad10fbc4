"""
Background worker consuming checkout events.
"""

from typing import Any, Dict

from shared.base_service import BaseService, envelope
from shared.messaging import CHECKOUT_ANY, CHECKOUT_COMPLETED, SHOPPING_EVENTS
from service_worker.app.consumers import (
    ANALYTICS_QUEUE,
    NOTIFICATION_QUEUE,
    AnalyticsConsumer,
    NotificationConsumer,
)


class WorkerService(BaseService):
    """Hosts the notification and analytics consumers."""

    discoverable = False
    endpoints = ["/health", "/analytics"]

    def __init__(self, **kwargs):
        super().__init__("worker-service", 3004, **kwargs)

    def _setup_service_routes(self):
        self.notifications = NotificationConsumer(self.metrics)
        self.analytics = AnalyticsConsumer(self.metrics)

        @self.app.get("/analytics")
        async def analytics():
            return envelope(self.analytics.snapshot())

    async def on_startup(self):
        await self.broker.subscribe(SHOPPING_EVENTS, CHECKOUT_ANY, NOTIFICATION_QUEUE, self.notifications)
        await self.broker.subscribe(SHOPPING_EVENTS, CHECKOUT_COMPLETED, ANALYTICS_QUEUE, self.analytics)

    async def _check_dependencies(self) -> Dict[str, Any]:
        return {"receipts_sent": self.notifications.sent, "analytics": self.analytics.snapshot()}


def create_app(**kwargs):
    """Create FastAPI application."""
    return WorkerService(**kwargs).app


if __name__ == "__main__":
    WorkerService().run()
