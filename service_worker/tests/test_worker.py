"""
Tests for the checkout event consumers.
"""

import pytest
from fastapi.testclient import TestClient

from shared.messaging import CHECKOUT_COMPLETED, SHOPPING_EVENTS, MessageBroker
from shared.registry import ServiceRegistry
from shared.test_helpers import FakeAmqpServer
from service_worker.app.consumers import AnalyticsConsumer, NotificationConsumer
from service_worker.app.main import create_app


class TestConsumers:

    @pytest.mark.asyncio
    async def test_notification_names_recipient(self):
        consumer = NotificationConsumer()
        result = await consumer.on_message({"listId": "l1", "userEmail": "maria@example.com"})
        assert result.ok
        assert result.value == "maria@example.com"
        assert consumer.sent == 1

    @pytest.mark.asyncio
    async def test_notification_without_email(self):
        result = await NotificationConsumer().on_message({"listId": "l1"})
        assert result.value == "unknown user"

    @pytest.mark.asyncio
    async def test_analytics_accumulates(self):
        consumer = AnalyticsConsumer()
        await consumer.on_message({"listId": "l1", "total": 10.5, "itemsCount": 3})
        await consumer.on_message({"listId": "l2", "total": 4.25, "itemsCount": 1})

        assert consumer.snapshot() == {"checkouts": 2, "volume": 14.75, "items": 4}

    @pytest.mark.asyncio
    async def test_analytics_drops_bad_totals(self):
        consumer = AnalyticsConsumer()
        result = await consumer.on_message({"total": "lots", "itemsCount": 1})
        assert result.ok
        assert consumer.snapshot()["checkouts"] == 0


class TestWorkerService:

    def test_both_queues_receive_checkout(self, tmp_path):
        amqp = FakeAmqpServer()
        app = create_app(
            registry=ServiceRegistry(str(tmp_path / "registry.json")),
            broker=MessageBroker("amqp://test", connector=amqp.connect),
        )

        with TestClient(app) as client:
            service = client.app.state.service
            client.portal.call(service.broker.publish, SHOPPING_EVENTS, CHECKOUT_COMPLETED,
                               {"listId": "l1", "userEmail": "maria@example.com",
                                "total": 9.18, "itemsCount": 1})

            analytics = client.get("/analytics").json()["data"]
            health = client.get("/health").json()

        assert analytics == {"checkouts": 1, "volume": 9.18, "items": 1}
        assert health["receipts_sent"] == 1
        assert health["broker_connected"] is True
        assert amqp.queues["notification_queue"].deliveries[0].settlement == "ack"
        assert amqp.queues["analytics_queue"].deliveries[0].settlement == "ack"
