"""
Publish/subscribe façade over AMQP topic exchanges.

One connection and one channel per process. ``connect`` never raises: a
failed attempt schedules another one after a fixed delay, so callers must not
assume the broker is reachable when they publish or subscribe.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractIncomingMessage, AbstractRobustConnection

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.results import Err, ErrorKind, Result

# Exchanges and routing keys on the wire
ITEM_EVENTS = "item_events"
ITEM_UPDATED = "item.updated"
USER_EVENTS = "user_events"
USER_CREATED = "user.created"
USER_UPDATED = "user.updated"
SHOPPING_EVENTS = "shopping_events"
CHECKOUT_COMPLETED = "list.checkout.completed"
CHECKOUT_ANY = "list.checkout.#"


class MessageHandler(ABC):
    """Consumer of one queue. Returning ``Err`` leaves the message unacknowledged."""

    name: str = "handler"

    @abstractmethod
    async def on_message(self, payload: Any) -> Result:
        ...


@dataclass
class Subscription:
    exchange: str
    routing_key: str
    queue_name: str
    handler: MessageHandler
    bound: bool = False


class MessageBroker:
    """Thin AMQP client: topic exchanges, named queues, manual acks."""

    def __init__(self, url: str, reconnect_delay: float = 5.0,
                 connector: Callable[..., Awaitable[AbstractRobustConnection]] = aio_pika.connect_robust,
                 metrics: Optional[MetricsCollector] = None):
        self.url = url
        self.reconnect_delay = reconnect_delay
        self._connector = connector
        self.metrics = metrics
        self.logger = get_logger("broker")

        self.connection: Optional[AbstractRobustConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self._exchanges: Dict[str, AbstractExchange] = {}
        self._subscriptions: List[Subscription] = []
        self._connect_lock = asyncio.Lock()
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return self.channel is not None

    def _safe_url(self) -> str:
        return self.url.split("@")[-1]

    async def connect(self) -> bool:
        """Establish the connection and channel; idempotent."""
        async with self._connect_lock:
            if self.channel is not None:
                return True
            if self._closed:
                return False

            self.logger.info("Connecting to broker", host=self._safe_url())
            try:
                self.connection = await self._connector(self.url)
                self.channel = await self.connection.channel(publisher_confirms=False)
            except Exception as e:
                self.connection = None
                self.channel = None
                self.logger.error("Broker connection failed, retrying later",
                                  error=str(e), retry_in=self.reconnect_delay)
                self._schedule_reconnect()
                return False

            self.logger.info("Broker connected", host=self._safe_url())

        await self._bind_pending()
        return True

    def _schedule_reconnect(self):
        if self._closed:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_later())

    async def _reconnect_later(self):
        await asyncio.sleep(self.reconnect_delay)
        self._reconnect_task = None
        await self.connect()

    async def _declare_exchange(self, exchange: str) -> AbstractExchange:
        if exchange not in self._exchanges:
            self._exchanges[exchange] = await self.channel.declare_exchange(
                exchange, aio_pika.ExchangeType.TOPIC, durable=False
            )
        return self._exchanges[exchange]

    async def publish(self, exchange: str, routing_key: str, payload: Any) -> bool:
        """Best-effort fire-and-forget publish. Errors are logged, not raised."""
        if self.channel is None:
            await self.connect()
        if self.channel is None:
            self.logger.warning("Broker not connected, event dropped",
                                exchange=exchange, routing_key=routing_key)
            self._published(exchange, routing_key, "dropped")
            return False

        try:
            target = await self._declare_exchange(exchange)
            message = aio_pika.Message(
                body=json.dumps(payload).encode("utf-8"),
                content_type="application/json",
                content_encoding="utf-8",
                timestamp=datetime.now(timezone.utc),
            )
            await target.publish(message, routing_key=routing_key)
        except Exception as e:
            self.logger.error("Publish failed", exchange=exchange, routing_key=routing_key, error=str(e))
            self._published(exchange, routing_key, "failed")
            return False

        self.logger.info("Event published", exchange=exchange, routing_key=routing_key)
        self._published(exchange, routing_key, "ok")
        return True

    async def subscribe(self, exchange: str, routing_key: str, queue_name: str,
                        handler: MessageHandler) -> Subscription:
        """Bind ``queue_name`` to ``routing_key`` on ``exchange`` and consume it.

        Binding is deferred until a connection exists.
        """
        subscription = Subscription(exchange, routing_key, queue_name, handler)
        self._subscriptions.append(subscription)

        if self.channel is None:
            await self.connect()
        else:
            await self._bind(subscription)
        return subscription

    async def _bind_pending(self):
        for subscription in self._subscriptions:
            if not subscription.bound:
                await self._bind(subscription)

    async def _bind(self, subscription: Subscription):
        try:
            target = await self._declare_exchange(subscription.exchange)
            queue = await self.channel.declare_queue(subscription.queue_name, durable=False)
            await queue.bind(target, routing_key=subscription.routing_key)

            async def _on_message(message: AbstractIncomingMessage):
                await self.dispatch(subscription.handler, message)

            await queue.consume(_on_message, no_ack=False)
        except Exception as e:
            self.logger.error("Subscribe failed", queue=subscription.queue_name,
                              exchange=subscription.exchange, error=str(e))
            return

        subscription.bound = True
        self.logger.info("Listening on queue", queue=subscription.queue_name,
                         exchange=subscription.exchange, routing_key=subscription.routing_key)

    async def dispatch(self, handler: MessageHandler, message: AbstractIncomingMessage) -> Result:
        """Run ``handler`` on one delivery and settle it."""
        try:
            payload = json.loads(message.body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            self.logger.error("Undecodable message rejected", handler=handler.name, error=str(e))
            await message.reject(requeue=False)
            self._consumed(handler.name, "reject")
            return Err(ErrorKind.INVALID, str(e))

        try:
            result = await handler.on_message(payload)
        except Exception as e:
            self.logger.error("Handler raised, message requeued", handler=handler.name,
                              error=str(e), exc_info=True)
            result = Err(ErrorKind.FAILED, str(e))

        if result.ok:
            await message.ack()
            self._consumed(handler.name, "ack")
        else:
            self.logger.warning("Handler did not complete, message requeued",
                                handler=handler.name, detail=result.detail)
            await message.nack(requeue=True)
            self._consumed(handler.name, "nack")
        return result

    def _published(self, exchange: str, routing_key: str, outcome: str):
        if self.metrics is not None:
            self.metrics.increment_counter("messages_published_total", exchange=exchange,
                                           routing_key=routing_key, outcome=outcome)

    def _consumed(self, queue: str, settlement: str):
        if self.metrics is not None:
            self.metrics.increment_counter("messages_consumed_total", queue=queue, settlement=settlement)

    async def close(self):
        self._closed = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None

        if self.connection is not None:
            await self.connection.close()
            self.logger.info("Broker connection closed")
        self.connection = None
        self.channel = None
        self._exchanges.clear()
