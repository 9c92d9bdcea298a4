import logging

import aio_pika

from .config import RABBIT_URL
from .events import build_event, to_json

EXCHANGE_NAME = "domain_events"

logger = logging.getLogger(__name__)


async def connect(url: str | None = RABBIT_URL):
    if not url:
        return None
    return await aio_pika.connect_robust(url)


class RabbitPublisher:
    """
    Fire-and-forget publisher. A failed publish is logged and dropped;
    it never propagates into the operation that produced the event.
    """

    def __init__(self, url: str | None = RABBIT_URL):
        self.url = url
        self.enabled = bool(url)
        self._connection: aio_pika.RobustConnection | None = None
        self._channel: aio_pika.abc.AbstractChannel | None = None
        self._exchange: aio_pika.abc.AbstractExchange | None = None

    async def connect(self):
        if not self.enabled:
            return

        if self._connection and not self._connection.is_closed:
            return

        try:
            self._connection = await aio_pika.connect_robust(self.url)
            self._channel = await self._connection.channel()
            self._exchange = await self._channel.declare_exchange(
                EXCHANGE_NAME,
                aio_pika.ExchangeType.TOPIC,
                durable=True,
            )
        except Exception as e:
            logger.warning("RabbitMQ connect failed: %s", e)
            self._connection = None
            self._channel = None
            self._exchange = None
            raise

    async def publish(self, routing_key: str, message_body: str) -> bool:
        if not self.enabled:
            return False

        try:
            await self.connect()
        except Exception:
            return False

        if not self._exchange:
            return False

        try:
            msg = aio_pika.Message(
                body=message_body.encode("utf-8"),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            )
            await self._exchange.publish(msg, routing_key=routing_key)
            return True
        except Exception as e:
            logger.warning("RabbitMQ publish to %s failed: %s", routing_key, e)
            return False

    async def publish_event(self, event_type: str, data: dict) -> bool:
        return await self.publish(event_type, to_json(build_event(event_type, data)))

    async def notify(self, channel: str, payload: dict) -> bool:
        """Outbound email/sms/push hand-off; best effort, never retried inline."""
        return await self.publish_event(f"notify.{channel}", payload)

    async def close(self):
        try:
            if self._connection and not self._connection.is_closed:
                await self._connection.close()
        finally:
            self._connection = None
            self._channel = None
            self._exchange = None


publisher = RabbitPublisher()
