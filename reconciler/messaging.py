import json
import logging
from datetime import datetime, timezone
from uuid import uuid4

import aio_pika

from reconciler.config import RABBITMQ_URL
from reconciler.events import ChainEvent, EventKind

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "blockchain_exchange"

ROUTING_KEYS = {
    EventKind.PAYMENT_MADE: "payment.confirmed",
    EventKind.SUBSCRIPTION_CREATED: "subscription.created",
    EventKind.SUBSCRIPTION_PAYMENT: "subscription.charged",
    EventKind.SUBSCRIPTION_CANCELLED: "subscription.cancelled",
}


class EventPublisher:
    """Announces reconciled chain events on a RabbitMQ topic exchange."""

    def __init__(self, url: str = RABBITMQ_URL, exchange_name: str = EXCHANGE_NAME):
        self.url = url
        self.exchange_name = exchange_name
        self.connection = None
        self.channel = None
        self.exchange = None

    async def connect(self):
        try:
            self.connection = await aio_pika.connect_robust(self.url)
            self.channel = await self.connection.channel()
            self.exchange = await self.channel.declare_exchange(
                self.exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
            )
            logger.info("RabbitMQ setup complete.")
        except Exception as e:
            logger.error(f"Error setting up RabbitMQ: {e}")

    async def close(self):
        if self.connection is not None:
            await self.connection.close()
        self.connection = self.channel = self.exchange = None

    async def publish(self, event: ChainEvent):
        if self.exchange is None:
            logger.warning("RabbitMQ exchange not available. Cannot publish event.")
            return

        routing_key = ROUTING_KEYS[event.kind]
        message_data = {
            "event_id": str(uuid4()),
            "event_type": event.kind.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **event.notification_payload(),
        }
        message = aio_pika.Message(
            json.dumps(message_data).encode('utf-8'),
            content_type='application/json',
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT
        )
        try:
            await self.exchange.publish(message, routing_key=routing_key)
            logger.info(f"Published event to {routing_key}: {message_data['event_type']}")
        except Exception as e:
            logger.error(f"Error publishing event: {e}")
