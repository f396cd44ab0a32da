import json
import logging
from datetime import datetime, timezone
from uuid import uuid4

import aio_pika

from storefront.config import RABBITMQ_URL

logger = logging.getLogger(__name__)

ORDER_EXCHANGE = "order_exchange"

connection = None
channel = None


async def setup_rabbitmq():
    global connection, channel
    try:
        connection = await aio_pika.connect_robust(RABBITMQ_URL)
        channel = await connection.channel()
        await channel.declare_exchange(ORDER_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)
        logger.info("RabbitMQ setup complete")
    except Exception:
        # Order processing does not depend on the broker; events are best effort.
        logger.exception("Error setting up RabbitMQ; lifecycle events will not be published")


async def close_rabbitmq():
    global connection, channel
    if connection is not None:
        await connection.close()
    connection = None
    channel = None


def build_event(event_type: str, order) -> dict:
    return {
        "event_id": str(uuid4()),
        "event_type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "total": str(order.total),
    }


async def publish_event(routing_key: str, message_data: dict, exchange_name: str = ORDER_EXCHANGE):
    if not channel:
        logger.debug("RabbitMQ channel not available; dropping %s", message_data["event_type"])
        return

    message = aio_pika.Message(
        json.dumps(message_data).encode("utf-8"),
        content_type="application/json",
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
    )
    try:
        exchange = await channel.get_exchange(exchange_name)
        await exchange.publish(message, routing_key=routing_key)
        logger.info("Published %s for order %s", message_data["event_type"], message_data["order_id"])
    except Exception:
        logger.exception("Error publishing %s", message_data["event_type"])
