"""Kafka producer management for click events."""

import json
import logging

from aiokafka import AIOKafkaProducer

from urlshortener.config import get_settings
from urlshortener.schemas import ClickEventMessage

__all__ = ["close_kafka", "init_kafka", "publish_click_event"]

settings = get_settings()
logger = logging.getLogger(__name__)

_producer: AIOKafkaProducer | None = None


async def init_kafka() -> None:
    global _producer
    if _producer is not None or not settings.KAFKA_ENABLED:
        return

    producer = AIOKafkaProducer(
        bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
        value_serializer=lambda payload: json.dumps(payload).encode("utf-8"),
    )
    try:
        await producer.start()
        _producer = producer
    except Exception as exc:
        logger.warning(f"Kafka unavailable, click events will not be published: {exc}")
        await producer.stop()
        _producer = None


async def close_kafka() -> None:
    global _producer
    if _producer is None:
        return
    await _producer.stop()
    _producer = None


async def publish_click_event(message: ClickEventMessage) -> bool:
    if _producer is None:
        return False

    await _producer.send_and_wait(
        settings.KAFKA_CLICK_TOPIC,
        message.model_dump(mode="json"),
        key=message.short_code.encode("utf-8"),
    )
    return True
