"""Kafka producer helpers."""

import structlog
from aiokafka import AIOKafkaProducer

logger = structlog.get_logger()


async def create_producer(bootstrap_servers: str) -> AIOKafkaProducer:
    """Create and start a Kafka producer.

    Messages are sent as pre-encoded bytes, so no serializers are configured.
    ``acks="all"`` because a lost regulatory report cannot be re-derived.
    """
    producer = AIOKafkaProducer(
        bootstrap_servers=bootstrap_servers,
        acks="all",
        enable_idempotence=True,
    )
    try:
        await producer.start()
    except Exception:
        await producer.stop()
        raise
    logger.info("kafka_producer_started", bootstrap_servers=bootstrap_servers)
    return producer


async def close_producer(producer: AIOKafkaProducer | None) -> None:
    if producer is None:
        return
    await producer.stop()
    logger.info("kafka_producer_stopped")
