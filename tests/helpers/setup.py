from __future__ import annotations

from ksqlkit.core.log import get_logger

from .kafka import AIOKafkaConsumerMock, AIOKafkaProducerMock, reset_broker

LOG = get_logger("tests.helpers.env")


def install_inmemory_kafka(monkeypatch) -> None:
    """Reset the in-memory broker and swap aiokafka clients inside the bus module."""
    reset_broker()
    from ksqlkit.transport import kafka_bus

    monkeypatch.setattr(kafka_bus, "AIOKafkaProducer", AIOKafkaProducerMock, raising=True)
    monkeypatch.setattr(kafka_bus, "AIOKafkaConsumer", AIOKafkaConsumerMock, raising=True)
    LOG.debug("env.kafka.mocked", event="env.kafka.mocked")
