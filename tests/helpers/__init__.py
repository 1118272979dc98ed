from .executor import FakeExecutor
from .kafka import BROKER, AIOKafkaConsumerMock, AIOKafkaProducerMock, reset_broker
from .setup import install_inmemory_kafka
from .streams import take, wait_until

__all__ = [
    "BROKER",
    "AIOKafkaConsumerMock",
    "AIOKafkaProducerMock",
    "FakeExecutor",
    "install_inmemory_kafka",
    "reset_broker",
    "take",
    "wait_until",
]
