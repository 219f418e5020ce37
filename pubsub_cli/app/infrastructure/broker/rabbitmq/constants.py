"""RabbitMQ broker client lifecycle states."""
from enum import Enum


class ClientState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    READY = "READY"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


# Exchanges the broker creates itself; never listed as topics.
RESERVED_EXCHANGE_PREFIX = "amq."
TOPIC_EXCHANGE_TYPE = "fanout"
