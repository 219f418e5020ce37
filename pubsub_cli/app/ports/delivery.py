"""Port: one delivery of a message to this consumer. Implementations live in infrastructure."""
from __future__ import annotations

from typing import Protocol

from pubsub_cli.app.domain.models import Message


class Delivery(Protocol):
    """Transport-agnostic delivery.

    ack() and nack() are synchronous because transports call the consumer from
    worker threads. Only the first of them takes effect.
    """

    @property
    def message(self) -> Message: ...

    def ack(self) -> None: ...

    def nack(self) -> None: ...
