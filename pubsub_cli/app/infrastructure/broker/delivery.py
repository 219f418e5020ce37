"""Base for transport deliveries: the first of ack()/nack() wins, later calls are no-ops."""
from __future__ import annotations

import threading

from pubsub_cli.app.domain.models import Message

ACKED = "ACKED"
NACKED = "NACKED"


class OneShotDelivery:
    """Implements pubsub_cli.app.ports.delivery.Delivery; subclasses send the broker call."""

    def __init__(self, message: Message) -> None:
        self._message = message
        self._lock = threading.Lock()
        self._outcome: str | None = None

    @property
    def message(self) -> Message:
        return self._message

    @property
    def outcome(self) -> str | None:
        return self._outcome

    def ack(self) -> None:
        if self._settle(ACKED):
            self._ack()

    def nack(self) -> None:
        if self._settle(NACKED):
            self._nack()

    def _settle(self, outcome: str) -> bool:
        with self._lock:
            if self._outcome is not None:
                return False
            self._outcome = outcome
            return True

    def _ack(self) -> None:
        raise NotImplementedError

    def _nack(self) -> None:
        raise NotImplementedError
