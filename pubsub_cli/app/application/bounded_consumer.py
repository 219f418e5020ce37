"""
Bounded subscription consumer: receive from a subscription until N messages are processed.

Per delivery (on a transport worker thread):
  handler(message) -> delivery.ack() -> [lock: count += 1; if count == threshold: fire] .

Increment, compare and fire share one critical section, so exactly one delivery
(the one whose increment makes the count equal the threshold) fires the
cancellation signal, whatever the interleaving of concurrent workers.

Deliveries that reach the consumer after the signal fired are nacked without
running the handler; deliveries already past that check finish and are counted.
A handler error nacks the delivery for redelivery and is not counted.
"""
from __future__ import annotations

import asyncio
import threading
from typing import Any, Callable

from loguru import logger

from pubsub_cli.app.core import SERVICE_NAME
from pubsub_cli.app.domain.cancellation import CancellationSignal
from pubsub_cli.app.domain.errors import ReceiveFailed, ReceiveTimeout
from pubsub_cli.app.domain.models import ConsumptionResult, Message
from pubsub_cli.app.ports.broker_client import BrokerClient
from pubsub_cli.app.ports.delivery import Delivery

MessageHandler = Callable[[Message], None]


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class ConsumptionRun:
    """Per-call state: the counter, its lock, and the one-shot signal."""

    def __init__(
        self,
        subscription: str,
        threshold: int,
        handler: MessageHandler,
        cancel: CancellationSignal,
    ) -> None:
        self.subscription = subscription
        self.threshold = threshold
        self.cancel = cancel
        self._handler = handler
        self._lock = threading.Lock()
        self._received_count = 0

    @property
    def received_count(self) -> int:
        with self._lock:
            return self._received_count

    def on_delivery(self, delivery: Delivery) -> None:
        if self.cancel.fired:
            delivery.nack()
            _log("delivery_rejected_after_cancel", subscription=self.subscription)
            return

        message = delivery.message
        try:
            self._handler(message)
        except Exception as exc:
            logger.exception("message handler failed: {}", exc)
            delivery.nack()
            return

        try:
            delivery.ack()
        except Exception as exc:
            logger.warning("ack failed for message {}: {}", message.message_id, exc)
            return

        with self._lock:
            self._received_count += 1
            count = self._received_count
            reached = count == self.threshold
            if reached:
                self.cancel.fire()

        if reached:
            _log("threshold_reached", subscription=self.subscription, received_count=count)


class BoundedSubscriptionConsumer:
    def __init__(self, broker: BrokerClient, *, receive_timeout_seconds: float | None = None) -> None:
        self._broker = broker
        self._receive_timeout_seconds = receive_timeout_seconds

    async def consume_until(
        self,
        subscription: str,
        threshold: int,
        handler: MessageHandler,
        *,
        cancel: CancellationSignal | None = None,
    ) -> ConsumptionResult:
        """Block until `threshold` deliveries are handled and acked, or raise ReceiveFailed."""
        if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 1:
            raise ValueError(f"threshold must be a positive integer, got {threshold!r}")

        run = ConsumptionRun(subscription, threshold, handler, cancel or CancellationSignal())
        _log("receive_started", subscription=subscription, threshold=threshold)
        try:
            await asyncio.wait_for(
                self._broker.streaming_pull(subscription, run.on_delivery, run.cancel),
                timeout=self._receive_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            count = run.received_count
            _log("receive_timeout", subscription=subscription, received_count=count)
            raise ReceiveTimeout(
                subscription,
                f"threshold {threshold} not reached within {self._receive_timeout_seconds}s",
                received_count=count,
            ) from exc
        except Exception as exc:
            count = run.received_count
            _log("receive_failed", subscription=subscription, received_count=count, error=str(exc))
            raise ReceiveFailed(subscription, str(exc), received_count=count) from exc

        count = run.received_count
        if not run.cancel.fired:
            _log("receive_closed_early", subscription=subscription, received_count=count)
            raise ReceiveFailed(
                subscription, "stream closed before threshold was reached", received_count=count
            )

        _log("receive_completed", subscription=subscription, received_count=count)
        return ConsumptionResult(subscription=subscription, threshold=threshold, received_count=count)
