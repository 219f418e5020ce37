"""In-memory broker for local mode and tests.

Publishing fans a message out to every subscription of the topic; messages
published before a subscription exists are not retained for it. streaming_pull
dispatches on a thread pool of `worker_count` workers; nacked or unsettled
deliveries go back on the subscription's backlog. With `close_when_drained`
a worker that finds the backlog empty ends, so the stream closes once nothing
is left to deliver.
"""
from __future__ import annotations

import asyncio
import itertools
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Iterator

from loguru import logger

from pubsub_cli.app.core import SERVICE_NAME
from pubsub_cli.app.domain.cancellation import CancellationSignal
from pubsub_cli.app.domain.models import EntityDescriptor, EntityKind, Message
from pubsub_cli.app.infrastructure.broker.delivery import OneShotDelivery
from pubsub_cli.app.ports.broker_client import DeliveryCallback


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class EntityNotFound(LookupError):
    pass


@dataclass
class _Subscription:
    name: str
    topic: str
    backlog: "queue.Queue[Message]" = field(default_factory=queue.Queue)
    failure: Exception | None = None


class InMemoryDelivery(OneShotDelivery):
    def __init__(self, message: Message, backlog: "queue.Queue[Message]") -> None:
        super().__init__(message)
        self._backlog = backlog

    def _ack(self) -> None:
        return

    def _nack(self) -> None:
        self._backlog.put(self.message)


class InMemoryBroker:
    def __init__(
        self,
        project_id: str = "local",
        *,
        worker_count: int = 4,
        poll_interval_seconds: float = 0.05,
        close_when_drained: bool = False,
    ) -> None:
        self._project_id = project_id
        self._worker_count = worker_count
        self._poll_interval_seconds = poll_interval_seconds
        self._close_when_drained = close_when_drained
        self._lock = threading.Lock()
        self._topics: dict[str, list[str]] = {}
        self._subscriptions: dict[str, _Subscription] = {}
        self._ids = itertools.count(1)

    async def connect(self) -> None:
        return

    async def close(self) -> None:
        return

    def topic_path(self, topic: str) -> str:
        return f"projects/{self._project_id}/topics/{topic}"

    def subscription_path(self, subscription: str) -> str:
        return f"projects/{self._project_id}/subscriptions/{subscription}"

    def create_topic(self, topic: str) -> None:
        with self._lock:
            self._topics.setdefault(topic, [])

    def create_subscription(self, subscription: str, topic: str) -> None:
        with self._lock:
            if topic not in self._topics:
                raise EntityNotFound(f"topic not found: {topic}")
            if subscription not in self._subscriptions:
                self._subscriptions[subscription] = _Subscription(name=subscription, topic=topic)
                self._topics[topic].append(subscription)

    def fail_subscription(self, subscription: str, exc: Exception) -> None:
        """Simulate a transport failure on every open receive loop of the subscription."""
        self._get_subscription(subscription).failure = exc

    def backlog_size(self, subscription: str) -> int:
        return self._get_subscription(subscription).backlog.qsize()

    def list_topics(self) -> Iterator[EntityDescriptor]:
        with self._lock:
            names = sorted(self._topics)
        for name in names:
            yield EntityDescriptor(kind=EntityKind.TOPIC, name=name, path=self.topic_path(name))

    def list_subscriptions(self, topic: str) -> Iterator[EntityDescriptor]:
        with self._lock:
            if topic not in self._topics:
                raise EntityNotFound(f"topic not found: {topic}")
            names = list(self._topics[topic])
        for name in names:
            yield EntityDescriptor(
                kind=EntityKind.SUBSCRIPTION,
                name=name,
                path=self.subscription_path(name),
            )

    def publish(self, topic: str, data: bytes) -> "asyncio.Future[str]":
        confirmation: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        try:
            message_id = self._fan_out(topic, data)
        except Exception as exc:
            confirmation.set_exception(exc)
        else:
            confirmation.set_result(message_id)
        return confirmation

    def _fan_out(self, topic: str, data: bytes) -> str:
        with self._lock:
            if topic not in self._topics:
                raise EntityNotFound(f"topic not found: {topic}")
            message = Message(data=bytes(data), message_id=str(next(self._ids)))
            for name in self._topics[topic]:
                self._subscriptions[name].backlog.put(message)
        return message.message_id or ""

    async def streaming_pull(
        self,
        subscription: str,
        callback: DeliveryCallback,
        cancel: CancellationSignal,
    ) -> None:
        sub = self._get_subscription(subscription)
        stop = threading.Event()
        cancel.add_listener(stop.set)
        loop = asyncio.get_running_loop()
        executor = ThreadPoolExecutor(
            max_workers=self._worker_count,
            thread_name_prefix=f"inmemory-{subscription}",
        )
        _log("inmemory_pull_started", subscription=subscription, workers=self._worker_count)
        try:
            workers = [
                loop.run_in_executor(executor, self._dispatch, sub, callback, stop)
                for _ in range(self._worker_count)
            ]
            await asyncio.gather(*workers)
        finally:
            stop.set()
            await asyncio.to_thread(executor.shutdown, wait=True)
            _log("inmemory_pull_stopped", subscription=subscription)

    def _dispatch(
        self,
        sub: _Subscription,
        callback: DeliveryCallback,
        stop: threading.Event,
    ) -> None:
        while not stop.is_set():
            if sub.failure is not None:
                raise sub.failure
            try:
                message = sub.backlog.get(timeout=self._poll_interval_seconds)
            except queue.Empty:
                if self._close_when_drained:
                    return
                continue
            delivery = InMemoryDelivery(message, sub.backlog)
            try:
                callback(delivery)
            finally:
                if delivery.outcome is None:
                    delivery.nack()

    def _get_subscription(self, subscription: str) -> _Subscription:
        with self._lock:
            sub = self._subscriptions.get(subscription)
        if sub is None:
            raise EntityNotFound(f"subscription not found: {subscription}")
        return sub
