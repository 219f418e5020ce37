from __future__ import annotations

import asyncio
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Iterator

import pytest

from pubsub_cli.app.config.settings import Settings
from pubsub_cli.app.domain.cancellation import CancellationSignal
from pubsub_cli.app.domain.models import EntityDescriptor, EntityKind, Message


class FakeDelivery:
    """Implements Delivery; counts every ack/nack call instead of settling once."""

    def __init__(self, message: Message) -> None:
        self._message = message
        self._lock = threading.Lock()
        self.ack_calls = 0
        self.nack_calls = 0

    @property
    def message(self) -> Message:
        return self._message

    def ack(self) -> None:
        with self._lock:
            self.ack_calls += 1

    def nack(self) -> None:
        with self._lock:
            self.nack_calls += 1


class FakeBroker:
    """Implements BrokerClient for tests.

    streaming_pull dispatches `delivery_count` deliveries on `workers` threads with
    optional latency jitter, then either raises `fail_with`, returns at once
    (`close_when_idle`), or waits for the cancellation signal.
    """

    def __init__(
        self,
        *,
        topics: tuple[str, ...] = (),
        subscriptions: dict[str, tuple[str, ...]] | None = None,
        list_error: Exception | None = None,
        list_error_after: int = 0,
        message_id: str | None = "msg-1",
        publish_error: Exception | None = None,
        publish_never_confirms: bool = False,
        delivery_count: int = 0,
        workers: int = 4,
        jitter_seconds: float = 0.0,
        stop_dispatch_on_cancel: bool = False,
        fail_with: Exception | None = None,
        close_when_idle: bool = False,
    ) -> None:
        self._topics = topics
        self._subscriptions = subscriptions or {}
        self._list_error = list_error
        self._list_error_after = list_error_after
        self._message_id = message_id
        self._publish_error = publish_error
        self._publish_never_confirms = publish_never_confirms
        self._delivery_count = delivery_count
        self._workers = workers
        self._jitter_seconds = jitter_seconds
        self._stop_dispatch_on_cancel = stop_dispatch_on_cancel
        self._fail_with = fail_with
        self._close_when_idle = close_when_idle
        self.published: list[tuple[str, bytes]] = []
        self.deliveries: list[FakeDelivery] = []
        self.list_calls = 0
        self.connected = False
        self.closed = False
        self._deliveries_lock = threading.Lock()

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.closed = True

    def list_topics(self) -> Iterator[EntityDescriptor]:
        self.list_calls += 1
        for index, name in enumerate(self._topics):
            if self._list_error is not None and index == self._list_error_after:
                raise self._list_error
            yield EntityDescriptor(kind=EntityKind.TOPIC, name=name, path=f"projects/p/topics/{name}")
        if self._list_error is not None:
            raise self._list_error

    def list_subscriptions(self, topic: str) -> Iterator[EntityDescriptor]:
        self.list_calls += 1
        if self._list_error is not None:
            raise self._list_error
        for name in self._subscriptions.get(topic, ()):
            yield EntityDescriptor(
                kind=EntityKind.SUBSCRIPTION,
                name=name,
                path=f"projects/p/subscriptions/{name}",
            )

    def publish(self, topic: str, data: bytes) -> "asyncio.Future[str]":
        self.published.append((topic, data))
        confirmation: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        if self._publish_never_confirms:
            return confirmation
        if self._publish_error is not None:
            confirmation.set_exception(self._publish_error)
        else:
            confirmation.set_result(self._message_id)  # type: ignore[arg-type]
        return confirmation

    async def streaming_pull(self, subscription: str, callback: Any, cancel: CancellationSignal) -> None:
        def deliver(index: int) -> None:
            if self._jitter_seconds:
                time.sleep(random.uniform(0, self._jitter_seconds))
            if self._stop_dispatch_on_cancel and cancel.fired:
                return
            delivery = FakeDelivery(Message(data=f"message-{index}".encode(), message_id=str(index)))
            with self._deliveries_lock:
                self.deliveries.append(delivery)
            callback(delivery)

        loop = asyncio.get_running_loop()
        with ThreadPoolExecutor(max_workers=self._workers) as pool:
            await asyncio.gather(
                *(loop.run_in_executor(pool, deliver, i) for i in range(self._delivery_count))
            )

        if self._fail_with is not None:
            raise self._fail_with
        if self._close_when_idle:
            return
        while not cancel.fired:
            await asyncio.sleep(0.01)


@pytest.fixture()
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Run with no broker-related env vars and no .env file in the working directory."""
    for name in (
        "GOOGLE_CLOUD_PROJECT",
        "BROKER_BACKEND",
        "TOPIC_ID",
        "SUBSCRIPTION_ID",
        "MESSAGE_TEXT",
        "RECEIVE_THRESHOLD",
        "RECEIVE_TIMEOUT_SECONDS",
        "WORKER_COUNT",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def inmemory_settings(isolated_env) -> Settings:
    return Settings(
        GOOGLE_CLOUD_PROJECT="test-project",
        BROKER_BACKEND="inmemory",
        RECEIVE_THRESHOLD=1,
        RECEIVE_TIMEOUT_SECONDS=10,
        WORKER_COUNT=4,
    )
