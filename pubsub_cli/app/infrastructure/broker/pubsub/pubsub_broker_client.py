"""
Google Cloud Pub/Sub broker client.

Listing goes through the publisher's paged list calls, which fetch pages lazily
while iterated. Publishing returns the SDK's publish future wrapped for asyncio.

streaming_pull wraps SubscriberClient.subscribe: the SDK runs callbacks on its
own thread pool (sized by worker_count). The awaiting task wakes when either the
cancellation signal fires or the streaming pull future finishes; the future is
then cancelled and its result() awaited off-loop, which returns once in-flight
callbacks have drained (await_callbacks_on_shutdown) or raises the transport error.
"""
from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Iterator

from google.cloud import pubsub_v1
from google.cloud.pubsub_v1.subscriber.scheduler import ThreadScheduler
from loguru import logger

from pubsub_cli.app.config.settings import Settings
from pubsub_cli.app.core import SERVICE_NAME
from pubsub_cli.app.domain.cancellation import CancellationSignal
from pubsub_cli.app.domain.errors import BrokerNotConnected
from pubsub_cli.app.domain.models import EntityDescriptor, EntityKind, Message
from pubsub_cli.app.infrastructure.broker.delivery import OneShotDelivery
from pubsub_cli.app.ports.broker_client import DeliveryCallback


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def _short_name(path: str) -> str:
    return path.rsplit("/", 1)[-1]


class PubSubDelivery(OneShotDelivery):
    """Adapts pubsub_v1.subscriber.message.Message."""

    def __init__(self, message: Any) -> None:
        super().__init__(
            Message(
                data=bytes(message.data),
                message_id=message.message_id,
                attributes=dict(message.attributes or {}),
            )
        )
        self._raw = message

    def _ack(self) -> None:
        self._raw.ack()

    def _nack(self) -> None:
        self._raw.nack()


class PubSubBrokerClient:
    def __init__(
        self,
        settings: Settings,
        *,
        publisher: Any | None = None,
        subscriber: Any | None = None,
    ) -> None:
        self._settings = settings
        self._publisher = publisher
        self._subscriber = subscriber
        self._project_id: str | None = None

    async def connect(self) -> None:
        self._project_id = self._settings.require_project_id()
        if self._publisher is None:
            self._publisher = pubsub_v1.PublisherClient()
        if self._subscriber is None:
            self._subscriber = pubsub_v1.SubscriberClient()
        _log("pubsub_clients_ready", project_id=self._project_id)

    def _require_connected(self) -> tuple[Any, Any, str]:
        if self._publisher is None or self._subscriber is None or self._project_id is None:
            raise BrokerNotConnected("pubsub client not connected")
        return self._publisher, self._subscriber, self._project_id

    def list_topics(self) -> Iterator[EntityDescriptor]:
        publisher, _, project_id = self._require_connected()
        for topic in publisher.list_topics(request={"project": f"projects/{project_id}"}):
            yield EntityDescriptor(kind=EntityKind.TOPIC, name=_short_name(topic.name), path=topic.name)

    def list_subscriptions(self, topic: str) -> Iterator[EntityDescriptor]:
        publisher, _, project_id = self._require_connected()
        topic_path = publisher.topic_path(project_id, topic)
        for path in publisher.list_topic_subscriptions(request={"topic": topic_path}):
            yield EntityDescriptor(kind=EntityKind.SUBSCRIPTION, name=_short_name(path), path=path)

    def publish(self, topic: str, data: bytes) -> "asyncio.Future[str]":
        publisher, _, project_id = self._require_connected()
        future = publisher.publish(publisher.topic_path(project_id, topic), data)
        return asyncio.wrap_future(future)

    async def streaming_pull(
        self,
        subscription: str,
        callback: DeliveryCallback,
        cancel: CancellationSignal,
    ) -> None:
        _, subscriber, project_id = self._require_connected()
        subscription_path = subscriber.subscription_path(project_id, subscription)
        loop = asyncio.get_running_loop()
        woken: asyncio.Future[None] = loop.create_future()

        def wake() -> None:
            if not woken.done():
                woken.set_result(None)

        def on_message(message: Any) -> None:
            callback(PubSubDelivery(message))

        executor = ThreadPoolExecutor(
            max_workers=self._settings.worker_count,
            thread_name_prefix="pubsub-delivery",
        )
        try:
            streaming = subscriber.subscribe(
                subscription_path,
                callback=on_message,
                flow_control=pubsub_v1.types.FlowControl(
                    max_messages=self._settings.max_outstanding_messages,
                ),
                scheduler=ThreadScheduler(executor=executor),
                await_callbacks_on_shutdown=True,
            )
        except Exception:
            executor.shutdown(wait=False)
            raise
        _log("pubsub_pull_started", subscription=subscription_path)
        cancel.add_listener(lambda: loop.call_soon_threadsafe(wake))
        streaming.add_done_callback(lambda _f: loop.call_soon_threadsafe(wake))
        try:
            await woken
        finally:
            await asyncio.to_thread(self._stop_and_drain, streaming)
            _log("pubsub_pull_stopped", subscription=subscription_path)

    @staticmethod
    def _stop_and_drain(streaming: Any) -> None:
        if not streaming.done():
            streaming.cancel()
        streaming.result()

    async def close(self) -> None:
        if self._publisher is not None:
            try:
                await asyncio.to_thread(self._publisher.stop)
            except Exception as exc:
                logger.warning("publisher client stop failed: {}", exc)
            self._publisher = None
        if self._subscriber is not None:
            try:
                self._subscriber.close()
            except Exception as exc:
                logger.warning("subscriber client close failed: {}", exc)
            self._subscriber = None
