"""
RabbitMQ broker client: topics are fanout exchanges, subscriptions are the queues bound to them.

Lifecycle:
  DISCONNECTED -> CONNECTING (backoff) -> CONNECTED -> confirm channel open -> READY.
  On close(): CLOSING -> close channel/connection and management client -> CLOSED.

Topics and subscriptions are looked up passively; they are never declared here.
The connection is not robust: a lost connection ends the receive loop with an
error instead of silently reconnecting.

Concurrency:
  - aio-pika delivers on the event loop; each delivery is handed to a
    ThreadPoolExecutor of worker_count threads, so the consumer callback runs in
    parallel with other deliveries.
  - Worker threads ack/nack by scheduling the aio-pika coroutine back onto the
    loop (run_coroutine_threadsafe) and waiting for it.
  - Publishes are serialized on the confirm channel by _lock.
"""
from __future__ import annotations

import asyncio
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterator
from urllib.parse import quote

import aio_pika
import httpx
from aio_pika import DeliveryMode
from loguru import logger

from pubsub_cli.app.config.settings import Settings
from pubsub_cli.app.core import SERVICE_NAME
from pubsub_cli.app.core.backoff import exponential_backoff
from pubsub_cli.app.domain.cancellation import CancellationSignal
from pubsub_cli.app.domain.errors import BrokerNotConnected
from pubsub_cli.app.domain.models import EntityDescriptor, EntityKind, Message
from pubsub_cli.app.infrastructure.broker.delivery import OneShotDelivery
from pubsub_cli.app.infrastructure.broker.rabbitmq.constants import (
    RESERVED_EXCHANGE_PREFIX,
    TOPIC_EXCHANGE_TYPE,
    ClientState,
)
from pubsub_cli.app.infrastructure.broker.rabbitmq.management_api import ManagementApi
from pubsub_cli.app.ports.broker_client import DeliveryCallback

SETTLE_TIMEOUT_SECONDS = 30.0


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class BrokerConnectionLost(ConnectionError):
    """The channel or connection closed while the receive loop was running."""


class AioPikaDelivery(OneShotDelivery):
    """Adapts aio_pika.IncomingMessage; ack/nack are called from worker threads."""

    def __init__(self, message: aio_pika.abc.AbstractIncomingMessage, loop: asyncio.AbstractEventLoop) -> None:
        headers = message.headers or {}
        super().__init__(
            Message(
                data=bytes(message.body),
                message_id=message.message_id,
                attributes={str(k): str(v) for k, v in headers.items()},
            )
        )
        self._raw = message
        self._loop = loop

    def _ack(self) -> None:
        asyncio.run_coroutine_threadsafe(self._raw.ack(), self._loop).result(SETTLE_TIMEOUT_SECONDS)

    def _nack(self) -> None:
        asyncio.run_coroutine_threadsafe(
            self._raw.nack(requeue=True), self._loop
        ).result(SETTLE_TIMEOUT_SECONDS)


def _register_close_callback(obj: Any, callback: Callable[..., None]) -> None:
    callbacks = getattr(obj, "close_callbacks", None)
    if callbacks is not None and callable(getattr(callbacks, "add", None)):
        callbacks.add(callback)
        return
    add = getattr(obj, "add_close_callback", None)
    if callable(add):
        add(callback)


class RabbitMQBrokerClient:
    def __init__(self, settings: Settings, *, http_client: httpx.Client | None = None) -> None:
        self._settings = settings
        self._state = ClientState.DISCONNECTED
        self._connection: aio_pika.abc.AbstractConnection | None = None
        self._channel: aio_pika.abc.AbstractChannel | None = None
        self._http_client = http_client
        self._management: ManagementApi | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> ClientState:
        return self._state

    def _set_state(self, state: ClientState) -> None:
        self._state = state

    def _build_amqp_url(self) -> str:
        return (
            f"amqp://{self._settings.broker_user}:{self._settings.broker_password}"
            f"@{self._settings.broker_host}:{self._settings.broker_port}/"
            f"{quote(self._settings.broker_vhost, safe='')}"
        )

    def _build_http_client(self) -> httpx.Client:
        return httpx.Client(
            base_url=f"http://{self._settings.broker_host}:{self._settings.management_port}/api",
            auth=(self._settings.broker_user, self._settings.broker_password),
            timeout=self._settings.management_timeout_seconds,
        )

    async def connect(self) -> None:
        self._set_state(ClientState.CONNECTING)
        _log("rmq_connecting")
        attempt = 0
        async for delay in exponential_backoff(
            self._settings.initial_backoff_seconds,
            self._settings.max_backoff_seconds,
            self._settings.backoff_multiplier,
            self._settings.max_connection_attempts,
        ):
            attempt += 1
            _log("rmq_connect_attempt", attempt=attempt, delay=delay)
            try:
                self._connection = await aio_pika.connect(self._build_amqp_url())
                break
            except Exception as e:
                logger.warning("rmq connect failed: {}", e)
                if attempt >= self._settings.max_connection_attempts:
                    _log("rmq_connect_failed", attempt=attempt)
                    self._set_state(ClientState.DISCONNECTED)
                    raise
        self._set_state(ClientState.CONNECTED)
        _log("rmq_connected")

        self._channel = await self._connection.channel(publisher_confirms=True)
        self._management = ManagementApi(
            self._http_client or self._build_http_client(),
            vhost=self._settings.broker_vhost,
            page_size=self._settings.listing_page_size,
        )
        self._set_state(ClientState.READY)

    def _require_ready(self) -> None:
        if self._state != ClientState.READY:
            raise BrokerNotConnected(f"rabbitmq client not ready (state={self._state.value})")

    def _require_management(self) -> ManagementApi:
        self._require_ready()
        if self._management is None:
            raise BrokerNotConnected("management api client not initialized")
        return self._management

    def _require_connection(self) -> aio_pika.abc.AbstractConnection:
        self._require_ready()
        if self._connection is None:
            raise BrokerNotConnected("rabbitmq connection not initialized")
        return self._connection

    def list_topics(self) -> Iterator[EntityDescriptor]:
        management = self._require_management()
        for exchange in management.iter_exchanges():
            name = str(exchange.get("name", ""))
            if not name or name.startswith(RESERVED_EXCHANGE_PREFIX):
                continue
            if exchange.get("type") != TOPIC_EXCHANGE_TYPE:
                continue
            yield EntityDescriptor(
                kind=EntityKind.TOPIC,
                name=name,
                path=f"{self._settings.broker_vhost}/exchanges/{name}",
            )

    def list_subscriptions(self, topic: str) -> Iterator[EntityDescriptor]:
        management = self._require_management()
        for binding in management.iter_queue_bindings(topic):
            name = str(binding["destination"])
            yield EntityDescriptor(
                kind=EntityKind.SUBSCRIPTION,
                name=name,
                path=f"{self._settings.broker_vhost}/queues/{name}",
            )

    def publish(self, topic: str, data: bytes) -> "asyncio.Future[str]":
        return asyncio.ensure_future(self._publish_confirmed(topic, data))

    async def _publish_confirmed(self, topic: str, data: bytes) -> str:
        self._require_ready()
        message_id = uuid.uuid4().hex
        async with self._lock:
            if self._channel is None:
                raise BrokerNotConnected("confirm channel is closed")
            exchange = await self._channel.get_exchange(topic, ensure=True)
            # With publisher confirms, a broker nack raises DeliveryError here.
            await exchange.publish(
                aio_pika.Message(data, message_id=message_id, delivery_mode=DeliveryMode.PERSISTENT),
                routing_key="",
                mandatory=False,
            )
        return message_id

    async def streaming_pull(
        self,
        subscription: str,
        callback: DeliveryCallback,
        cancel: CancellationSignal,
    ) -> None:
        connection = self._require_connection()
        loop = asyncio.get_running_loop()
        stopped: asyncio.Future[None] = loop.create_future()

        def wake(exc: BaseException | None = None) -> None:
            if stopped.done():
                return
            if exc is None:
                stopped.set_result(None)
            else:
                stopped.set_exception(exc)

        def on_channel_closed(*args: Any, **kwargs: Any) -> None:
            reason = next((a for a in args if isinstance(a, BaseException)), None)
            lost = BrokerConnectionLost(f"channel closed: {reason}" if reason else "channel closed")
            loop.call_soon_threadsafe(wake, lost)

        channel = await connection.channel()
        await channel.set_qos(prefetch_count=self._settings.max_outstanding_messages)
        queue = await channel.get_queue(subscription, ensure=True)
        _register_close_callback(channel, on_channel_closed)

        executor = ThreadPoolExecutor(
            max_workers=self._settings.worker_count,
            thread_name_prefix="rmq-delivery",
        )
        in_flight: set[asyncio.Future[None]] = set()

        async def on_message(raw: aio_pika.abc.AbstractIncomingMessage) -> None:
            work = loop.run_in_executor(executor, callback, AioPikaDelivery(raw, loop))
            in_flight.add(work)
            work.add_done_callback(in_flight.discard)

        cancel.add_listener(lambda: loop.call_soon_threadsafe(wake))
        consumer_tag = await queue.consume(on_message, no_ack=False)
        _log("rmq_pull_started", subscription=subscription, consumer_tag=consumer_tag)
        try:
            await stopped
        finally:
            try:
                await queue.cancel(consumer_tag)
            except Exception as e:
                logger.warning("consumer cancel failed: {}", e)
            if in_flight:
                await asyncio.gather(*list(in_flight), return_exceptions=True)
            executor.shutdown(wait=False)
            try:
                await channel.close()
            except Exception as e:
                logger.warning("consume channel close failed: {}", e)
            _log("rmq_pull_stopped", subscription=subscription)

    async def close(self) -> None:
        self._set_state(ClientState.CLOSING)
        _log("rmq_client_shutdown")
        async with self._lock:
            if self._channel is not None:
                try:
                    await self._channel.close()
                except Exception as e:
                    logger.warning("channel close failed (continuing to close connection): {}", e)
                self._channel = None
            if self._connection is not None:
                try:
                    await self._connection.close()
                except Exception as e:
                    logger.warning("connection close failed: {}", e)
                self._connection = None
        if self._management is not None:
            self._management.close()
            self._management = None
        self._set_state(ClientState.CLOSED)
