from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from pubsub_cli.app.application.bounded_consumer import BoundedSubscriptionConsumer
from pubsub_cli.app.application.catalog_lister import CatalogLister
from pubsub_cli.app.application.publisher_service import PublisherService
from pubsub_cli.app.domain.errors import BrokerNotConnected, ListingFailed, PublishFailed, ReceiveFailed
from pubsub_cli.app.infrastructure.broker.rabbitmq.constants import ClientState
from pubsub_cli.app.infrastructure.broker.rabbitmq.rabbitmq_broker_client import RabbitMQBrokerClient
import pubsub_cli.app.infrastructure.broker.rabbitmq.rabbitmq_broker_client as mod


class _FakeExchange:
    def __init__(self, name: str) -> None:
        self.name = name
        self.published: list[tuple[Any, str, bool]] = []

    async def publish(self, message: Any, routing_key: str, mandatory: bool = True, **kwargs: Any) -> None:
        self.published.append((message, routing_key, mandatory))


class _FakeIncoming:
    def __init__(self, body: bytes, message_id: str) -> None:
        self.body = body
        self.message_id = message_id
        self.headers: dict[str, Any] = {"source": "test"}
        self.acks = 0
        self.nacks = 0

    async def ack(self) -> None:
        self.acks += 1

    async def nack(self, requeue: bool = True) -> None:
        self.nacks += 1


class _FakeQueue:
    def __init__(self, messages: list[_FakeIncoming], *, after_feed: Any = None) -> None:
        self._messages = messages
        self._after_feed = after_feed
        self.cancelled: list[str] = []
        self.no_ack: bool | None = None

    async def consume(self, callback: Any, no_ack: bool = False) -> str:
        self.no_ack = no_ack

        async def feed() -> None:
            for message in self._messages:
                await callback(message)
            if self._after_feed is not None:
                await self._after_feed()

        asyncio.get_running_loop().create_task(feed())
        return "ctag-1"

    async def cancel(self, consumer_tag: str) -> None:
        self.cancelled.append(consumer_tag)


class _FakeChannel:
    def __init__(self, *, exchanges: dict[str, _FakeExchange] | None = None, queues: dict[str, _FakeQueue] | None = None) -> None:
        self._exchanges = exchanges or {}
        self._queues = queues or {}
        self.close_callbacks: set[Any] = set()
        self.prefetch_count: int | None = None
        self.closed = False

    async def set_qos(self, prefetch_count: int) -> None:
        self.prefetch_count = prefetch_count

    async def get_exchange(self, name: str, ensure: bool = True) -> _FakeExchange:
        if name not in self._exchanges:
            raise RuntimeError(f"NOT_FOUND - no exchange '{name}'")
        return self._exchanges[name]

    async def get_queue(self, name: str, ensure: bool = True) -> _FakeQueue:
        if name not in self._queues:
            raise RuntimeError(f"NOT_FOUND - no queue '{name}'")
        return self._queues[name]

    def break_with(self, exc: Exception) -> None:
        for callback in list(self.close_callbacks):
            callback(self, exc)

    async def close(self) -> None:
        self.closed = True
        self.break_with(RuntimeError("closed by client"))


class _FakeConnection:
    def __init__(self, channels: list[_FakeChannel]) -> None:
        self._channels = channels
        self.confirm_flags: list[bool] = []
        self.closed = False

    async def channel(self, publisher_confirms: bool = False) -> _FakeChannel:
        self.confirm_flags.append(publisher_confirms)
        return self._channels.pop(0)

    async def close(self) -> None:
        self.closed = True


class _Settings:
    broker_user = "guest"
    broker_password = "guest"
    broker_host = "localhost"
    broker_port = 5672
    broker_vhost = "test"
    management_port = 15672
    management_timeout_seconds = 5.0
    listing_page_size = 2
    initial_backoff_seconds = 0.0
    max_backoff_seconds = 0.0
    max_connection_attempts = 2
    backoff_multiplier = 2.0
    max_outstanding_messages = 20
    worker_count = 4


def _management_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/api/exchanges/test":
        pages = {
            1: [{"name": "", "type": "direct"}, {"name": "amq.fanout", "type": "fanout"}],
            2: [{"name": "my-topic", "type": "fanout"}, {"name": "jobs", "type": "direct"}],
            3: [{"name": "other", "type": "fanout"}],
        }
        page = int(request.url.params["page"])
        return httpx.Response(200, json={"items": pages[page], "page": page, "page_count": 3})
    if request.url.path == "/api/exchanges/test/my-topic/bindings/source":
        return httpx.Response(
            200,
            json=[
                {"source": "my-topic", "destination": "my-sub", "destination_type": "queue"},
                {"source": "my-topic", "destination": "mirror", "destination_type": "exchange"},
            ],
        )
    if request.url.path == "/api/exchanges/test/other/bindings/source":
        return httpx.Response(200, json=[])
    return httpx.Response(404, json={"error": "Object Not Found", "reason": "Not Found"})


def _http_client() -> httpx.Client:
    return httpx.Client(
        base_url="http://localhost:15672/api",
        transport=httpx.MockTransport(_management_handler),
    )


async def _connected_client(monkeypatch, *, consume_channel: _FakeChannel | None = None) -> tuple[RabbitMQBrokerClient, _FakeConnection, _FakeChannel]:
    confirm_channel = _FakeChannel(exchanges={"my-topic": _FakeExchange("my-topic")})
    channels = [confirm_channel] + ([consume_channel] if consume_channel is not None else [])
    conn = _FakeConnection(channels)

    async def _connect(url: str) -> _FakeConnection:
        return conn

    monkeypatch.setattr(mod.aio_pika, "connect", _connect)
    client = RabbitMQBrokerClient(_Settings(), http_client=_http_client())
    await client.connect()
    return client, conn, confirm_channel


@pytest.mark.asyncio
async def test_connect_sets_ready(monkeypatch):
    client, conn, _ = await _connected_client(monkeypatch)

    assert client.state == ClientState.READY
    assert conn.confirm_flags == [True]


@pytest.mark.asyncio
async def test_connect_failure_after_attempts_raises(monkeypatch):
    attempts = 0

    async def _connect(url: str) -> None:
        nonlocal attempts
        attempts += 1
        raise ConnectionRefusedError("refused")

    monkeypatch.setattr(mod.aio_pika, "connect", _connect)
    client = RabbitMQBrokerClient(_Settings(), http_client=_http_client())

    with pytest.raises(ConnectionRefusedError):
        await client.connect()
    assert attempts == 2
    assert client.state == ClientState.DISCONNECTED


@pytest.mark.asyncio
async def test_publish_returns_generated_message_id(monkeypatch):
    client, _, confirm_channel = await _connected_client(monkeypatch)

    message_id = await PublisherService(client).publish("my-topic", "hello world!")

    exchange = await confirm_channel.get_exchange("my-topic")
    message, routing_key, mandatory = exchange.published[0]
    assert len(message_id) == 32
    assert message.message_id == message_id
    assert message.body == b"hello world!"
    assert routing_key == ""
    assert mandatory is False


@pytest.mark.asyncio
async def test_publish_to_missing_exchange_fails(monkeypatch):
    client, _, _ = await _connected_client(monkeypatch)

    with pytest.raises(PublishFailed, match="NOT_FOUND"):
        await PublisherService(client).publish("missing", "hello world!")


@pytest.mark.asyncio
async def test_publish_before_connect_fails():
    client = RabbitMQBrokerClient(_Settings(), http_client=_http_client())

    with pytest.raises(PublishFailed, match="not ready"):
        await PublisherService(client).publish("my-topic", "hello world!")


@pytest.mark.asyncio
async def test_list_topics_pages_and_filters(monkeypatch):
    client, _, _ = await _connected_client(monkeypatch)

    topics = await CatalogLister(client).list_topics()

    assert [t.name for t in topics] == ["my-topic", "other"]
    assert topics[0].path == "test/exchanges/my-topic"


@pytest.mark.asyncio
async def test_list_subscriptions_returns_bound_queues(monkeypatch):
    client, _, _ = await _connected_client(monkeypatch)
    lister = CatalogLister(client)

    subs = await lister.list_subscriptions("my-topic")
    empty = await lister.list_subscriptions("other")

    assert [s.name for s in subs] == ["my-sub"]
    assert empty == ()


@pytest.mark.asyncio
async def test_list_subscriptions_of_missing_topic_fails(monkeypatch):
    client, _, _ = await _connected_client(monkeypatch)

    with pytest.raises(ListingFailed):
        await CatalogLister(client).list_subscriptions("missing")


@pytest.mark.asyncio
async def test_streaming_pull_consumes_until_threshold(monkeypatch):
    messages = [_FakeIncoming(f"m-{i}".encode(), str(i)) for i in range(15)]
    queue = _FakeQueue(messages)
    consume_channel = _FakeChannel(queues={"my-sub": queue})
    client, _, _ = await _connected_client(monkeypatch, consume_channel=consume_channel)

    result = await BoundedSubscriptionConsumer(client, receive_timeout_seconds=10).consume_until(
        "my-sub", 10, lambda message: None
    )

    assert result.received_count >= 10
    assert sum(m.acks for m in messages) == result.received_count
    assert all(m.acks + m.nacks == 1 for m in messages)
    assert queue.no_ack is False
    assert queue.cancelled == ["ctag-1"]
    assert consume_channel.prefetch_count == 20
    assert consume_channel.closed is True


@pytest.mark.asyncio
async def test_channel_loss_mid_stream_is_receive_failed(monkeypatch):
    messages = [_FakeIncoming(f"m-{i}".encode(), str(i)) for i in range(3)]
    consume_channel = _FakeChannel()

    async def break_after_acks() -> None:
        while sum(m.acks for m in messages) < len(messages):
            await asyncio.sleep(0.01)
        consume_channel.break_with(ConnectionError("CONNECTION_FORCED"))

    consume_channel._queues["my-sub"] = _FakeQueue(messages, after_feed=break_after_acks)
    client, _, _ = await _connected_client(monkeypatch, consume_channel=consume_channel)

    with pytest.raises(ReceiveFailed, match="CONNECTION_FORCED") as excinfo:
        await BoundedSubscriptionConsumer(client, receive_timeout_seconds=10).consume_until(
            "my-sub", 10, lambda message: None
        )

    assert excinfo.value.received_count == 3


@pytest.mark.asyncio
async def test_close_transitions_to_closed(monkeypatch):
    client, conn, confirm_channel = await _connected_client(monkeypatch)

    await client.close()

    assert client.state == ClientState.CLOSED
    assert confirm_channel.closed is True
    assert conn.closed is True


@pytest.mark.asyncio
async def test_ready_client_without_management_api_raises_not_connected(monkeypatch):
    client, _, _ = await _connected_client(monkeypatch)
    client._management = None

    with pytest.raises(BrokerNotConnected, match="management api"):
        list(client.list_topics())
    with pytest.raises(BrokerNotConnected, match="management api"):
        list(client.list_subscriptions("my-topic"))


@pytest.mark.asyncio
async def test_ready_client_without_connection_fails_receive(monkeypatch):
    client, _, _ = await _connected_client(monkeypatch)
    client._connection = None

    with pytest.raises(ReceiveFailed, match="rabbitmq connection not initialized"):
        await BoundedSubscriptionConsumer(client).consume_until("my-sub", 1, lambda message: None)
