"""Broker client factory: selects implementation from config. Only place that imports concrete clients."""
from __future__ import annotations

from pubsub_cli.app.config.settings import Settings
from pubsub_cli.app.infrastructure.broker.inmemory.in_memory_broker import InMemoryBroker
from pubsub_cli.app.infrastructure.broker.pubsub.pubsub_broker_client import PubSubBrokerClient
from pubsub_cli.app.infrastructure.broker.rabbitmq.rabbitmq_broker_client import RabbitMQBrokerClient
from pubsub_cli.app.ports.broker_client import BrokerClient


def create_broker_client(settings: Settings) -> BrokerClient:
    backend = settings.broker_backend.strip().lower()

    if backend == "pubsub":
        return PubSubBrokerClient(settings)

    if backend == "rabbitmq":
        return RabbitMQBrokerClient(settings)

    if backend == "inmemory":
        # Local mode: seed the configured topic and subscription so the CLI flow runs end to end.
        # Nothing publishes after the run starts, so an empty backlog ends the stream.
        broker = InMemoryBroker(
            settings.project_id or "local",
            worker_count=settings.worker_count,
            close_when_drained=True,
        )
        broker.create_topic(settings.topic_id)
        broker.create_subscription(settings.subscription_id, settings.topic_id)
        return broker

    raise ValueError(f"Unsupported broker backend: {backend}")
