"""Composition root: build and lifecycle-manage the broker client and the services on top of it.

The broker client is created once per CLI invocation and passed explicitly to
every service; nothing holds it globally.
"""
from __future__ import annotations

from loguru import logger

from pubsub_cli.app.application.bounded_consumer import BoundedSubscriptionConsumer
from pubsub_cli.app.application.catalog_lister import CatalogLister
from pubsub_cli.app.application.publisher_service import PublisherService
from pubsub_cli.app.config.settings import Settings
from pubsub_cli.app.infrastructure.broker.factory import create_broker_client
from pubsub_cli.app.ports.broker_client import BrokerClient


class ClientDependencies:
    """Holds wired dependencies and their lifecycle."""

    def __init__(self, *, settings: Settings, broker: BrokerClient) -> None:
        self._settings = settings
        self._broker = broker
        self._catalog: CatalogLister | None = None
        self._publisher: PublisherService | None = None
        self._consumer: BoundedSubscriptionConsumer | None = None
        self._connected = False

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def broker(self) -> BrokerClient:
        return self._broker

    @property
    def catalog(self) -> CatalogLister:
        if self._catalog is None:
            raise RuntimeError("catalog is not initialized")
        return self._catalog

    @property
    def publisher(self) -> PublisherService:
        if self._publisher is None:
            raise RuntimeError("publisher is not initialized")
        return self._publisher

    @property
    def consumer(self) -> BoundedSubscriptionConsumer:
        if self._consumer is None:
            raise RuntimeError("consumer is not initialized")
        return self._consumer

    async def connect(self) -> None:
        await self._broker.connect()
        self._catalog = CatalogLister(self._broker)
        self._publisher = PublisherService(
            self._broker,
            confirm_timeout_seconds=self._settings.publish_timeout_seconds,
        )
        self._consumer = BoundedSubscriptionConsumer(
            self._broker,
            receive_timeout_seconds=self._settings.receive_timeout_seconds,
        )
        self._connected = True

    async def close(self) -> None:
        try:
            await self._broker.close()
        except Exception as exc:
            logger.warning("broker client close failed: {}", exc)
        self._catalog = None
        self._publisher = None
        self._consumer = None
        self._connected = False


def create_client_dependencies(
    settings: Settings | None = None,
    *,
    broker: BrokerClient | None = None,
) -> ClientDependencies:
    _settings = settings or Settings()
    return ClientDependencies(
        settings=_settings,
        broker=broker or create_broker_client(_settings),
    )
