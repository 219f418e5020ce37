"""Catalog lister: turns the broker's paginated enumeration into complete listings.

Each iter_* call re-opens the remote enumeration, so the sequences are restartable.
list_* materialise them all-or-nothing: a transport error mid-way raises
ListingFailed and whatever was gathered is dropped.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Iterator

from loguru import logger

from pubsub_cli.app.core import SERVICE_NAME
from pubsub_cli.app.domain.errors import ListingFailed
from pubsub_cli.app.domain.models import EntityDescriptor
from pubsub_cli.app.ports.broker_client import BrokerClient


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class CatalogLister:
    def __init__(self, broker: BrokerClient) -> None:
        self._broker = broker

    def iter_topics(self) -> Iterator[EntityDescriptor]:
        yield from self._broker.list_topics()

    def iter_subscriptions(self, topic: str) -> Iterator[EntityDescriptor]:
        yield from self._broker.list_subscriptions(topic)

    async def list_topics(self) -> tuple[EntityDescriptor, ...]:
        return await self._collect("topics", self.iter_topics)

    async def list_subscriptions(self, topic: str) -> tuple[EntityDescriptor, ...]:
        return await self._collect(
            f"subscriptions of topic {topic}",
            lambda: self.iter_subscriptions(topic),
        )

    async def _collect(
        self,
        scope: str,
        open_sequence: Callable[[], Iterator[EntityDescriptor]],
    ) -> tuple[EntityDescriptor, ...]:
        try:
            entities = await asyncio.to_thread(lambda: tuple(open_sequence()))
        except Exception as exc:
            _log("listing_failed", scope=scope, error=str(exc))
            raise ListingFailed(scope, str(exc)) from exc
        _log("listing_completed", scope=scope, count=len(entities))
        return entities
