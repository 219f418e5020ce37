"""Port: the broker client every component talks to. Built once per invocation."""
from __future__ import annotations

from typing import Awaitable, Callable, Iterator, Protocol

from pubsub_cli.app.domain.cancellation import CancellationSignal
from pubsub_cli.app.domain.models import EntityDescriptor
from pubsub_cli.app.ports.delivery import Delivery

DeliveryCallback = Callable[[Delivery], None]


class BrokerClient(Protocol):
    async def connect(self) -> None: ...

    def list_topics(self) -> Iterator[EntityDescriptor]:
        """Lazy, page-by-page enumeration; may block on network I/O while iterating."""
        ...

    def list_subscriptions(self, topic: str) -> Iterator[EntityDescriptor]: ...

    def publish(self, topic: str, data: bytes) -> Awaitable[str]:
        """Submit data; the returned awaitable resolves to the broker-assigned message id."""
        ...

    async def streaming_pull(
        self,
        subscription: str,
        callback: DeliveryCallback,
        cancel: CancellationSignal,
    ) -> None:
        """Dispatch deliveries to callback on worker threads until cancel fires.

        Returns once in-flight deliveries have drained; raises on transport failure.
        """
        ...

    async def close(self) -> None:
        """Release resources. No-op allowed if nothing to close."""
        ...
