"""RabbitMQ management HTTP API (httpx): paged enumeration of exchanges and bindings."""
from __future__ import annotations

from typing import Any, Iterator
from urllib.parse import quote

import httpx


class ManagementApi:
    def __init__(self, client: httpx.Client, *, vhost: str, page_size: int) -> None:
        self._client = client
        self._vhost = quote(vhost, safe="")
        self._page_size = page_size

    def iter_exchanges(self) -> Iterator[dict[str, Any]]:
        yield from self._paginate(f"/exchanges/{self._vhost}")

    def iter_queue_bindings(self, exchange: str) -> Iterator[dict[str, Any]]:
        """Bindings whose source is `exchange`; 404 if the exchange does not exist."""
        response = self._client.get(f"/exchanges/{self._vhost}/{quote(exchange, safe='')}/bindings/source")
        response.raise_for_status()
        for binding in response.json():
            if binding.get("destination_type") == "queue":
                yield binding

    def _paginate(self, path: str) -> Iterator[dict[str, Any]]:
        page = 1
        while True:
            response = self._client.get(path, params={"page": page, "page_size": self._page_size})
            response.raise_for_status()
            body = response.json()
            yield from body.get("items", [])
            if page >= int(body.get("page_count", 0)):
                return
            page += 1

    def close(self) -> None:
        self._client.close()
