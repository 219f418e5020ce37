"""Publish one message and wait for the broker's confirmation. Single attempt per call."""
from __future__ import annotations

import asyncio
import time
from typing import Any

from loguru import logger

from pubsub_cli.app.core import SERVICE_NAME
from pubsub_cli.app.domain.errors import PublishFailed
from pubsub_cli.app.ports.broker_client import BrokerClient


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class PublisherService:
    def __init__(self, broker: BrokerClient, *, confirm_timeout_seconds: float | None = None) -> None:
        self._broker = broker
        self._confirm_timeout_seconds = confirm_timeout_seconds

    async def publish(self, topic: str, payload: bytes | str) -> str:
        """Return the broker-assigned message id, or raise PublishFailed."""
        data = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
        start = time.perf_counter()
        try:
            confirmation = self._broker.publish(topic, data)
            message_id = await asyncio.wait_for(confirmation, timeout=self._confirm_timeout_seconds)
        except asyncio.TimeoutError as exc:
            _log("publish_failed", topic=topic, reason="confirmation_timeout")
            raise PublishFailed(
                topic, f"no confirmation within {self._confirm_timeout_seconds}s"
            ) from exc
        except Exception as exc:
            _log("publish_failed", topic=topic, reason=str(exc))
            raise PublishFailed(topic, str(exc)) from exc

        if not message_id:
            _log("publish_failed", topic=topic, reason="empty_message_id")
            raise PublishFailed(topic, "broker confirmed without a message id")

        latency_ms = (time.perf_counter() - start) * 1000
        _log("publish_success", topic=topic, message_id=message_id, latency_ms=round(latency_ms, 2))
        return str(message_id)
