"""pubsub-cli entry point: list topics and subscriptions, publish one message, consume until N."""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
import threading
from typing import Any, Sequence, TextIO

from loguru import logger
from pydantic import ValidationError

from pubsub_cli.app.composition import create_client_dependencies
from pubsub_cli.app.config.settings import Settings
from pubsub_cli.app.core import SERVICE_NAME
from pubsub_cli.app.core.logging import configure_logging
from pubsub_cli.app.domain.errors import ConfigMissing, PubSubCliError
from pubsub_cli.app.domain.models import ConsumptionResult, Message
from pubsub_cli.app.ports.broker_client import BrokerClient

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class LinePrinter:
    """Writes whole lines; safe to call from concurrent delivery workers."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._lock = threading.Lock()

    def __call__(self, line: str) -> None:
        with self._lock:
            self._stream.write(line + "\n")
            self._stream.flush()


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pubsub-cli",
        description="List topics and subscriptions, publish a message, then consume until a count is reached.",
    )
    parser.add_argument("--backend", choices=("pubsub", "rabbitmq", "inmemory"), help="broker backend")
    parser.add_argument("--topic", help="topic to list subscriptions of and publish to")
    parser.add_argument("--subscription", help="subscription to consume from")
    parser.add_argument("--message", help="payload to publish")
    parser.add_argument("--threshold", type=_positive_int, help="stop after this many messages")
    return parser


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    overrides = {
        "broker_backend": args.backend,
        "topic_id": args.topic,
        "subscription_id": args.subscription,
        "message_text": args.message,
        "receive_threshold": args.threshold,
    }
    update = {key: value for key, value in overrides.items() if value is not None}
    return settings.model_copy(update=update) if update else settings


async def run(
    settings: Settings,
    *,
    broker: BrokerClient | None = None,
    out: TextIO | None = None,
) -> ConsumptionResult:
    printer = LinePrinter(out or sys.stdout)
    deps = create_client_dependencies(settings, broker=broker)
    try:
        await deps.connect()

        printer("Listing all topics from the project:")
        for topic in await deps.catalog.list_topics():
            printer(str(topic))

        printer(f"Listing all subscriptions of topic {settings.topic_id}:")
        for subscription in await deps.catalog.list_subscriptions(settings.topic_id):
            printer(str(subscription))

        printer("PUBLISH:")
        message_id = await deps.publisher.publish(settings.topic_id, settings.message_text)
        printer(f"Published a message; msg ID: {message_id}")

        def handle(message: Message) -> None:
            printer(f"Got message: {json.dumps(message.text(), ensure_ascii=False)}")

        result = await deps.consumer.consume_until(
            settings.subscription_id,
            settings.receive_threshold,
            handle,
        )
        printer(f"Received {result.received_count} messages from {settings.subscription_id}")
        return result
    finally:
        await deps.close()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = apply_overrides(Settings(), args)
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_FAILURE

    configure_logging(settings.log_level)
    try:
        settings.require_project_id()
    except ConfigMissing as e:
        print(str(e), file=sys.stderr)
        return EXIT_FAILURE

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        _log("cli_interrupted")
        return EXIT_INTERRUPTED
    except PubSubCliError as e:
        _log("cli_failed", error=str(e))
        print(f"Failed: {e}", file=sys.stderr)
        return EXIT_FAILURE
    except Exception as e:
        logger.exception("cli failed: {}", e)
        print(f"Fatal error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
