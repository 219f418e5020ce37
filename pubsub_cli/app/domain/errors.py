"""Error taxonomy surfaced to the orchestrator. No operation retries internally."""
from __future__ import annotations


class PubSubCliError(Exception):
    """Base for every failure the CLI reports."""


class ConfigMissing(PubSubCliError):
    """A required identifier was not supplied through the environment."""

    def __init__(self, variable: str) -> None:
        super().__init__(f"{variable} environment variable must be set.")
        self.variable = variable


class BrokerNotConnected(PubSubCliError):
    """Raised when an operation is attempted before connect() or after close()."""


class ListingFailed(PubSubCliError):
    """Enumeration failed; partial results are discarded."""

    def __init__(self, scope: str, reason: str) -> None:
        super().__init__(f"failed to list {scope}: {reason}")
        self.scope = scope


class PublishFailed(PubSubCliError):
    """The broker did not confirm the message."""

    def __init__(self, topic: str, reason: str) -> None:
        super().__init__(f"failed to publish to {topic}: {reason}")
        self.topic = topic


class ReceiveFailed(PubSubCliError):
    """The receive loop ended with a transport error before the threshold was reached."""

    def __init__(self, subscription: str, reason: str, *, received_count: int) -> None:
        super().__init__(f"receive on {subscription} failed after {received_count} messages: {reason}")
        self.subscription = subscription
        self.received_count = received_count


class ReceiveTimeout(ReceiveFailed):
    """The threshold was not reached within receive_timeout_seconds."""
