"""Domain models."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class EntityKind(str, Enum):
    TOPIC = "topic"
    SUBSCRIPTION = "subscription"


@dataclass(frozen=True)
class EntityDescriptor:
    """A topic or subscription as enumerated by the broker."""

    kind: EntityKind
    name: str
    path: str

    def __str__(self) -> str:
        return self.path


@dataclass(frozen=True)
class Message:
    """Opaque payload plus the broker-assigned id (None until the broker confirms it)."""

    data: bytes
    message_id: str | None = None
    attributes: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.data, (bytes, bytearray)):
            raise TypeError("message.data must be bytes")

    def text(self, encoding: str = "utf-8") -> str:
        return bytes(self.data).decode(encoding, errors="replace")


@dataclass(frozen=True)
class ConsumptionResult:
    """Outcome of a bounded consumption that reached its threshold."""

    subscription: str
    threshold: int
    received_count: int
