"""Domain models handed to user handlers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class MessageEnvelope:
    """Routing metadata of one delivery plus its decoded payload (None when decoding failed)."""

    exchange: str
    routing_key: str
    delivery_tag: int | None
    consumer_tag: str | None
    redelivered: bool
    retry_count: int
    headers: dict[str, Any] = field(default_factory=dict)
    payload: Any = None


@dataclass(frozen=True)
class MessageContext:
    """Read-only view passed to on-dequeue and on-error handlers."""

    sender: Any
    is_last_try: bool
    envelope: MessageEnvelope
