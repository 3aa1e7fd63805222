"""Port: messaging publish contract. Implementations live in infrastructure."""
from __future__ import annotations

from typing import Any, Iterable, Protocol


class MessagePublisher(Protocol):
    """Interface for publishing messages."""

    async def publish(
        self,
        message: Any,
        *,
        exchange: str | None = None,
        routing_key: str | None = None,
        priority: int | None = None,
        expiration_ms: int = 0,
    ) -> None: ...

    async def publish_many(
        self,
        messages: Iterable[Any],
        *,
        exchange: str | None = None,
        routing_key: str | None = None,
        message_type: type | None = None,
        priority: int | None = None,
        expiration_ms: int = 0,
        batch_size: int = 20,
    ) -> None: ...

    async def close(self) -> None: ...
