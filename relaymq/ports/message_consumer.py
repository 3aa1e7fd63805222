"""Port: message consumer. Implementations live in infrastructure."""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

from relaymq.domain.models import MessageContext

OnDequeue = Callable[[Any, Any, MessageContext], Awaitable[None]]
OnError = Callable[[Any, Any, MessageContext, BaseException], Awaitable[None]]


class MessageConsumer(Protocol):
    async def subscribe(self, on_dequeue: OnDequeue, on_error: OnError | None = None) -> None:
        """Provision topology and start consuming; handlers run once per delivery."""
        ...

    async def start_consume(self, rethrow: bool = False) -> bool: ...

    async def create_new_channel_and_start_consume(self, rethrow: bool = False) -> bool: ...

    @property
    def consumer_tags(self) -> tuple[str, ...]: ...

    async def basic_cancel(self) -> None: ...

    async def close_channel(self) -> None: ...

    async def close(self) -> None: ...
