"""Adapter: wrap aio_pika.IncomingMessage with the bits the consume pipeline reads and writes."""
from __future__ import annotations

from typing import Any

from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractIncomingMessage

from relaymq.constants import Headers
from relaymq.domain.models import MessageEnvelope


def parse_retry_count(headers: dict[str, Any] | None) -> int:
    """`x-retries` as an int; missing, negative or unparsable values count as 0."""
    if not headers:
        return 0
    raw = headers.get(Headers.RETRIES)
    if raw is None or isinstance(raw, bool):
        return 0
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        value = int(str(raw).strip())
    except ValueError:
        return 0
    return max(value, 0)


class AioPikaMessageAdapter:
    """Read-side view over one delivery plus ack/nack and the retry republish copy."""

    def __init__(self, message: AbstractIncomingMessage) -> None:
        self._message = message

    @property
    def raw(self) -> AbstractIncomingMessage:
        return self._message

    @property
    def body(self) -> bytes:
        return self._message.body

    @property
    def headers(self) -> dict[str, Any]:
        return dict(self._message.headers or {})

    @property
    def retry_count(self) -> int:
        return parse_retry_count(self._message.headers)

    def to_envelope(self, payload: Any = None) -> MessageEnvelope:
        message = self._message
        return MessageEnvelope(
            exchange=message.exchange or "",
            routing_key=message.routing_key or "",
            delivery_tag=message.delivery_tag,
            consumer_tag=message.consumer_tag,
            redelivered=bool(message.redelivered),
            retry_count=self.retry_count,
            headers=self.headers,
            payload=payload,
        )

    def build_retry_message(self, retry_count: int, expiration_ms: int) -> Message:
        """Copy body and properties, bump `x-retries`, and expire after the tier TTL."""
        message = self._message
        headers = self.headers
        headers[Headers.RETRIES] = retry_count
        return Message(
            message.body,
            headers=headers,
            content_type=message.content_type,
            content_encoding=message.content_encoding,
            delivery_mode=DeliveryMode.PERSISTENT,
            priority=message.priority,
            correlation_id=message.correlation_id,
            reply_to=message.reply_to,
            expiration=expiration_ms / 1000,
            message_id=message.message_id,
            timestamp=message.timestamp,
            type=message.type,
            app_id=message.app_id,
        )

    async def ack(self) -> None:
        await self._message.ack()

    async def nack(self, *, requeue: bool = True) -> None:
        await self._message.nack(requeue=requeue)
