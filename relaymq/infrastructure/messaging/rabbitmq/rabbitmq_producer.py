"""
RabbitMQ producer: typed publish and batched publish over a channel pool.

Addressing:
  explicit  -> (exchange, routing_key) as given; "" is the default exchange.
  by type   -> ("<module.qualname>.direct", "<module.qualname>"), memoized per type.

Every message is persistent and published with mandatory=True. With publisher
confirms enabled the pool hands out confirm channels and each publish waits for
the broker ack up to wait_confirms_ms. A channel that fails a publish is tagged
unhealthy so the pool drops it on release.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Iterable

from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractChannel, AbstractExchange
from loguru import logger

from relaymq.config.settings import PublisherConfirmsConfig
from relaymq.constants import Defaults
from relaymq.core import SERVICE_NAME
from relaymq.core.batching import chunked
from relaymq.domain import naming
from relaymq.infrastructure.messaging.rabbitmq.channel_pool import ChannelPool, PooledChannel
from relaymq.infrastructure.serialization.json_codec import JsonCodec
from relaymq.ports.codec import Codec


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class RabbitMQProducer:
    """MessagePublisher implementation"""

    def __init__(
        self,
        pool: ChannelPool,
        codec: Codec | None = None,
        *,
        publisher_confirms: PublisherConfirmsConfig | None = None,
        owns_pool: bool = False,
    ) -> None:
        self._pool = pool
        self._codec: Codec = codec if codec is not None else JsonCodec()
        self._publisher_confirms = publisher_confirms
        self._owns_pool = owns_pool
        self._addresses: dict[type, tuple[str, str]] = {}
        self._closed = False

    @property
    def pool(self) -> ChannelPool:
        return self._pool

    @property
    def _confirm_timeout(self) -> float | None:
        if self._publisher_confirms is None:
            return None
        return self._publisher_confirms.timeout_seconds

    def resolve_address(
        self,
        message_type: type,
        exchange: str | None = None,
        routing_key: str | None = None,
    ) -> tuple[str, str]:
        if exchange is not None and routing_key is not None:
            return exchange, routing_key
        if exchange is not None or routing_key is not None:
            raise ValueError("exchange and routing_key must be given together")
        address = self._addresses.get(message_type)
        if address is None:
            name = naming.type_queue_name(message_type)
            address = (naming.direct_exchange_name(name), name)
            self._addresses[message_type] = address
        return address

    def _build_message(self, body: bytes, priority: int | None, expiration_ms: int) -> Message:
        return Message(
            body,
            content_type=self._codec.content_type,
            delivery_mode=DeliveryMode.PERSISTENT,
            priority=priority,
            expiration=expiration_ms / 1000 if expiration_ms > Defaults.MIN_EXPIRATION_MS else None,
        )

    @staticmethod
    async def _target(channel: AbstractChannel, exchange: str) -> AbstractExchange:
        if exchange == "":
            return channel.default_exchange
        return await channel.get_exchange(exchange, ensure=False)

    async def publish(
        self,
        message: Any,
        *,
        exchange: str | None = None,
        routing_key: str | None = None,
        priority: int | None = None,
        expiration_ms: int = 0,
    ) -> None:
        exchange, routing_key = self.resolve_address(type(message), exchange, routing_key)
        outgoing = self._build_message(self._codec.encode(message), priority, expiration_ms)
        start = time.perf_counter()
        pooled = await self._pool.acquire()
        try:
            async with pooled.lock:
                target = await self._target(pooled.channel, exchange)
                await target.publish(
                    outgoing,
                    routing_key=routing_key,
                    mandatory=True,
                    timeout=self._confirm_timeout,
                )
        except Exception as e:
            self._on_publish_failed(pooled, exchange, routing_key, e)
            raise
        finally:
            await self._pool.release(pooled)
        latency_ms = (time.perf_counter() - start) * 1000
        _log("publish_success", exchange=exchange, routing_key=routing_key, latency_ms=round(latency_ms, 2))

    async def publish_many(
        self,
        messages: Iterable[Any],
        *,
        exchange: str | None = None,
        routing_key: str | None = None,
        message_type: type | None = None,
        priority: int | None = None,
        expiration_ms: int = 0,
        batch_size: int = Defaults.BATCH_SIZE,
    ) -> None:
        items = list(messages)
        if not items:
            return
        exchange, routing_key = self.resolve_address(message_type or type(items[0]), exchange, routing_key)
        outgoing = [self._build_message(self._codec.encode(item), priority, expiration_ms) for item in items]

        for index, batch in enumerate(chunked(outgoing, batch_size)):
            pooled = await self._pool.acquire()
            try:
                async with pooled.lock:
                    target = await self._target(pooled.channel, exchange)
                    results = await asyncio.gather(
                        *(
                            target.publish(
                                msg,
                                routing_key=routing_key,
                                mandatory=True,
                                timeout=self._confirm_timeout,
                            )
                            for msg in batch
                        ),
                        return_exceptions=True,
                    )
                errors = [result for result in results if isinstance(result, BaseException)]
                if errors:
                    raise errors[0]
            except Exception as e:
                self._on_publish_failed(pooled, exchange, routing_key, e)
                raise
            finally:
                await self._pool.release(pooled)
            _log("publish_batch_success", exchange=exchange, routing_key=routing_key, batch=index, size=len(batch))

    def _on_publish_failed(self, pooled: PooledChannel, exchange: str, routing_key: str, error: Exception) -> None:
        pooled.mark_unhealthy()
        _log("publish_failed", exchange=exchange, routing_key=routing_key)
        logger.exception("publish to {}/{} failed: {}", exchange or "<default>", routing_key, error)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        _log("producer_shutdown")
        if self._owns_pool:
            await self._pool.close()
