"""
Bounded pool of AMQP channels for producers.

Lifecycle:
  UNPRIMED -> (first acquire) prime min_size channels -> READY -> CLOSED.

Invariants:
  - _total counts every live channel (idle, leased, or being created) and is only
    mutated under _count_lock; it never exceeds max_size.
  - Unhealthy channels are closed and dropped instead of being handed out or pooled.
  - Channels are created through provider.get_or_create(), so a request may
    transparently trigger a reconnect.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from aio_pika.abc import AbstractChannel
from loguru import logger

from relaymq.core import SERVICE_NAME
from relaymq.exceptions import PoolExhaustedError
from relaymq.infrastructure.messaging.rabbitmq.connection_provider import ConnectionProvider


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class PooledChannel:
    """A channel plus the lock that serializes operations on it."""

    def __init__(self, channel: AbstractChannel) -> None:
        self.channel = channel
        self.lock = asyncio.Lock()
        self._healthy = True

    def mark_unhealthy(self) -> None:
        self._healthy = False

    @property
    def is_healthy(self) -> bool:
        return self._healthy and not self.channel.is_closed

    async def close(self) -> None:
        if self.channel.is_closed:
            return
        try:
            await self.channel.close()
        except Exception as e:
            logger.warning("pooled channel close failed: {}", e)


class ChannelPool:
    def __init__(
        self,
        provider: ConnectionProvider,
        *,
        min_size: int,
        max_size: int,
        wait_timeout_ms: int,
        publisher_confirms: bool = False,
        owns_provider: bool = False,
    ) -> None:
        self._provider = provider
        self._min_size = min_size
        self._max_size = max_size
        self._wait_timeout_ms = wait_timeout_ms
        self._publisher_confirms = publisher_confirms
        self._owns_provider = owns_provider
        self._idle: asyncio.Queue[PooledChannel] = asyncio.Queue()
        self._total = 0
        self._count_lock = asyncio.Lock()
        self._prime_lock = asyncio.Lock()
        self._primed = False
        self._closed = False

    @property
    def provider(self) -> ConnectionProvider:
        return self._provider

    @property
    def publisher_confirms(self) -> bool:
        return self._publisher_confirms

    @property
    def size(self) -> int:
        return self._total

    @property
    def idle_count(self) -> int:
        return self._idle.qsize()

    @property
    def max_size(self) -> int:
        return self._max_size

    async def _ensure_primed(self) -> None:
        if self._primed:
            return
        async with self._prime_lock:
            if self._primed:
                return
            while self._total < self._min_size:
                if not await self._reserve():
                    break
                self._idle.put_nowait(await self._create_reserved())
            self._primed = True
            _log("channel_pool_primed", size=self._total, min_size=self._min_size)

    async def _reserve(self) -> bool:
        async with self._count_lock:
            if self._total >= self._max_size:
                return False
            self._total += 1
            return True

    async def _unreserve(self) -> None:
        async with self._count_lock:
            self._total -= 1

    async def _create_reserved(self) -> PooledChannel:
        try:
            connection = await self._provider.get_or_create()
            channel = await connection.channel(publisher_confirms=self._publisher_confirms)
        except BaseException:
            await self._unreserve()
            raise
        return PooledChannel(channel)

    async def _discard(self, pooled: PooledChannel) -> None:
        await self._unreserve()
        await pooled.close()

    async def acquire(self, timeout_ms: int | None = None) -> PooledChannel:
        if self._closed:
            raise PoolExhaustedError("channel pool is closed")
        await self._ensure_primed()

        while True:
            try:
                pooled = self._idle.get_nowait()
            except asyncio.QueueEmpty:
                break
            if pooled.is_healthy:
                return pooled
            _log("channel_pool_discard_unhealthy")
            await self._discard(pooled)

        if await self._reserve():
            return await self._create_reserved()

        timeout = (timeout_ms if timeout_ms is not None else self._wait_timeout_ms) / 1000
        try:
            pooled = await asyncio.wait_for(self._idle.get(), timeout)
        except asyncio.TimeoutError:
            pooled = None
        if pooled is not None:
            if pooled.is_healthy:
                return pooled
            await self._discard(pooled)
        if await self._reserve():
            return await self._create_reserved()
        _log("channel_pool_exhausted", size=self._total, max_size=self._max_size, timeout_seconds=timeout)
        raise PoolExhaustedError(f"no channel available within {timeout}s (max {self._max_size})")

    async def release(self, pooled: PooledChannel) -> None:
        if not self._closed and pooled.is_healthy and self._idle.qsize() < self._max_size:
            self._idle.put_nowait(pooled)
            return
        await self._discard(pooled)

    @asynccontextmanager
    async def lease(self, timeout_ms: int | None = None) -> AsyncIterator[PooledChannel]:
        pooled = await self.acquire(timeout_ms)
        try:
            yield pooled
        finally:
            await self.release(pooled)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while True:
            try:
                pooled = self._idle.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._discard(pooled)
        _log("channel_pool_closed", remaining=self._total)
        if self._owns_provider:
            await self._provider.close()
