"""
In-memory stand-ins for the slice of aio-pika relaymq talks to.

FakeBroker keeps exchanges, queues and bindings and routes published messages the
way RabbitMQ does for direct, topic and fanout exchanges. Two shortcuts keep tests
fast and deterministic:
  - A message entering a queue that has no consumer, a TTL (queue x-message-ttl or
    per-message expiration) and a dead-letter exchange expires immediately and is
    dead-lettered. That is what a retry tier queue does after its TTL.
  - nack(requeue=True) holds the message in `queue.requeued` instead of redelivering
    it, so a handler that always fails cannot spin forever.
Deliveries run as tasks, like aio-pika does; `await broker.drain()` waits for them.
"""
from __future__ import annotations

import asyncio
import itertools
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

MESSAGE_PROPERTIES = (
    "content_type",
    "content_encoding",
    "delivery_mode",
    "priority",
    "correlation_id",
    "reply_to",
    "expiration",
    "message_id",
    "timestamp",
    "type",
    "app_id",
)


class FakeChannelError(Exception):
    """Broker closed the channel (NOT_FOUND, PRECONDITION_FAILED, ...)."""


def expiration_ms(value: Any) -> int | None:
    """aio-pika expresses expiration in seconds (number or timedelta); the wire carries ms."""
    if value is None:
        return None
    if isinstance(value, timedelta):
        return int(value.total_seconds() * 1000)
    if isinstance(value, datetime):
        return max(int((value - datetime.now(value.tzinfo)).total_seconds() * 1000), 0)
    if isinstance(value, str):
        return int(value)
    return int(round(float(value) * 1000))


class FakeCallbacks:
    """Mimics aio-pika's CallbackCollection: callbacks receive the sender first."""

    def __init__(self, sender: Any) -> None:
        self._sender = sender
        self._callbacks: list[Callable[..., Any]] = []

    def add(self, callback: Callable[..., Any]) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def discard(self, callback: Callable[..., Any]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def __contains__(self, callback: object) -> bool:
        return callback in self._callbacks

    def __len__(self) -> int:
        return len(self._callbacks)

    def fire(self, *args: Any) -> None:
        for callback in list(self._callbacks):
            callback(self._sender, *args)


@dataclass(frozen=True)
class StoredMessage:
    body: bytes
    headers: dict[str, Any]
    properties: dict[str, Any]
    exchange: str
    routing_key: str
    redelivered: bool = False

    @classmethod
    def from_message(cls, message: Any, exchange: str, routing_key: str) -> "StoredMessage":
        return cls(
            body=bytes(message.body),
            headers=dict(getattr(message, "headers", None) or {}),
            properties={name: getattr(message, name, None) for name in MESSAGE_PROPERTIES},
            exchange=exchange,
            routing_key=routing_key,
        )

    @property
    def expiration_ms(self) -> int | None:
        return expiration_ms(self.properties.get("expiration"))


@dataclass
class PublishRecord:
    exchange: str
    routing_key: str
    message: Any
    mandatory: bool
    timeout: float | None
    confirm: bool
    channel: "FakeChannel"


@dataclass
class BrokerQueue:
    name: str
    arguments: dict[str, Any]
    ready: deque[StoredMessage] = field(default_factory=deque)
    requeued: list[StoredMessage] = field(default_factory=list)
    consumers: list[tuple[str, "FakeChannel", Callable[[Any], Awaitable[None]]]] = field(default_factory=list)
    next_consumer: int = 0

    @property
    def message_ttl(self) -> int | None:
        return self.arguments.get("x-message-ttl")


def _topic_matches(pattern: str, key: str) -> bool:
    words = pattern.split(".")
    parts = key.split(".")

    def match(i: int, j: int) -> bool:
        if i == len(words):
            return j == len(parts)
        if words[i] == "#":
            return any(match(i + 1, k) for k in range(j, len(parts) + 1))
        if j == len(parts):
            return False
        return words[i] in ("*", parts[j]) and match(i + 1, j + 1)

    return match(0, 0)


class FakeBroker:
    def __init__(self) -> None:
        self.exchanges: dict[str, str] = {}
        self.queues: dict[str, BrokerQueue] = {}
        self.bindings: list[tuple[str, str, str]] = []
        self.published: list[PublishRecord] = []
        self.returned: list[StoredMessage] = []
        self.dropped: list[StoredMessage] = []
        self.expired: list[tuple[str, int]] = []
        self.dead_lettered: list[tuple[str, StoredMessage]] = []
        self.acked: list["FakeIncomingMessage"] = []
        self.nacked: list["FakeIncomingMessage"] = []
        self.connections: list[FakeConnection] = []
        self.connect_calls: list[tuple[str, dict[str, Any]]] = []
        self.connect_times: list[float] = []
        self.fail_connects = 0
        self.unreachable_hosts: set[str] = set()
        self.connect_delay = 0.0
        self.publish_delay = 0.0
        self.task_errors: list[BaseException] = []
        self._consumer_tags = itertools.count(1)
        self._delivery_tags = itertools.count(1)
        self._tasks: set[asyncio.Task[None]] = set()

    # --- connection entry point (monkeypatched over aio_pika.connect_robust) ---

    async def connect_robust(self, url: str, **kwargs: Any) -> "FakeConnection":
        self.connect_calls.append((url, kwargs))
        self.connect_times.append(asyncio.get_running_loop().time())
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if any(f"@{host}:" in url for host in self.unreachable_hosts):
            raise ConnectionError(f"connection refused: {url}")
        if self.fail_connects:
            self.fail_connects -= 1
            raise ConnectionError("connection refused")
        connection = FakeConnection(self, url, kwargs)
        self.connections.append(connection)
        return connection

    # --- topology ---

    def declare_exchange(self, name: str, type: str = "direct") -> None:
        existing = self.exchanges.get(name)
        if existing is not None and existing != type:
            raise FakeChannelError(f"PRECONDITION_FAILED - exchange {name!r} is {existing}, not {type}")
        self.exchanges[name] = type

    def declare_queue(self, name: str, arguments: dict[str, Any]) -> BrokerQueue:
        queue = self.queues.get(name)
        if queue is None:
            queue = self.queues[name] = BrokerQueue(name, dict(arguments))
        elif queue.arguments != arguments:
            raise FakeChannelError(f"PRECONDITION_FAILED - queue {name!r} declared with different arguments")
        return queue

    def bind(self, exchange: str, queue: str, routing_key: str) -> None:
        if exchange not in self.exchanges:
            raise FakeChannelError(f"NOT_FOUND - no exchange {exchange!r}")
        binding = (exchange, queue, routing_key)
        if binding not in self.bindings:
            self.bindings.append(binding)

    def bindings_for(self, queue: str) -> list[tuple[str, str]]:
        return [(exchange, key) for exchange, name, key in self.bindings if name == queue]

    # --- routing ---

    def publish_raw(
        self,
        exchange: str,
        routing_key: str,
        body: bytes,
        headers: dict[str, Any] | None = None,
        **properties: Any,
    ) -> bool:
        props = {name: properties.get(name) for name in MESSAGE_PROPERTIES}
        return self.route(exchange, routing_key, StoredMessage(body, dict(headers or {}), props, exchange, routing_key))

    def route(self, exchange: str, routing_key: str, message: StoredMessage) -> bool:
        if exchange == "":
            targets = [routing_key] if routing_key in self.queues else []
        else:
            if exchange not in self.exchanges:
                raise FakeChannelError(f"NOT_FOUND - no exchange {exchange!r}")
            kind = self.exchanges[exchange]
            targets = []
            for bound_exchange, queue, key in self.bindings:
                if bound_exchange != exchange or queue in targets:
                    continue
                if kind == "fanout" or (kind == "direct" and key == routing_key) or (
                    kind == "topic" and _topic_matches(key, routing_key)
                ):
                    targets.append(queue)
        for name in targets:
            self._enqueue(self.queues[name], replace(message, exchange=exchange, routing_key=routing_key))
        return bool(targets)

    def _enqueue(self, queue: BrokerQueue, message: StoredMessage) -> None:
        ttl = message.expiration_ms if message.expiration_ms is not None else queue.message_ttl
        if not queue.consumers and ttl is not None and queue.arguments.get("x-dead-letter-exchange"):
            self.expired.append((queue.name, int(ttl)))
            self._dead_letter(queue, message)
            return
        if queue.consumers:
            self._dispatch(queue, message)
        else:
            queue.ready.append(message)

    def _dead_letter(self, queue: BrokerQueue, message: StoredMessage) -> None:
        exchange = queue.arguments.get("x-dead-letter-exchange")
        if not exchange or exchange not in self.exchanges:
            self.dropped.append(message)
            return
        routing_key = queue.arguments.get("x-dead-letter-routing-key", message.routing_key)
        properties = dict(message.properties)
        properties["expiration"] = None
        self.dead_lettered.append((queue.name, message))
        self.route(exchange, routing_key, replace(message, properties=properties, redelivered=False))

    # --- consumers ---

    def add_consumer(self, queue_name: str, channel: "FakeChannel", callback: Callable[[Any], Awaitable[None]]) -> str:
        queue = self.queues[queue_name]
        tag = f"ctag-{next(self._consumer_tags)}"
        queue.consumers.append((tag, channel, callback))
        while queue.ready:
            self._dispatch(queue, queue.ready.popleft())
        return tag

    def cancel_consumer(self, queue_name: str, tag: str) -> None:
        queue = self.queues[queue_name]
        queue.consumers = [entry for entry in queue.consumers if entry[0] != tag]

    def channel_closed(self, channel: "FakeChannel") -> None:
        for queue in self.queues.values():
            queue.consumers = [entry for entry in queue.consumers if entry[1] is not channel]

    def _dispatch(self, queue: BrokerQueue, message: StoredMessage) -> None:
        tag, channel, callback = queue.consumers[queue.next_consumer % len(queue.consumers)]
        queue.next_consumer += 1
        incoming = FakeIncomingMessage(self, channel, queue, message, tag, next(self._delivery_tags))
        task = asyncio.get_running_loop().create_task(callback(incoming))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.task_errors.append(task.exception())  # type: ignore[arg-type]

    def _settled(self, message: "FakeIncomingMessage", *, ack: bool, requeue: bool) -> None:
        if ack:
            self.acked.append(message)
            return
        self.nacked.append(message)
        if requeue:
            message.queue.requeued.append(replace(message.stored, redelivered=True))
        else:
            self._dead_letter(message.queue, message.stored)

    async def drain(self, rounds: int = 100) -> None:
        """Wait until every delivery task (including ones they spawn) has finished."""
        for _ in range(rounds):
            await asyncio.sleep(0)
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
        raise AssertionError("broker did not go idle")

    def depth(self, queue: str) -> int:
        return len(self.queues[queue].ready)

    def messages(self, queue: str) -> list[StoredMessage]:
        return list(self.queues[queue].ready)

    def channels(self) -> list["FakeChannel"]:
        return [channel for connection in self.connections for channel in connection.channels]


class FakeIncomingMessage:
    def __init__(
        self,
        broker: FakeBroker,
        channel: "FakeChannel",
        queue: BrokerQueue,
        stored: StoredMessage,
        consumer_tag: str,
        delivery_tag: int,
    ) -> None:
        self._broker = broker
        self.channel = channel
        self.queue = queue
        self.stored = stored
        self.body = stored.body
        self.headers = dict(stored.headers)
        self.exchange = stored.exchange
        self.routing_key = stored.routing_key
        self.redelivered = stored.redelivered
        self.consumer_tag = consumer_tag
        self.delivery_tag = delivery_tag
        for name in MESSAGE_PROPERTIES:
            setattr(self, name, stored.properties.get(name))
        self.processed = False
        self.acked = False
        self.nacked = False
        self.requeue: bool | None = None

    def _settle(self) -> None:
        if self.processed:
            raise RuntimeError("message already processed")
        if self.channel.is_closed:
            raise FakeChannelError("channel is closed")
        self.processed = True

    async def ack(self, multiple: bool = False) -> None:
        self._settle()
        self.acked = True
        self._broker._settled(self, ack=True, requeue=False)

    async def nack(self, multiple: bool = False, requeue: bool = True) -> None:
        self._settle()
        self.nacked = True
        self.requeue = requeue
        self._broker._settled(self, ack=False, requeue=requeue)

    async def reject(self, requeue: bool = False) -> None:
        await self.nack(requeue=requeue)


class FakeExchange:
    def __init__(self, channel: "FakeChannel", name: str, type: str) -> None:
        self.channel = channel
        self.name = name
        self.type = type

    async def publish(
        self,
        message: Any,
        routing_key: str,
        *,
        mandatory: bool = True,
        immediate: bool = False,
        timeout: float | None = None,
    ) -> None:
        channel = self.channel
        channel.check_open()
        delay = channel.publish_delay or channel.broker.publish_delay
        if delay:
            if timeout is not None and delay > timeout:
                await asyncio.sleep(timeout)
                raise asyncio.TimeoutError()
            await asyncio.sleep(delay)
        if channel.publish_error is not None:
            raise channel.publish_error
        broker = channel.broker
        broker.published.append(
            PublishRecord(self.name, routing_key, message, mandatory, timeout, channel.publisher_confirms, channel)
        )
        stored = StoredMessage.from_message(message, self.name, routing_key)
        try:
            routed = broker.route(self.name, routing_key, stored)
        except FakeChannelError as e:
            await channel.close(e)
            raise
        if not routed and mandatory:
            broker.returned.append(stored)


class FakeQueue:
    def __init__(self, channel: "FakeChannel", name: str) -> None:
        self.channel = channel
        self.name = name
        self.no_ack: bool | None = None

    async def bind(self, exchange: Any, routing_key: str | None = None, **kwargs: Any) -> None:
        self.channel.check_open()
        name = exchange if isinstance(exchange, str) else exchange.name
        self.channel.broker.bind(name, self.name, routing_key if routing_key is not None else self.name)

    async def consume(self, callback: Callable[[Any], Awaitable[None]], no_ack: bool = False, **kwargs: Any) -> str:
        self.channel.check_open()
        self.no_ack = no_ack
        return self.channel.broker.add_consumer(self.name, self.channel, callback)

    async def cancel(self, consumer_tag: str, **kwargs: Any) -> None:
        self.channel.check_open()
        self.channel.cancelled_tags.append(consumer_tag)
        self.channel.broker.cancel_consumer(self.name, consumer_tag)


class FakeChannel:
    _numbers = itertools.count(1)

    def __init__(self, broker: FakeBroker, connection: "FakeConnection", publisher_confirms: bool) -> None:
        self.broker = broker
        self.connection = connection
        self.number = next(self._numbers)
        self.publisher_confirms = publisher_confirms
        self.close_callbacks = FakeCallbacks(self)
        self.default_exchange = FakeExchange(self, "", "direct")
        self.qos: dict[str, int] | None = None
        self.publish_error: BaseException | None = None
        self.publish_delay = 0.0
        self.declare_error: BaseException | None = None
        self.cancelled_tags: list[str] = []
        self.close_count = 0
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed or self.connection.is_closed

    def check_open(self) -> None:
        if self.is_closed:
            raise FakeChannelError("channel is closed")

    async def set_qos(self, prefetch_count: int = 0, prefetch_size: int = 0, **kwargs: Any) -> None:
        self.check_open()
        self.qos = {"prefetch_count": prefetch_count, "prefetch_size": prefetch_size}

    async def declare_exchange(self, name: str, type: Any = "direct", **kwargs: Any) -> FakeExchange:
        self.check_open()
        if self.declare_error is not None:
            raise self.declare_error
        kind = getattr(type, "value", type)
        self.broker.declare_exchange(name, kind)
        return FakeExchange(self, name, kind)

    async def get_exchange(self, name: str, *, ensure: bool = True) -> FakeExchange:
        self.check_open()
        if ensure and name not in self.broker.exchanges:
            raise FakeChannelError(f"NOT_FOUND - no exchange {name!r}")
        return FakeExchange(self, name, self.broker.exchanges.get(name, "direct"))

    async def declare_queue(self, name: str, *, arguments: dict[str, Any] | None = None, **kwargs: Any) -> FakeQueue:
        self.check_open()
        if self.declare_error is not None:
            raise self.declare_error
        self.broker.declare_queue(name, dict(arguments or {}))
        return FakeQueue(self, name)

    async def close(self, exc: BaseException | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        self.close_count += 1
        self.broker.channel_closed(self)
        self.close_callbacks.fire(exc)

    def simulate_close(self, exc: BaseException | None = None) -> None:
        """Broker-initiated channel close."""
        self._closed = True
        self.broker.channel_closed(self)
        self.close_callbacks.fire(exc or FakeChannelError("channel closed by broker"))


class FakeConnection:
    def __init__(self, broker: FakeBroker, url: str, kwargs: dict[str, Any]) -> None:
        self.broker = broker
        self.url = url
        self.kwargs = kwargs
        self.close_callbacks = FakeCallbacks(self)
        self.reconnect_callbacks = FakeCallbacks(self)
        self.channels: list[FakeChannel] = []
        self.channel_error: BaseException | None = None
        self.close_count = 0
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def channel(self, publisher_confirms: bool = True, **kwargs: Any) -> FakeChannel:
        if self._closed:
            raise FakeChannelError("connection is closed")
        if self.channel_error is not None:
            raise self.channel_error
        channel = FakeChannel(self.broker, self, publisher_confirms)
        self.channels.append(channel)
        return channel

    async def close(self, exc: BaseException | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        self.close_count += 1
        for channel in self.channels:
            await channel.close()
        self.close_callbacks.fire(exc)

    def simulate_drop(self, exc: BaseException | None = None) -> None:
        """Transport lost. A robust connection stays open (`is_closed` is False) while it reconnects."""
        self.close_callbacks.fire(exc or ConnectionError("connection reset by peer"))

    def simulate_reconnect(self) -> None:
        self.reconnect_callbacks.fire()
