"""
RabbitMQ consumer: topology provisioning, consume loop, and retry/dead-letter routing.

Lifecycle:
  UNBOUND -> subscribe() (open channel, declare topology, QoS, consume) -> SUBSCRIBED.
  SUBSCRIBED -> basic_cancel() -> CANCELLED -> start_consume() -> SUBSCRIBED.
  close_channel() drops the channel; create_new_channel_and_start_consume() rebuilds it.
  close() -> CLOSED (terminal).

Per delivery:
  decode -> on_dequeue -> ack.
  On decode or handler failure: on_error (best-effort), then RetryOrReject:
    last try + dead-lettering disabled -> ack (drop)
    last try                            -> nack(requeue=False) -> <q>.direct.DL -> <q>.DLQ
    otherwise                           -> republish to <q>.topic.Retry with key=tier label,
                                           x-retries+1, expiration=tier TTL; then ack.
  The retry queue has no consumer; when its TTL fires the broker dead-letters the
  message back to <q>.direct with routing key <q>.

Concurrency:
  - aio-pika runs each delivery in its own task, so up to prefetch_count handlers
    run at once. Every operation on the shared channel (declare, QoS, consume,
    publish, ack, nack, cancel, close) goes through _channel_lock.
  - A failure inside RetryOrReject never escapes into aio-pika: it is logged,
    reported to the connection provider, and the delivery is requeued.
"""
from __future__ import annotations

import asyncio
from typing import Any, AsyncContextManager, Callable, Generic, TypeVar

from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractIncomingMessage, AbstractQueue
from loguru import logger

from relaymq.config.settings import ConsumerConfig
from relaymq.core import SERVICE_NAME
from relaymq.domain.models import MessageContext
from relaymq.domain.retry import RetryPolicy, RetryTier, is_last_try
from relaymq.domain.topology import QueueTopology, build_queue_topology
from relaymq.exceptions import ConsumerStateError, HandlerError
from relaymq.infrastructure.messaging.rabbitmq.aio_pika_message_adapter import AioPikaMessageAdapter
from relaymq.infrastructure.messaging.rabbitmq.connection_provider import ConnectionProvider
from relaymq.infrastructure.messaging.rabbitmq.constants import ConsumerEventType, ConsumerState
from relaymq.infrastructure.messaging.rabbitmq.topology import declare_topology
from relaymq.infrastructure.serialization.json_codec import JsonCodec
from relaymq.ports.codec import Codec
from relaymq.ports.message_consumer import OnDequeue, OnError

T = TypeVar("T")

ScopeFactory = Callable[[], AsyncContextManager[Any]]
ConsumerListener = Callable[[ConsumerEventType, "RabbitMQConsumer[Any]"], None]


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class RabbitMQConsumer(Generic[T]):
    """MessageConsumer implementation"""

    def __init__(
        self,
        provider: ConnectionProvider,
        config: ConsumerConfig,
        message_type: type[T] | None = None,
        codec: Codec | None = None,
        *,
        scope_factory: ScopeFactory | None = None,
        owns_provider: bool = False,
    ) -> None:
        self._provider = provider
        self._config = config
        self._message_type = message_type
        self._codec: Codec = codec if codec is not None else JsonCodec(message_type)
        self._scope_factory = scope_factory
        self._owns_provider = owns_provider
        self._topology: QueueTopology = build_queue_topology(config, message_type)
        self._policy: RetryPolicy | None = self._topology.retry_policy

        self._state = ConsumerState.UNBOUND
        self._channel_lock = asyncio.Lock()
        self._channel: AbstractChannel | None = None
        self._queue: AbstractQueue | None = None
        self._retry_exchange: AbstractExchange | None = None
        self._consumer_tags: list[str] = []
        self._on_dequeue: OnDequeue | None = None
        self._on_error: OnError | None = None
        self._listeners: list[ConsumerListener] = []
        self._closing_channel = False
        self._closed = False

    @property
    def state(self) -> ConsumerState:
        return self._state

    @property
    def queue_name(self) -> str:
        return self._topology.queue_name

    @property
    def topology(self) -> QueueTopology:
        return self._topology

    @property
    def provider(self) -> ConnectionProvider:
        return self._provider

    @property
    def consumer_tags(self) -> tuple[str, ...]:
        return tuple(self._consumer_tags)

    @property
    def is_channel_open(self) -> bool:
        return self._channel is not None and not self._channel.is_closed

    def add_listener(self, listener: ConsumerListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ConsumerListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _notify(self, event_type: ConsumerEventType) -> None:
        _log("consumer_event", queue=self.queue_name, type=event_type.value, tags=list(self._consumer_tags))
        for listener in list(self._listeners):
            try:
                listener(event_type, self)
            except Exception:
                logger.exception("consumer listener failed for {}", event_type.value)

    def _set_state(self, state: ConsumerState) -> None:
        self._state = state

    def _mark_cancelled(self) -> None:
        if self._state == ConsumerState.SUBSCRIBED:
            self._state = ConsumerState.CANCELLED

    # --- channel setup -------------------------------------------------

    async def _open_channel_and_declare(self) -> None:
        """Caller holds _channel_lock."""
        connection = await self._provider.get_or_create()
        channel = await connection.channel(publisher_confirms=self._config.is_publisher_confirms_enabled)
        channel.close_callbacks.add(self._on_channel_closed)
        try:
            declared = await declare_topology(channel, self._topology)
            await channel.set_qos(
                prefetch_count=self._config.effective_prefetch_count,
                prefetch_size=self._config.effective_prefetch_size,
            )
        except Exception:
            channel.close_callbacks.discard(self._on_channel_closed)
            await self._safe_close(channel)
            raise
        self._channel = channel
        self._queue = declared.queue
        self._retry_exchange = declared.retry_exchange

    async def _consume(self) -> str:
        """Caller holds _channel_lock."""
        assert self._queue is not None
        tag = await self._queue.consume(self._on_message, no_ack=False)
        self._consumer_tags.append(tag)
        self._set_state(ConsumerState.SUBSCRIBED)
        return tag

    def _on_channel_closed(self, sender: Any, exc: BaseException | None = None) -> None:
        self._consumer_tags.clear()
        self._mark_cancelled()
        if self._closing_channel:
            return
        logger.warning("consumer channel for {} closed: {}", self.queue_name, exc)
        self._notify(ConsumerEventType.SHUTDOWN)

    @staticmethod
    async def _safe_close(channel: AbstractChannel) -> None:
        if channel.is_closed:
            return
        try:
            await channel.close()
        except Exception as e:
            logger.warning("channel close failed: {}", e)

    # --- public lifecycle ----------------------------------------------

    async def subscribe(self, on_dequeue: OnDequeue, on_error: OnError | None = None) -> None:
        if self._state != ConsumerState.UNBOUND or self._on_dequeue is not None:
            raise ConsumerStateError(f"consumer for {self.queue_name} is already {self._state.value}")
        self._on_dequeue = on_dequeue
        self._on_error = on_error
        async with self._channel_lock:
            try:
                await self._open_channel_and_declare()
                tag = await self._consume()
            except Exception:
                await self._close_channel_locked()
                self._on_dequeue = None
                self._on_error = None
                raise
        _log("consumer_subscribed", queue=self.queue_name, consumer_tag=tag)
        self._notify(ConsumerEventType.REGISTERED)

    async def start_consume(self, rethrow: bool = False) -> bool:
        if self._closed or self._on_dequeue is None or self._consumer_tags or not self.is_channel_open:
            _log("consumer_start_refused", queue=self.queue_name, state=self._state.value)
            return False
        try:
            async with self._channel_lock:
                tag = await self._consume()
        except Exception as e:
            logger.exception("start consume failed for {}: {}", self.queue_name, e)
            if rethrow:
                raise
            return False
        _log("consumer_started", queue=self.queue_name, consumer_tag=tag)
        self._notify(ConsumerEventType.REGISTERED)
        return True

    async def create_new_channel_and_start_consume(self, rethrow: bool = False) -> bool:
        if self._closed or self._on_dequeue is None or self.is_channel_open or self._consumer_tags:
            _log("consumer_recreate_refused", queue=self.queue_name, state=self._state.value)
            return False
        try:
            async with self._channel_lock:
                if self.is_channel_open or self._consumer_tags:
                    return False
                if self._channel is not None:
                    self._channel.close_callbacks.discard(self._on_channel_closed)
                await self._open_channel_and_declare()
                tag = await self._consume()
        except Exception as e:
            logger.exception("channel recreate failed for {}: {}", self.queue_name, e)
            if rethrow:
                raise
            return False
        _log("consumer_channel_recreated", queue=self.queue_name, consumer_tag=tag)
        self._notify(ConsumerEventType.REGISTERED)
        return True

    async def basic_cancel(self) -> None:
        async with self._channel_lock:
            if self._queue is not None and self.is_channel_open:
                for tag in list(self._consumer_tags):
                    await self._queue.cancel(tag)
            self._consumer_tags.clear()
            if self._state == ConsumerState.SUBSCRIBED:
                self._set_state(ConsumerState.CANCELLED)
        _log("consumer_cancelled", queue=self.queue_name)
        self._notify(ConsumerEventType.CANCELLED)

    async def close_channel(self) -> None:
        async with self._channel_lock:
            await self._close_channel_locked()

    async def _close_channel_locked(self) -> None:
        channel = self._channel
        self._consumer_tags.clear()
        self._mark_cancelled()
        if channel is None:
            return
        self._closing_channel = True
        try:
            channel.close_callbacks.discard(self._on_channel_closed)
            await self._safe_close(channel)
        finally:
            self._closing_channel = False
        self._channel = None
        self._queue = None
        self._retry_exchange = None
        _log("consumer_channel_closed", queue=self.queue_name)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        async with self._channel_lock:
            await self._close_channel_locked()
        self._set_state(ConsumerState.CLOSED)
        self._notify(ConsumerEventType.SHUTDOWN)
        _log("consumer_shutdown", queue=self.queue_name)
        if self._owns_provider:
            await self._provider.close()

    # --- delivery pipeline ---------------------------------------------

    async def _on_message(self, raw_message: AbstractIncomingMessage) -> None:
        message = AioPikaMessageAdapter(raw_message)
        retry_count = message.retry_count
        last_try = is_last_try(self._policy, retry_count)
        payload: Any = None
        try:
            payload = self._codec.decode(message.body)
            context = MessageContext(self, last_try, message.to_envelope(payload))
            await self._dispatch(payload, context)
        except Exception as e:
            context = MessageContext(self, last_try, message.to_envelope(payload))
            await self._handle_failure(message, payload, context, e)
            return
        try:
            await self._ack(message)
        except Exception as e:
            logger.warning("ack failed on {} (broker will redeliver): {}", self.queue_name, e)
            self._provider.report_callback_exception(e, f"ack failed on {self.queue_name}")

    async def _dispatch(self, payload: Any, context: MessageContext) -> None:
        assert self._on_dequeue is not None
        try:
            if self._scope_factory is None:
                await self._on_dequeue(payload, None, context)
                return
            async with self._scope_factory() as scope:
                await self._on_dequeue(payload, scope, context)
        except Exception as e:
            raise HandlerError(f"on_dequeue failed for {self.queue_name}: {e}", e) from e

    async def _handle_failure(
        self,
        message: AioPikaMessageAdapter,
        payload: Any,
        context: MessageContext,
        error: Exception,
    ) -> None:
        original = error.original if isinstance(error, HandlerError) else error
        logger.warning(
            "message handling failed on {} (retry_count={}, last_try={}): {}",
            self.queue_name,
            context.envelope.retry_count,
            context.is_last_try,
            error,
        )
        await self._notify_error(payload, context, original)
        await self._retry_or_reject(message, context)

    async def _notify_error(self, payload: Any, context: MessageContext, error: BaseException) -> None:
        if self._on_error is None:
            return
        try:
            if self._scope_factory is None:
                await self._on_error(payload, None, context, error)
                return
            async with self._scope_factory() as scope:
                await self._on_error(payload, scope, context, error)
        except Exception:
            logger.exception("on_error handler failed for {}", self.queue_name)

    async def _retry_or_reject(self, message: AioPikaMessageAdapter, context: MessageContext) -> None:
        retry_count = context.envelope.retry_count
        try:
            if context.is_last_try:
                if self._config.disable_dead_lettering:
                    await self._ack(message)
                    _log("message_dropped", queue=self.queue_name, retry_count=retry_count)
                else:
                    await self._nack(message, requeue=False)
                    _log("message_dead_lettered", queue=self.queue_name, retry_count=retry_count)
                return
            assert self._policy is not None
            tier = self._policy.tier_for(retry_count)
            await self._republish_for_retry(message, retry_count + 1, tier)
            await self._ack(message)
            _log("message_retry_scheduled", queue=self.queue_name, retry_count=retry_count + 1, tier=tier.label)
        except Exception as e:
            logger.exception("retry/reject failed on {}: {}", self.queue_name, e)
            self._provider.report_callback_exception(e, f"retry/reject failed on {self.queue_name}")
            try:
                await self._nack(message, requeue=True)
            except Exception as nack_error:
                logger.warning("fallback requeue failed on {}: {}", self.queue_name, nack_error)

    async def _republish_for_retry(self, message: AioPikaMessageAdapter, retry_count: int, tier: RetryTier) -> None:
        outgoing = message.build_retry_message(retry_count, tier.ttl_ms)
        confirms = self._config.publisher_confirms
        async with self._channel_lock:
            if self._retry_exchange is None:
                raise ConsumerStateError(f"retry exchange for {self.queue_name} is not declared")
            await self._retry_exchange.publish(
                outgoing,
                routing_key=tier.label,
                mandatory=True,
                timeout=confirms.timeout_seconds if confirms is not None else None,
            )

    async def _ack(self, message: AioPikaMessageAdapter) -> None:
        async with self._channel_lock:
            await message.ack()

    async def _nack(self, message: AioPikaMessageAdapter, *, requeue: bool) -> None:
        async with self._channel_lock:
            await message.nack(requeue=requeue)
