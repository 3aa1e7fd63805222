"""Consumer/producer factory. Only place that wires concrete providers, pools, consumers and producers."""
from __future__ import annotations

from typing import Any, Generic, Iterator, TypeVar

from loguru import logger

from relaymq.config.settings import ConsumerConfig, ProducerConfig, ServerEndpoint
from relaymq.core import SERVICE_NAME
from relaymq.exceptions import ProducerNotFoundError
from relaymq.infrastructure.messaging.rabbitmq.channel_pool import ChannelPool
from relaymq.infrastructure.messaging.rabbitmq.connection_provider import ConnectionProvider
from relaymq.infrastructure.messaging.rabbitmq.rabbitmq_consumer import RabbitMQConsumer, ScopeFactory
from relaymq.infrastructure.messaging.rabbitmq.rabbitmq_producer import RabbitMQProducer
from relaymq.ports.codec import Codec
from relaymq.ports.message_consumer import OnDequeue, OnError

T = TypeVar("T")


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class ConsumerGroup(Generic[T]):
    """The `consumers_count` consumers built from one ConsumerConfig."""

    def __init__(self, consumers: list[RabbitMQConsumer[T]], shared_provider: ConnectionProvider | None = None) -> None:
        self._consumers = consumers
        self._shared_provider = shared_provider
        self._closed = False

    def __iter__(self) -> Iterator[RabbitMQConsumer[T]]:
        return iter(self._consumers)

    def __len__(self) -> int:
        return len(self._consumers)

    def __getitem__(self, index: int) -> RabbitMQConsumer[T]:
        return self._consumers[index]

    @property
    def providers(self) -> list[ConnectionProvider]:
        if self._shared_provider is not None:
            return [self._shared_provider]
        return [consumer.provider for consumer in self._consumers]

    async def subscribe(self, on_dequeue: OnDequeue, on_error: OnError | None = None) -> None:
        for consumer in self._consumers:
            await consumer.subscribe(on_dequeue, on_error)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for consumer in self._consumers:
            try:
                await consumer.close()
            except Exception as e:
                logger.warning("consumer close failed for {}: {}", consumer.queue_name, e)
        if self._shared_provider is not None:
            await self._shared_provider.close()


def create_consumers(
    endpoint: ServerEndpoint,
    config: ConsumerConfig,
    message_type: type[T] | None,
    codec: Codec | None = None,
    *,
    scope_factory: ScopeFactory | None = None,
    single_connection_per_group: bool = True,
    client_name: str | None = None,
) -> ConsumerGroup[T]:
    consumers: list[RabbitMQConsumer[T]] = []
    if single_connection_per_group:
        provider = ConnectionProvider(endpoint, client_name_suffix=client_name)
        for _ in range(config.consumers_count):
            consumers.append(
                RabbitMQConsumer(provider, config, message_type, codec, scope_factory=scope_factory)
            )
        group = ConsumerGroup(consumers, shared_provider=provider)
    else:
        for index in range(config.consumers_count):
            suffix = f"{client_name}:{index}" if client_name else str(index)
            consumers.append(
                RabbitMQConsumer(
                    ConnectionProvider(endpoint, client_name_suffix=suffix),
                    config,
                    message_type,
                    codec,
                    scope_factory=scope_factory,
                    owns_provider=True,
                )
            )
        group = ConsumerGroup(consumers)
    _log(
        "consumers_created",
        queue=consumers[0].queue_name,
        count=len(consumers),
        single_connection=single_connection_per_group,
    )
    return group


def create_producer(
    endpoint: ServerEndpoint,
    config: ProducerConfig,
    codec: Codec | None = None,
    *,
    client_name: str | None = None,
) -> RabbitMQProducer:
    provider = ConnectionProvider(endpoint, client_name_suffix=client_name)
    pool = ChannelPool(
        provider,
        min_size=config.channel_pool.min_pool_size,
        max_size=config.channel_pool.max_pool_size,
        wait_timeout_ms=config.channel_pool.wait_timeout_ms,
        publisher_confirms=config.is_publisher_confirms_enabled,
        owns_provider=True,
    )
    return RabbitMQProducer(pool, codec, publisher_confirms=config.publisher_confirms, owns_pool=True)


class ProducerRegistry:
    """Keyed producers for applications publishing to several brokers or with several configs."""

    def __init__(self) -> None:
        self._producers: dict[str, RabbitMQProducer] = {}

    def add(self, key: str, producer: RabbitMQProducer) -> None:
        if key in self._producers:
            raise ValueError(f"producer {key!r} is already registered")
        self._producers[key] = producer

    def get(self, key: str) -> RabbitMQProducer:
        try:
            return self._producers[key]
        except KeyError:
            raise ProducerNotFoundError(f"no producer registered under {key!r}") from None

    def __contains__(self, key: object) -> bool:
        return key in self._producers

    def __len__(self) -> int:
        return len(self._producers)

    async def close(self) -> None:
        for key, producer in list(self._producers.items()):
            try:
                await producer.close()
            except Exception as e:
                logger.warning("producer close failed for {}: {}", key, e)
        self._producers.clear()
