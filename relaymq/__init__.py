"""relaymq: resilient asyncio RabbitMQ consumers and producers on top of aio-pika."""
from relaymq.config.settings import (
    ChannelPoolConfig,
    ConsumerConfig,
    ExchangeBindingConfig,
    ProducerConfig,
    PublisherConfirmsConfig,
    QueueArgConfig,
    QueueConfig,
    RetryConfig,
    ServerEndpoint,
    parse_config,
)
from relaymq.domain.models import MessageContext, MessageEnvelope
from relaymq.exceptions import (
    BrokerUnreachableError,
    CodecError,
    ConfigError,
    ConsumerStateError,
    HandlerError,
    PoolExhaustedError,
    ProducerNotFoundError,
    RelayMQError,
)
from relaymq.infrastructure.messaging.factory import (
    ConsumerGroup,
    ProducerRegistry,
    create_consumers,
    create_producer,
)
from relaymq.infrastructure.messaging.rabbitmq.channel_pool import ChannelPool
from relaymq.infrastructure.messaging.rabbitmq.connection_provider import ConnectionProvider
from relaymq.infrastructure.messaging.rabbitmq.rabbitmq_consumer import RabbitMQConsumer
from relaymq.infrastructure.messaging.rabbitmq.rabbitmq_producer import RabbitMQProducer
from relaymq.infrastructure.serialization.json_codec import JsonCodec

__all__ = [
    "BrokerUnreachableError",
    "ChannelPool",
    "ChannelPoolConfig",
    "CodecError",
    "ConfigError",
    "ConnectionProvider",
    "ConsumerConfig",
    "ConsumerGroup",
    "ConsumerStateError",
    "ExchangeBindingConfig",
    "HandlerError",
    "JsonCodec",
    "MessageContext",
    "MessageEnvelope",
    "PoolExhaustedError",
    "ProducerConfig",
    "ProducerNotFoundError",
    "ProducerRegistry",
    "PublisherConfirmsConfig",
    "QueueArgConfig",
    "QueueConfig",
    "RabbitMQConsumer",
    "RabbitMQProducer",
    "RelayMQError",
    "RetryConfig",
    "ServerEndpoint",
    "create_consumers",
    "create_producer",
    "parse_config",
]
