"""
Topology Builder: compute the exchanges, queues and bindings a consumer needs.

Pure functions only; declaring the result on a broker channel lives in
infrastructure (relaymq.infrastructure.messaging.rabbitmq.topology).

For queue `q` with dead-lettering and retry tiers [5000, 60000] the result is:

  exchanges: q.direct (direct), q.direct.DL (direct), q.topic.Retry (topic)
  queues:    q (DLX -> q.direct.DL / q), q.DLQ,
             q.RetryQ.5s  (ttl 5000,  DLX -> q.direct / q),
             q.RetryQ.1m  (ttl 60000, DLX -> q.direct / q)
  bindings:  q <- q.direct [q], q.DLQ <- q.direct.DL [q],
             q.RetryQ.5s <- q.topic.Retry [5s], q.RetryQ.1m <- q.topic.Retry [1m]

plus any extra exchanges/bindings from configuration.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from relaymq.config.settings import ConsumerConfig, QueueArgConfig
from relaymq.constants import ExchangeTypes, QueueArgKeys
from relaymq.domain import naming
from relaymq.domain.retry import RetryPolicy, RetryTier
from relaymq.exceptions import ConfigError


@dataclass(frozen=True)
class ExchangeDeclaration:
    name: str
    type: str


@dataclass(frozen=True)
class QueueDeclaration:
    name: str
    arguments: dict[str, Any]


@dataclass(frozen=True)
class BindingDeclaration:
    queue: str
    exchange: str
    routing_key: str


@dataclass(frozen=True)
class QueueTopology:
    queue_name: str
    exchanges: tuple[ExchangeDeclaration, ...]
    queues: tuple[QueueDeclaration, ...]
    bindings: tuple[BindingDeclaration, ...]
    dead_letter_queue: str | None = None
    retry_exchange: str | None = None
    retry_policy: RetryPolicy | None = None


def resolve_queue_name(config: ConsumerConfig, message_type: type | None) -> str:
    if config.queue.use_type_name_as_queue_name:
        if message_type is None:
            raise ConfigError("use_type_name_as_queue_name needs a message type")
        return naming.type_queue_name(message_type)
    return str(config.queue.name).strip()


def normalize_queue_args(args: list[QueueArgConfig]) -> dict[str, Any]:
    """Lower-case keys; coerce x-max-priority to int and x-single-active-consumer to bool."""
    result: dict[str, Any] = {}
    for arg in args:
        key = arg.key.lower()
        value = arg.value
        if key == QueueArgKeys.MAX_PRIORITY:
            value = int(value)
        elif key == QueueArgKeys.SINGLE_ACTIVE_CONSUMER:
            value = _as_bool(value)
        result[key] = value
    return result


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def build_retry_policy(config: ConsumerConfig) -> RetryPolicy | None:
    if config.retry is None:
        return None
    return RetryPolicy.from_ttls(config.retry.per_message_ttl_ms)


def build_queue_topology(config: ConsumerConfig, message_type: type | None = None) -> QueueTopology:
    queue = resolve_queue_name(config, message_type)
    direct_exchange = naming.direct_exchange_name(queue)

    exchanges: list[ExchangeDeclaration] = [ExchangeDeclaration(direct_exchange, ExchangeTypes.DIRECT)]
    bindings: list[BindingDeclaration] = [BindingDeclaration(queue, direct_exchange, queue)]

    queue_args = normalize_queue_args(config.queue.queue_args)
    dead_letter_queue: str | None = None
    if not config.disable_dead_lettering:
        dl_exchange = naming.dead_letter_exchange_name(queue)
        dead_letter_queue = naming.dead_letter_queue_name(queue)
        queue_args[QueueArgKeys.DEAD_LETTER_EXCHANGE] = dl_exchange
        queue_args[QueueArgKeys.DEAD_LETTER_ROUTING_KEY] = queue
        exchanges.append(ExchangeDeclaration(dl_exchange, ExchangeTypes.DIRECT))
        bindings.append(BindingDeclaration(dead_letter_queue, dl_exchange, queue))

    queues: list[QueueDeclaration] = [QueueDeclaration(queue, queue_args)]
    if dead_letter_queue is not None:
        queues.append(QueueDeclaration(dead_letter_queue, {}))

    policy = build_retry_policy(config)
    retry_exchange: str | None = None
    if policy is not None:
        retry_exchange = naming.retry_exchange_name(queue)
        exchanges.append(ExchangeDeclaration(retry_exchange, ExchangeTypes.TOPIC))
        for tier in policy.distinct_tiers():
            queues.append(_retry_queue(queue, direct_exchange, tier))
            bindings.append(
                BindingDeclaration(naming.retry_queue_name(queue, tier.label), retry_exchange, tier.label)
            )

    for item in config.exchanges:
        if item.declare:
            exchanges.append(ExchangeDeclaration(item.name, item.exchange_type))
        if item.exchange_type == ExchangeTypes.FANOUT:
            # fanout ignores the key; an empty key falls back to the queue name
            bindings.append(BindingDeclaration(queue, item.name, queue))
        else:
            for routing_key in item.routing_keys:
                bindings.append(BindingDeclaration(queue, item.name, routing_key))

    return QueueTopology(
        queue_name=queue,
        exchanges=tuple(exchanges),
        queues=tuple(queues),
        bindings=tuple(bindings),
        dead_letter_queue=dead_letter_queue,
        retry_exchange=retry_exchange,
        retry_policy=policy,
    )


def _retry_queue(queue: str, direct_exchange: str, tier: RetryTier) -> QueueDeclaration:
    return QueueDeclaration(
        naming.retry_queue_name(queue, tier.label),
        {
            QueueArgKeys.MESSAGE_TTL: tier.ttl_ms,
            QueueArgKeys.DEAD_LETTER_EXCHANGE: direct_exchange,
            QueueArgKeys.DEAD_LETTER_ROUTING_KEY: queue,
        },
    )
