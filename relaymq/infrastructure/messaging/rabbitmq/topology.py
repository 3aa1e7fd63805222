"""Declare a computed QueueTopology on an aio-pika channel."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from aio_pika import ExchangeType
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue
from loguru import logger

from relaymq.core import SERVICE_NAME
from relaymq.domain.topology import QueueTopology


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


@dataclass(frozen=True)
class DeclaredTopology:
    queue: AbstractQueue
    retry_exchange: AbstractExchange | None


async def declare_topology(channel: AbstractChannel, topology: QueueTopology) -> DeclaredTopology:
    """
    Declare exchanges, then queues, then bindings. Everything is durable and
    non-exclusive; declaring is idempotent on the broker as long as arguments match.
    Bindings may reference exchanges we did not declare (declare=False); those are
    bound by name and must already exist.
    """
    exchanges: dict[str, AbstractExchange] = {}
    for exchange in topology.exchanges:
        exchanges[exchange.name] = await channel.declare_exchange(
            exchange.name,
            ExchangeType(exchange.type),
            durable=True,
        )

    queues: dict[str, AbstractQueue] = {}
    for queue in topology.queues:
        queues[queue.name] = await channel.declare_queue(
            queue.name,
            durable=True,
            exclusive=False,
            auto_delete=False,
            arguments=dict(queue.arguments),
        )

    for binding in topology.bindings:
        target: AbstractExchange | str = exchanges.get(binding.exchange, binding.exchange)
        await queues[binding.queue].bind(target, routing_key=binding.routing_key)

    _log(
        "rmq_topology_declared",
        queue=topology.queue_name,
        exchanges=len(topology.exchanges),
        queues=len(topology.queues),
        bindings=len(topology.bindings),
    )
    retry_exchange = exchanges.get(topology.retry_exchange) if topology.retry_exchange else None
    return DeclaredTopology(queue=queues[topology.queue_name], retry_exchange=retry_exchange)
