"""Library-level constants shared across modules."""
from __future__ import annotations


class Defaults:
    RECONNECT_COUNT = 3
    RECONNECT_INTERVAL_SECONDS = 10
    NETWORK_RECOVERY_INTERVAL_SECONDS = 5
    AMQP_PORT = 5672

    PREFETCH_SIZE = 0
    PREFETCH_COUNT = 1

    BATCH_SIZE = 20
    # Producers only attach a per-message expiration above this threshold.
    MIN_EXPIRATION_MS = 100


class QueueArgKeys:
    AUTO_EXPIRE = "x-expires"
    MAX_PRIORITY = "x-max-priority"
    MESSAGE_TTL = "x-message-ttl"
    DEAD_LETTER_EXCHANGE = "x-dead-letter-exchange"
    DEAD_LETTER_ROUTING_KEY = "x-dead-letter-routing-key"
    SINGLE_ACTIVE_CONSUMER = "x-single-active-consumer"

    ALL = frozenset(
        {
            AUTO_EXPIRE,
            MAX_PRIORITY,
            MESSAGE_TTL,
            DEAD_LETTER_EXCHANGE,
            DEAD_LETTER_ROUTING_KEY,
            SINGLE_ACTIVE_CONSUMER,
        }
    )
    DEAD_LETTER = frozenset({DEAD_LETTER_EXCHANGE, DEAD_LETTER_ROUTING_KEY})


class ExchangeTypes:
    DIRECT = "direct"
    FANOUT = "fanout"
    TOPIC = "topic"
    HEADERS = "headers"

    ALL = frozenset({DIRECT, FANOUT, TOPIC, HEADERS})


class Headers:
    RETRIES = "x-retries"


MIN_RETRY_TTL_MS = 500
MIN_WAIT_CONFIRMS_MS = 10
