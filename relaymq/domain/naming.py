"""Broker object naming conventions.

These names are shared with already-deployed consumers and producers, so they
must stay byte-for-byte stable.
"""
from __future__ import annotations

_TTL_UNITS: tuple[tuple[str, int], ...] = (
    ("d", 86_400_000),
    ("h", 3_600_000),
    ("m", 60_000),
    ("s", 1_000),
    ("ms", 1),
)


def humanize_ttl(ttl_ms: int) -> str:
    """Render a TTL as its non-zero day/hour/minute/second/millisecond parts: 65000 -> "1m5s"."""
    if ttl_ms < 0:
        raise ValueError("ttl_ms must be >= 0")
    parts: list[str] = []
    remaining = int(ttl_ms)
    for suffix, unit in _TTL_UNITS:
        value, remaining = divmod(remaining, unit)
        if value:
            parts.append(f"{value}{suffix}")
    return "".join(parts) or "0ms"


def type_queue_name(message_type: type) -> str:
    return f"{message_type.__module__}.{message_type.__qualname__}"


def direct_exchange_name(queue_name: str) -> str:
    return f"{queue_name}.direct"


def dead_letter_exchange_name(queue_name: str) -> str:
    return f"{queue_name}.direct.DL"


def dead_letter_queue_name(queue_name: str) -> str:
    return f"{queue_name}.DLQ"


def retry_exchange_name(queue_name: str) -> str:
    return f"{queue_name}.topic.Retry"


def retry_queue_name(queue_name: str, tier_label: str) -> str:
    return f"{queue_name}.RetryQ.{tier_label}"
