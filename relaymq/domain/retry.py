"""Retry policy value objects."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from relaymq.constants import MIN_RETRY_TTL_MS
from relaymq.domain.naming import humanize_ttl
from relaymq.exceptions import ConfigError


@dataclass(frozen=True)
class RetryTier:
    """One retry step: a queue whose native TTL is `ttl_ms`, addressed by `label`."""

    ttl_ms: int

    @property
    def label(self) -> str:
        return humanize_ttl(self.ttl_ms)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Ordered per-attempt TTL tiers.

    The retry count carried in the `x-retries` header indexes into `tiers`:
    a message with retry count n is republished to tiers[n]. Once the count
    reaches len(tiers) the message is dead-lettered (or dropped).
    """

    tiers: tuple[RetryTier, ...]

    def __post_init__(self) -> None:
        if not self.tiers:
            raise ConfigError("retry policy needs at least one tier")
        for tier in self.tiers:
            if tier.ttl_ms < MIN_RETRY_TTL_MS:
                raise ConfigError(f"retry tier ttl must be >= {MIN_RETRY_TTL_MS}ms, got {tier.ttl_ms}")

    @classmethod
    def from_ttls(cls, ttls_ms: Iterable[int]) -> "RetryPolicy":
        return cls(tiers=tuple(RetryTier(int(ttl)) for ttl in ttls_ms))

    @property
    def max_attempts(self) -> int:
        return len(self.tiers)

    def is_exhausted(self, retry_count: int) -> bool:
        return retry_count >= self.max_attempts

    def tier_for(self, retry_count: int) -> RetryTier:
        return self.tiers[retry_count]

    def distinct_tiers(self) -> tuple[RetryTier, ...]:
        """Tiers in first-seen order with duplicate TTLs collapsed (they share one queue)."""
        return tuple(dict.fromkeys(self.tiers))


def is_last_try(policy: RetryPolicy | None, retry_count: int) -> bool:
    return policy is None or policy.is_exhausted(retry_count)
