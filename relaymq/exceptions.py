"""Error taxonomy for relaymq."""
from __future__ import annotations


class RelayMQError(Exception):
    """Base for every error raised by the library."""


class ConfigError(RelayMQError):
    """Invalid configuration. Raised before any broker I/O and never retried."""


class BrokerUnreachableError(RelayMQError):
    """Every connect attempt against every configured host failed."""


class PoolExhaustedError(RelayMQError):
    """Channel pool is at capacity and no channel was released within the wait timeout."""


class CodecError(RelayMQError):
    """Message body could not be encoded or decoded."""


class HandlerError(RelayMQError):
    """User on-dequeue handler raised. The original exception is kept on `original`."""

    def __init__(self, message: str, original: BaseException) -> None:
        super().__init__(message)
        self.original = original


class ConsumerStateError(RelayMQError):
    """Operation attempted on a consumer in an incompatible state (e.g. double subscribe)."""


class ProducerNotFoundError(RelayMQError):
    """No producer registered under the requested key."""
