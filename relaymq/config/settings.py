"""Settings and declarative consumer/producer configuration.

Every model is frozen and validated on construction. Rule violations raise
ConfigError straight out of the validators; `parse_config` additionally turns
pydantic type errors into ConfigError for callers loading raw mappings.
"""
from __future__ import annotations

from typing import Any, Mapping, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from relaymq.constants import (
    MIN_RETRY_TTL_MS,
    MIN_WAIT_CONFIRMS_MS,
    Defaults,
    ExchangeTypes,
    QueueArgKeys,
)
from relaymq.exceptions import ConfigError

ModelT = TypeVar("ModelT", bound=BaseModel)


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


def _whole_number(value: Any, label: str) -> int:
    """Accept ints, integral floats and their string forms; bools are not numbers here."""
    if isinstance(value, bool):
        raise ConfigError(f"{label} {value!r} is not numeric")
    if isinstance(value, int):
        return value
    number = value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            try:
                number = float(text)
            except ValueError:
                raise ConfigError(f"{label} {value!r} is not numeric") from None
    if isinstance(number, float) and number.is_integer():
        return int(number)
    raise ConfigError(f"{label} {value!r} is not a whole number")


_INTEGER_QUEUE_ARGS = frozenset({QueueArgKeys.MAX_PRIORITY, QueueArgKeys.MESSAGE_TTL, QueueArgKeys.AUTO_EXPIRE})


class ServerEndpoint(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    user_name: str = Field("", validation_alias="RABBITMQ_USER_NAME")
    password: str = Field("", validation_alias="RABBITMQ_PASSWORD")
    virtual_host: str = Field("/", validation_alias="RABBITMQ_VIRTUAL_HOST")
    hosts: list[str] = Field(default_factory=list, validation_alias="RABBITMQ_HOSTS")
    client_id: str = Field("", validation_alias="RABBITMQ_CLIENT_ID")

    reconnect_count: int | None = Field(None, validation_alias="RABBITMQ_RECONNECT_COUNT")
    reconnect_interval_seconds: float | None = Field(None, validation_alias="RABBITMQ_RECONNECT_INTERVAL_SECONDS")
    network_recovery_interval_seconds: float | None = Field(
        None,
        validation_alias="RABBITMQ_NETWORK_RECOVERY_INTERVAL_SECONDS",
    )

    @model_validator(mode="after")
    def _check(self) -> "ServerEndpoint":
        if _blank(self.user_name):
            raise ConfigError("server user_name is empty")
        if _blank(self.password):
            raise ConfigError("server password is empty")
        if _blank(self.virtual_host):
            raise ConfigError("server virtual_host is empty")
        if _blank(self.client_id):
            raise ConfigError("server client_id is empty")
        if not self.hosts or any(_blank(host) for host in self.hosts):
            raise ConfigError("server hosts is empty or has a blank entry")
        for name in ("reconnect_count", "reconnect_interval_seconds", "network_recovery_interval_seconds"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigError(f"server {name} must be > 0")
        return self

    @property
    def effective_reconnect_count(self) -> int:
        return self.reconnect_count if self.reconnect_count is not None else Defaults.RECONNECT_COUNT

    @property
    def effective_reconnect_interval_seconds(self) -> float:
        if self.reconnect_interval_seconds is not None:
            return self.reconnect_interval_seconds
        return Defaults.RECONNECT_INTERVAL_SECONDS

    @property
    def effective_network_recovery_interval_seconds(self) -> float:
        if self.network_recovery_interval_seconds is not None:
            return self.network_recovery_interval_seconds
        return Defaults.NETWORK_RECOVERY_INTERVAL_SECONDS


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class PublisherConfirmsConfig(_Frozen):
    wait_confirms_ms: int

    @model_validator(mode="after")
    def _check(self) -> "PublisherConfirmsConfig":
        if self.wait_confirms_ms < MIN_WAIT_CONFIRMS_MS:
            raise ConfigError(f"publisher_confirms.wait_confirms_ms must be >= {MIN_WAIT_CONFIRMS_MS}")
        return self

    @property
    def timeout_seconds(self) -> float:
        return self.wait_confirms_ms / 1000


class ExchangeBindingConfig(_Frozen):
    name: str
    type: str = ExchangeTypes.DIRECT
    declare: bool = False
    routing_keys: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check(self) -> "ExchangeBindingConfig":
        if _blank(self.name):
            raise ConfigError("exchange name is empty")
        if self.type.lower() not in ExchangeTypes.ALL:
            raise ConfigError(f"exchange {self.name!r} has invalid type {self.type!r}")
        if self.exchange_type != ExchangeTypes.FANOUT and (
            not self.routing_keys or any(_blank(key) for key in self.routing_keys)
        ):
            raise ConfigError(f"exchange {self.name!r} needs non-blank routing keys")
        return self

    @property
    def exchange_type(self) -> str:
        return self.type.lower()


class QueueArgConfig(_Frozen):
    key: str
    value: Any = None

    @model_validator(mode="after")
    def _check(self) -> "QueueArgConfig":
        if self.key.lower() not in QueueArgKeys.ALL:
            raise ConfigError(f"queue arg key {self.key!r} is not allowed")
        if self.value is None:
            raise ConfigError(f"queue arg {self.key!r} has no value")
        return self

    @field_validator("value")
    @classmethod
    def _integer_args(cls, value: Any, info: ValidationInfo) -> Any:
        key = str(info.data.get("key", "")).lower()
        if value is None or key not in _INTEGER_QUEUE_ARGS:
            return value
        number = _whole_number(value, f"queue arg {key!r}")
        if number < 0:
            raise ConfigError(f"queue arg {key!r} must be >= 0, got {number}")
        return number


class QueueConfig(_Frozen):
    name: str | None = None
    use_type_name_as_queue_name: bool = False
    queue_args: list[QueueArgConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check(self) -> "QueueConfig":
        if self.use_type_name_as_queue_name and not _blank(self.name):
            raise ConfigError("queue name must not be set when use_type_name_as_queue_name is true")
        if not self.use_type_name_as_queue_name and _blank(self.name):
            raise ConfigError("queue name is required when use_type_name_as_queue_name is false")
        return self

    def has_dead_letter_args(self) -> bool:
        return any(arg.key.lower() in QueueArgKeys.DEAD_LETTER for arg in self.queue_args)


class RetryConfig(_Frozen):
    per_message_ttl_ms: list[int]

    @field_validator("per_message_ttl_ms", mode="before")
    @classmethod
    def _numeric(cls, value: Any) -> Any:
        if value is None:
            raise ConfigError("retry.per_message_ttl_ms is required")
        if not isinstance(value, (list, tuple)):
            raise ConfigError(f"retry.per_message_ttl_ms must be a list, got {value!r}")
        return [_whole_number(item, "retry ttl") for item in value]

    @model_validator(mode="after")
    def _check(self) -> "RetryConfig":
        if not self.per_message_ttl_ms:
            raise ConfigError("retry.per_message_ttl_ms cannot be empty")
        for ttl in self.per_message_ttl_ms:
            if ttl < MIN_RETRY_TTL_MS:
                raise ConfigError(f"retry ttl must be >= {MIN_RETRY_TTL_MS}ms, got {ttl}")
        return self


class ConsumerConfig(_Frozen):
    consumers_count: int = 1
    prefetch_size: int | None = None
    prefetch_count: int | None = None
    disable_dead_lettering: bool = False
    exchanges: list[ExchangeBindingConfig] = Field(default_factory=list)
    queue: QueueConfig
    retry: RetryConfig | None = None
    publisher_confirms: PublisherConfirmsConfig | None = None

    @model_validator(mode="after")
    def _check(self) -> "ConsumerConfig":
        if self.consumers_count <= 0:
            raise ConfigError("consumers_count must be > 0")
        if self.prefetch_size is not None and self.prefetch_size < 0:
            raise ConfigError("prefetch_size must be >= 0")
        if self.prefetch_count is not None and self.prefetch_count < 0:
            raise ConfigError("prefetch_count must be >= 0")
        if self.retry is not None and self.queue.has_dead_letter_args():
            raise ConfigError(
                "dead-letter queue args must not be provided when retry is enabled; retry sets them"
            )
        if not self.disable_dead_lettering and self.queue.has_dead_letter_args():
            raise ConfigError(
                "dead-letter queue args must not be provided when dead-lettering is enabled; they are set by default"
            )
        return self

    @property
    def is_retry_enabled(self) -> bool:
        return self.retry is not None

    @property
    def is_publisher_confirms_enabled(self) -> bool:
        return self.publisher_confirms is not None

    @property
    def effective_prefetch_size(self) -> int:
        return self.prefetch_size if self.prefetch_size is not None else Defaults.PREFETCH_SIZE

    @property
    def effective_prefetch_count(self) -> int:
        return self.prefetch_count if self.prefetch_count is not None else Defaults.PREFETCH_COUNT


class ChannelPoolConfig(_Frozen):
    min_pool_size: int
    max_pool_size: int
    wait_timeout_ms: int


class ProducerConfig(_Frozen):
    channel_pool: ChannelPoolConfig
    publisher_confirms: PublisherConfirmsConfig | None = None

    @model_validator(mode="after")
    def _check(self) -> "ProducerConfig":
        pool = self.channel_pool
        if (
            pool.min_pool_size <= 0
            or pool.max_pool_size <= 0
            or pool.min_pool_size >= pool.max_pool_size
            or pool.wait_timeout_ms <= 0
        ):
            raise ConfigError("producer channel_pool config is invalid")
        return self

    @property
    def is_publisher_confirms_enabled(self) -> bool:
        return self.publisher_confirms is not None


def parse_config(model: type[ModelT], data: Mapping[str, Any]) -> ModelT:
    """Validate a raw mapping into `model`, reporting every failure as ConfigError."""
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
