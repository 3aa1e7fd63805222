"""
RabbitMQ connection provider: one lazily created robust connection per provider.

Lifecycle:
  ABSENT -> CONNECTING (fixed backoff across every host) -> OPEN.
  OPEN -> BLOCKED -> OPEN while the broker applies flow control.
  On transport loss: SHUTDOWN (+ RECOVERING when the close carried an error);
  aio-pika's robust connection reconnects and we emit RECOVERED.
  On close(): DISPOSING -> connection closed -> DISPOSED; the provider is not reusable.

Concurrency:
  - get_or_create() returns the cached open connection without locking; otherwise it
    takes _lock and re-checks before dialing, so concurrent callers share one connect.
  - Listeners run synchronously inside _emit(); each call is isolated so a failing
    listener never breaks the notification chain or the connection.
"""
from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from typing import Any, Callable
from urllib.parse import quote, urlencode

import aio_pika
from aio_pika.abc import AbstractRobustConnection
from aio_pika.exceptions import AMQPConnectionError
from loguru import logger

from relaymq.config.settings import ServerEndpoint
from relaymq.constants import Defaults
from relaymq.core import SERVICE_NAME
from relaymq.core.backoff import fixed_backoff
from relaymq.exceptions import BrokerUnreachableError
from relaymq.infrastructure.messaging.rabbitmq.constants import ConnectionEventType
from relaymq.infrastructure.messaging.rabbitmq.events import ConnectionEvent, ConnectionHealth

ConnectionListener = Callable[[ConnectionEvent], None]

UNREACHABLE_ERRORS: tuple[type[BaseException], ...] = (
    AMQPConnectionError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def split_host(host: str) -> tuple[str, int]:
    """`host` or `host:port` -> (host, port); port defaults to 5672."""
    host = host.strip()
    name, sep, port = host.rpartition(":")
    if sep and port.isdigit() and name and not name.endswith(":"):
        return name.strip("[]"), int(port)
    return host.strip("[]"), Defaults.AMQP_PORT


class ConnectionProvider:
    """Owns the single live connection for an endpoint and reports its lifecycle."""

    def __init__(self, endpoint: ServerEndpoint, *, client_name_suffix: str | None = None) -> None:
        self._endpoint = endpoint
        self._connection_name = (
            f"{endpoint.client_id}:{client_name_suffix}" if client_name_suffix else endpoint.client_id
        )
        self._connection: AbstractRobustConnection | None = None
        self._lock = asyncio.Lock()
        self._listeners: list[ConnectionListener] = []
        self._connected_at: float | None = None
        self._ever_connected = False
        self._blocked_reason: str | None = None
        self._disposed = False

    @property
    def endpoint(self) -> ServerEndpoint:
        return self._endpoint

    @property
    def connection_name(self) -> str:
        return self._connection_name

    @property
    def is_connected(self) -> bool:
        return self._is_open(self._connection) and self._connected_at is not None

    @staticmethod
    def _is_open(connection: AbstractRobustConnection | None) -> bool:
        return connection is not None and not connection.is_closed

    def add_listener(self, listener: ConnectionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ConnectionListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _emit(self, event_type: ConnectionEventType, message: str, exception: BaseException | None = None) -> None:
        event = ConnectionEvent(event_type, message, exception)
        _log("rmq_connection_event", connection=self._connection_name, type=event_type.value, detail=message)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("connection listener failed for {}", event_type.value)

    def build_url(self, host: str) -> str:
        name, port = split_host(host)
        endpoint = self._endpoint
        query = urlencode({"reconnect_interval": endpoint.effective_network_recovery_interval_seconds})
        return (
            f"amqp://{quote(endpoint.user_name, safe='')}:{quote(endpoint.password, safe='')}"
            f"@{name}:{port}/{quote(endpoint.virtual_host, safe='')}?{query}"
        )

    async def get_or_create(self) -> AbstractRobustConnection:
        connection = self._connection
        if self._is_open(connection):
            return connection  # type: ignore[return-value]
        async with self._lock:
            if self._disposed:
                raise BrokerUnreachableError("connection provider is closed")
            if self._is_open(self._connection):
                return self._connection  # type: ignore[return-value]
            if self._connection is not None:
                await self._discard_connection(self._connection)
            self._connection = await self._connect()
            return self._connection

    async def _connect(self) -> AbstractRobustConnection:
        endpoint = self._endpoint
        attempts = endpoint.effective_reconnect_count + 1
        self._emit(ConnectionEventType.CONNECTING, f"Connecting to {', '.join(endpoint.hosts)}")
        last_error: BaseException | None = None
        async for attempt in fixed_backoff(endpoint.effective_reconnect_interval_seconds, attempts):
            _log("rmq_connect_attempt", connection=self._connection_name, attempt=attempt, max_attempts=attempts)
            try:
                connection = await self._connect_any_host()
            except UNREACHABLE_ERRORS as e:
                last_error = e
                logger.warning("rmq connect attempt {} of {} failed: {}", attempt, attempts, e)
                continue
            self._attach(connection)
            self._connected_at = time.monotonic()
            self._ever_connected = True
            self._blocked_reason = None
            self._emit(ConnectionEventType.CONNECTED, f"Connected as {self._connection_name}")
            return connection
        _log("rmq_connect_failed", connection=self._connection_name, attempts=attempts)
        error = BrokerUnreachableError(f"broker unreachable after {attempts} attempts: {last_error}")
        self._emit(ConnectionEventType.ERROR, str(error), last_error)
        raise error from last_error

    async def _connect_any_host(self) -> AbstractRobustConnection:
        last_error: BaseException | None = None
        for host in self._endpoint.hosts:
            try:
                return await aio_pika.connect_robust(
                    self.build_url(host),
                    client_properties={"connection_name": self._connection_name},
                )
            except UNREACHABLE_ERRORS as e:
                last_error = e
                logger.warning("rmq host {} unreachable: {}", host, e)
        raise last_error or ConnectionError("no hosts configured")

    def _attach(self, connection: AbstractRobustConnection) -> None:
        connection.close_callbacks.add(self._on_connection_closed)
        connection.reconnect_callbacks.add(self._on_reconnected)

    def _detach(self, connection: AbstractRobustConnection) -> None:
        connection.close_callbacks.discard(self._on_connection_closed)
        connection.reconnect_callbacks.discard(self._on_reconnected)

    async def _discard_connection(self, connection: AbstractRobustConnection) -> None:
        self._detach(connection)
        try:
            await connection.close()
        except Exception as e:
            logger.warning("stale connection close failed: {}", e)

    def _on_connection_closed(self, sender: Any, exc: BaseException | None = None) -> None:
        if self._disposed:
            return
        self._connected_at = None
        self._emit(ConnectionEventType.SHUTDOWN, f"Connection closed: {exc or 'no reason'}", exc)
        if exc is not None:
            self._emit(ConnectionEventType.RECOVERING, "Connection recovery scheduled", exc)

    def _on_reconnected(self, sender: Any) -> None:
        if self._disposed:
            return
        self._connected_at = time.monotonic()
        self._blocked_reason = None
        self._emit(ConnectionEventType.RECOVERED, "Connection recovered")

    def on_blocked(self, reason: str) -> None:
        """Broker applied flow control (connection.blocked)."""
        self._blocked_reason = reason or "blocked"
        self._emit(ConnectionEventType.BLOCKED, f"Connection blocked: {self._blocked_reason}")

    def on_unblocked(self) -> None:
        self._blocked_reason = None
        self._emit(ConnectionEventType.UNBLOCKED, "Connection unblocked")

    def report_callback_exception(self, exc: BaseException, detail: str = "") -> None:
        self._emit(ConnectionEventType.CALLBACK_EXCEPTION, detail or f"Callback exception: {exc}", exc)

    async def get_health(self) -> ConnectionHealth:
        if not self._ever_connected:
            return ConnectionHealth.disconnected()
        if not self._is_open(self._connection) or self._connected_at is None:
            return ConnectionHealth.unhealthy("Connection is closed")
        if self._blocked_reason is not None:
            return ConnectionHealth.degraded(f"Connection is blocked: {self._blocked_reason}")
        return ConnectionHealth.healthy(timedelta(seconds=time.monotonic() - self._connected_at))

    async def close(self) -> None:
        if self._disposed:
            return
        self._emit(ConnectionEventType.DISPOSING, "Closing connection provider")
        async with self._lock:
            self._disposed = True
            connection, self._connection = self._connection, None
            if connection is not None:
                self._detach(connection)
                try:
                    await connection.close()
                except Exception as e:
                    logger.warning("connection close failed: {}", e)
            self._connected_at = None
        self._emit(ConnectionEventType.DISPOSED, "Connection provider closed")
        _log("rmq_connection_disposed", connection=self._connection_name)
