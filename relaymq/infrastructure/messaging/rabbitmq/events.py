"""Connection lifecycle events and health snapshots."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from relaymq.infrastructure.messaging.rabbitmq.constants import (
    ConnectionEventType,
    ConnectionHealthStatus,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ConnectionEvent:
    event_type: ConnectionEventType
    message: str
    exception: BaseException | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    def __str__(self) -> str:
        suffix = f" - Exception: {self.exception}" if self.exception is not None else ""
        return f"[{self.timestamp:%Y-%m-%d %H:%M:%S}] {self.event_type.value}: {self.message}{suffix}"


@dataclass(frozen=True)
class ConnectionHealth:
    status: ConnectionHealthStatus
    is_connected: bool
    uptime: timedelta | None = None
    details: str = ""
    last_check_time: datetime = field(default_factory=_utcnow)

    @classmethod
    def healthy(cls, uptime: timedelta) -> "ConnectionHealth":
        return cls(ConnectionHealthStatus.HEALTHY, True, uptime, "Connection is healthy")

    @classmethod
    def degraded(cls, details: str) -> "ConnectionHealth":
        return cls(ConnectionHealthStatus.DEGRADED, True, None, details)

    @classmethod
    def unhealthy(cls, details: str) -> "ConnectionHealth":
        return cls(ConnectionHealthStatus.UNHEALTHY, False, None, details)

    @classmethod
    def disconnected(cls, details: str = "Connection is not established") -> "ConnectionHealth":
        return cls(ConnectionHealthStatus.DISCONNECTED, False, None, details)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status.value,
            "is_connected": self.is_connected,
            "details": self.details,
            "last_check_time": self.last_check_time.isoformat(),
        }
        if self.uptime is not None:
            payload["uptime_seconds"] = round(self.uptime.total_seconds(), 3)
        return payload
