"""RabbitMQ lifecycle states and event types."""
from enum import Enum


class ConsumerState(str, Enum):
    UNBOUND = "UNBOUND"
    SUBSCRIBED = "SUBSCRIBED"
    CANCELLED = "CANCELLED"
    CLOSED = "CLOSED"


class ConsumerEventType(str, Enum):
    REGISTERED = "REGISTERED"
    CANCELLED = "CANCELLED"
    SHUTDOWN = "SHUTDOWN"


class ConnectionEventType(str, Enum):
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECOVERING = "RECOVERING"
    RECOVERED = "RECOVERED"
    SHUTDOWN = "SHUTDOWN"
    BLOCKED = "BLOCKED"
    UNBLOCKED = "UNBLOCKED"
    ERROR = "ERROR"
    CALLBACK_EXCEPTION = "CALLBACK_EXCEPTION"
    DISPOSING = "DISPOSING"
    DISPOSED = "DISPOSED"


class ConnectionHealthStatus(str, Enum):
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    UNHEALTHY = "UNHEALTHY"
    DISCONNECTED = "DISCONNECTED"
