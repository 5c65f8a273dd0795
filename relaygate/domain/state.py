from __future__ import annotations

from enum import Enum


class InstanceStatus(str, Enum):
    UNINITIALIZED = "UNINITIALIZED"
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    QR_REQUIRED = "QR_REQUIRED"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    ERROR = "ERROR"
    FORCE_DISCONNECTED = "FORCE_DISCONNECTED"


# States holding a live protocol handle that reject a second connect as a no-op.
LIVE_STATES = frozenset(
    {InstanceStatus.CONNECTING, InstanceStatus.QR_REQUIRED, InstanceStatus.CONNECTED}
)

# States that never re-arm automatic reconnects until an explicit connect/restart.
TERMINAL_STATES = frozenset({InstanceStatus.ERROR, InstanceStatus.FORCE_DISCONNECTED})


class CloseReason(str, Enum):
    # Normalized close causes reported by protocol clients.
    LOGGED_OUT = "logged_out"
    TIMED_OUT = "timed_out"
    CONNECTION_LOST = "connection_lost"
    CONNECTION_REPLACED = "connection_replaced"
    RESTART_REQUIRED = "restart_required"
    UNKNOWN = "unknown"


class PlanTier(str, Enum):
    BASIC = "BASIC"
    PRO = "PRO"
    MAX = "MAX"
