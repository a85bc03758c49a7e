"""
Session State Types

Shared by the device session, the safety monitor and the public API.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto


class SessionState(Enum):
    """Device session state."""
    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    ENABLING = auto()
    ACTIVE = auto()
    FAULT = auto()


# States in which command frames may be sent (CONNECTING for the handshake only)
TRANSMIT_STATES = frozenset({
    SessionState.CONNECTING,
    SessionState.CONNECTED,
    SessionState.ENABLING,
    SessionState.ACTIVE,
})

# States in which the TEC may be powered
POWERED_STATES = frozenset({SessionState.ENABLING, SessionState.ACTIVE})


class FaultReason(Enum):
    """Why a session entered FAULT."""
    TIMEOUT = auto()
    CHECKSUM_ERROR = auto()
    OVER_CURRENT = auto()
    DEVICE_REPORTED_FAULT = auto()
    TRANSPORT_CLOSED = auto()


@dataclass(frozen=True)
class FaultRecord:
    """Fault details, kept until disconnect or reconnect."""
    reason: FaultReason
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    detail: str = ""

    def __str__(self) -> str:
        text = self.reason.name
        if self.detail:
            text += f": {self.detail}"
        return text
