"""
Cryo Cooler Transport Base Interface

Every link to the board (USB serial, the in-process simulator) implements
TransportBase. Transports own the raw byte stream and never retry on
their own; recovery decisions belong to the device session.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional, Callable


class TransportError(Exception):
    """Base exception for transport errors."""
    pass


class OpenError(TransportError):
    """Port unavailable or already in use."""
    pass


class TransportTimeoutError(TransportError):
    """No data within the requested timeout."""
    pass


class TransportClosedError(TransportError):
    """Transport is closed (cable pulled, device powered off, or never opened)."""
    pass


class TransportState(Enum):
    """Transport connection state."""
    CLOSED = auto()
    OPEN = auto()
    ERROR = auto()


@dataclass
class TransportInfo:
    """Information about a transport endpoint."""
    port: str
    description: str
    hardware_id: str = ""
    manufacturer: str = ""


class TransportBase(ABC):
    """
    Byte stream to one board.

    All calls are blocking with a bounded timeout.
    """

    def __init__(self):
        self._state = TransportState.CLOSED
        self._state_callback: Optional[Callable[[TransportState], None]] = None

    @property
    def state(self) -> TransportState:
        """Get current transport state."""
        return self._state

    @property
    def is_open(self) -> bool:
        """Check if transport is open."""
        return self._state == TransportState.OPEN

    def set_state_callback(self, callback: Optional[Callable[[TransportState], None]]) -> None:
        """
        Set callback for state changes.

        Args:
            callback: Function to call when state changes, or None to clear
        """
        self._state_callback = callback

    def _set_state(self, new_state: TransportState) -> None:
        if self._state != new_state:
            self._state = new_state
            if self._state_callback:
                self._state_callback(new_state)

    @abstractmethod
    def open(self, port: str) -> None:
        """
        Open the specified port.

        Args:
            port: Opaque port identifier (e.g., "COM3" or "/dev/ttyACM0")

        Raises:
            OpenError: If the port cannot be opened
        """
        pass

    @abstractmethod
    def read(self, timeout: float) -> bytes:
        """
        Read whatever bytes arrive within the timeout.

        Args:
            timeout: Maximum time to block, in seconds

        Returns:
            At least one received byte

        Raises:
            TransportTimeoutError: If nothing arrives in time
            TransportClosedError: If the transport is closed
        """
        pass

    @abstractmethod
    def write(self, data: bytes) -> None:
        """
        Write data to the device.

        Raises:
            TransportClosedError: If the transport is closed
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """
        Close the transport.

        Safe to call when already closed.
        """
        pass

    def discard_input(self) -> None:
        """Drop any bytes already received but not yet read."""
        pass

    def get_port_info(self) -> Optional[TransportInfo]:
        """Get information about the currently open port."""
        return None
