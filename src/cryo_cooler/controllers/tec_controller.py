"""
TEC Controller

Public API of the cooler core. Each connected port gets its own
DeviceSession, control thread and TelemetryBus, addressed by a
SessionHandle. Calls block until the control thread has run the command.

Example:
    with TecController() as controller:
        handle = controller.connect("/dev/ttyACM0")
        controller.enable(handle, ControlTarget(offset_from_dew_point_c=2.0))
        for frame in controller.subscribe_telemetry(handle):
            print(frame.coolant_temp_c, frame.tec_power_pct)
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from ..communication.serial_transport import SerialTransport, list_ports as list_serial_ports
from ..communication.telemetry import DeviceInfo
from ..communication.transport_base import TransportBase, TransportInfo
from ..models.session_config import SessionConfig
from .control_loop import ControlTarget
from .device_session import ConnectError, DeviceSession, EnableError, SessionError
from .session_state import FaultRecord, SessionState
from .session_worker import SessionWorker
from .telemetry_bus import Subscription, TelemetryBus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionHandle:
    """Opaque reference to a connected session."""
    session_id: int
    port_id: str


@dataclass
class _SessionEntry:
    handle: SessionHandle
    session: DeviceSession
    worker: SessionWorker
    bus: TelemetryBus


class TecController:
    """
    Entry point for UI and CLI layers.

    Args:
        config: Session configuration shared by all sessions
        transport_factory: Builds a fresh transport per connect; defaults to
            a SerialTransport at the configured baud rate
    """

    def __init__(self, config: Optional[SessionConfig] = None,
                 transport_factory: Optional[Callable[[], TransportBase]] = None):
        self.config = config or SessionConfig()
        self.config.validate()
        self._transport_factory = transport_factory or self._default_transport
        self._sessions: dict[int, _SessionEntry] = {}
        self._reserved_ports: set[str] = set()
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def _default_transport(self) -> TransportBase:
        return SerialTransport(baudrate=self.config.baudrate)

    @staticmethod
    def list_ports() -> list[TransportInfo]:
        """Serial ports available on this machine."""
        return list_serial_ports()

    def connect(self, port_id: str) -> SessionHandle:
        """
        Open a session on the given port.

        Raises:
            ConnectError: If the port is in use, cannot be opened or the board
                does not answer the handshake
        """
        # The port stays reserved while the handshake runs outside the lock
        with self._lock:
            if port_id in self._reserved_ports or \
                    any(e.handle.port_id == port_id for e in self._sessions.values()):
                raise ConnectError(f"Port {port_id} already has an open session")
            self._reserved_ports.add(port_id)
            session_id = next(self._ids)

        try:
            session = DeviceSession(self._transport_factory(), self.config)
            bus = TelemetryBus()
            worker = SessionWorker(session, bus, name=f"cryo-session-{session_id}")
            worker.start()

            try:
                worker.submit("connect", port_id).result()
            except Exception:
                worker.stop(self.config.shutdown_timeout)
                bus.close()
                raise

            handle = SessionHandle(session_id=session_id, port_id=port_id)
            with self._lock:
                self._sessions[session_id] = _SessionEntry(handle, session, worker, bus)
        finally:
            with self._lock:
                self._reserved_ports.discard(port_id)

        logger.info(f"Session {session_id} opened on {port_id}")
        return handle

    def enable(self, handle: SessionHandle, target: ControlTarget) -> None:
        """
        Start regulation.

        Raises:
            EnableError: If the session is faulted, disconnected or the board
                rejected the enable sequence
        """
        if not isinstance(target, ControlTarget):
            raise TypeError(f"Expected ControlTarget, got {type(target).__name__}")
        entry = self._sessions.get(handle.session_id)
        if entry is None:
            raise EnableError(f"Session {handle.session_id} is not connected")
        try:
            entry.worker.submit("enable", target).result()
        except EnableError:
            raise
        except SessionError as e:
            raise EnableError(str(e)) from e
        except Exception as e:
            logger.error(f"Enable on session {handle.session_id} failed unexpectedly: {e}")
            raise EnableError(f"Enable failed: {e}") from e

    def disable(self, handle: SessionHandle) -> bool:
        """
        Switch the TEC off. Never raises.

        Returns:
            True if the board acknowledged
        """
        entry = self._sessions.get(handle.session_id)
        if entry is None:
            return False
        try:
            return entry.worker.submit("disable").result()
        except Exception as e:
            logger.warning(f"Disable on session {handle.session_id} failed: {e}")
            return False

    def disconnect(self, handle: SessionHandle) -> None:
        """Disable, disconnect and release the port. Safe to call twice."""
        with self._lock:
            entry = self._sessions.pop(handle.session_id, None)
        if entry is None:
            return
        entry.worker.stop(self.config.shutdown_timeout)
        entry.bus.close()
        logger.info(f"Session {handle.session_id} closed")

    def subscribe_telemetry(self, handle: SessionHandle) -> Subscription:
        """
        Subscribe to a session's telemetry.

        Raises:
            SessionError: If the handle is not connected
        """
        entry = self._sessions.get(handle.session_id)
        if entry is None:
            raise SessionError(f"Session {handle.session_id} is not connected")
        return entry.bus.subscribe()

    def current_state(self, handle: SessionHandle) -> SessionState:
        entry = self._sessions.get(handle.session_id)
        if entry is None:
            return SessionState.DISCONNECTED
        return entry.session.state

    def fault_record(self, handle: SessionHandle) -> Optional[FaultRecord]:
        entry = self._sessions.get(handle.session_id)
        return entry.session.fault if entry else None

    def device_info(self, handle: SessionHandle) -> Optional[DeviceInfo]:
        entry = self._sessions.get(handle.session_id)
        return entry.session.device_info if entry else None

    @property
    def handles(self) -> list[SessionHandle]:
        with self._lock:
            return [entry.handle for entry in self._sessions.values()]

    def shutdown(self) -> None:
        """Disconnect every session."""
        for handle in self.handles:
            self.disconnect(handle)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
