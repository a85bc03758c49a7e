"""
Cryo Cooler Controller

Closed-loop control of a thermoelectric (Peltier) module on a liquid CPU
cooler. The coolant is regulated to a configurable offset above the dew
point over the board's 8-byte serial protocol.
"""

__version__ = "0.3.0"

from .communication.protocol import CommandFrame, AckFrame, FrameCodec, Opcode
from .communication.telemetry import TelemetryFrame, DeviceInfo, TecStatus
from .communication.transport_base import OpenError, TransportError
from .controllers.control_loop import ControlTarget
from .controllers.device_session import DeviceSession, SessionError, ConnectError, EnableError
from .controllers.session_state import SessionState, FaultReason, FaultRecord
from .controllers.tec_controller import TecController, SessionHandle
from .models.session_config import SessionConfig, ConfigError

__all__ = [
    "__version__",
    "CommandFrame",
    "AckFrame",
    "FrameCodec",
    "Opcode",
    "TelemetryFrame",
    "DeviceInfo",
    "TecStatus",
    "OpenError",
    "TransportError",
    "ControlTarget",
    "DeviceSession",
    "SessionError",
    "ConnectError",
    "EnableError",
    "SessionState",
    "FaultReason",
    "FaultRecord",
    "TecController",
    "SessionHandle",
    "SessionConfig",
    "ConfigError",
]
