"""
Controllers Package

Contains the device session state machine, the control loop and the
public controller API.
"""

from .session_state import SessionState, FaultReason, FaultRecord
from .control_loop import ControlLoop, ControlTarget, PidState
from .safety_monitor import SafetyMonitor
from .telemetry_bus import TelemetryBus, Subscription
from .device_session import DeviceSession, SessionError, ConnectError, EnableError
from .session_worker import SessionWorker
from .tec_controller import TecController, SessionHandle

__all__ = [
    'SessionState',
    'FaultReason',
    'FaultRecord',
    'ControlLoop',
    'ControlTarget',
    'PidState',
    'SafetyMonitor',
    'TelemetryBus',
    'Subscription',
    'DeviceSession',
    'SessionError',
    'ConnectError',
    'EnableError',
    'SessionWorker',
    'TecController',
    'SessionHandle',
]
