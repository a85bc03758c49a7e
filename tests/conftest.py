"""
Shared fixtures for the cryo cooler tests.

Sessions run against the in-process board simulator, so no hardware is needed.
"""

import logging

import pytest

from cryo_cooler.communication.device_simulator import (
    DeviceSimulator, SimulatedTransport, SimulatorState,
)
from cryo_cooler.communication.telemetry import TecStatus, TelemetryFrame
from cryo_cooler.controllers.device_session import DeviceSession
from cryo_cooler.models.session_config import SessionConfig


class FrozenClock:
    """Manually advanced clock for the simulator's thermal model."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fast_config():
    """Session config with short timeouts for tests."""
    return SessionConfig(
        tick_interval=0.05,
        response_timeout=0.05,
        handshake_timeout=0.1,
        enable_timeout=2.0,
        disable_timeout=0.05,
        shutdown_timeout=2.0,
    )


@pytest.fixture
def sim_clock():
    return FrozenClock()


@pytest.fixture
def simulator(sim_clock):
    """Simulator with coolant at 10C and dew point near 5C, time frozen."""
    state = SimulatorState(ambient_temp_c=20.0, relative_humidity_pct=37.37, coolant_temp_c=10.0)
    return DeviceSimulator(state, clock=sim_clock)


@pytest.fixture
def transport(simulator):
    return SimulatedTransport(simulator)


@pytest.fixture
def session(transport, fast_config):
    session = DeviceSession(transport, fast_config)
    yield session
    transport.close()


@pytest.fixture
def connected_session(session):
    session.connect("SIM0")
    return session


@pytest.fixture
def make_frame():
    """Factory for TelemetryFrame values."""
    def _make(coolant=10.0, dew=5.0, ocp=False, status=None, power=0, active=True):
        if status is None:
            status = int(TecStatus.BOARD_INIT | TecStatus.POWER_OK | TecStatus.TEMP_SENSE_OK
                         | TecStatus.HUM_SENSE_OK)
            if not active:
                status |= int(TecStatus.LOW_POWER_MODE_ACTIVE)
        if ocp:
            status |= int(TecStatus.OCP_ACTIVE)
        return TelemetryFrame(
            coolant_temp_c=coolant,
            ambient_temp_c=22.0,
            relative_humidity_pct=40.0,
            dew_point_c=dew,
            tec_power_pct=power,
            ocp_flag=ocp,
            raw_status_bits=status,
        )
    return _make


@pytest.fixture
def restore_logging():
    """Undo root logger changes made by setup_logger()."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
