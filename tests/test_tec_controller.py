"""
TEC Controller Tests
End-to-end tests of the public API with the control thread running
against the simulated board
"""

import threading
import time
from unittest.mock import Mock, patch

import pytest

from cryo_cooler.communication.device_simulator import SimulatedTransport
from cryo_cooler.communication.protocol import FrameBuilder, Opcode
from cryo_cooler.communication.telemetry import TelemetryFrame
from cryo_cooler.communication.transport_base import TransportInfo
from cryo_cooler.controllers.control_loop import ControlTarget
from cryo_cooler.controllers.device_session import ConnectError, DeviceSession, EnableError, SessionError
from cryo_cooler.controllers.session_state import FaultReason, SessionState
from cryo_cooler.controllers.session_worker import SessionWorker
from cryo_cooler.controllers.tec_controller import SessionHandle, TecController
from cryo_cooler.controllers.telemetry_bus import TelemetryBus


def wait_for(predicate, timeout=3.0):
    """Poll a condition until it holds or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TransportFactory:
    """Builds SimulatedTransports and keeps them for inspection."""

    def __init__(self):
        self.created = []
        self.fail_open = False

    def __call__(self):
        transport = SimulatedTransport()
        transport.fail_open = self.fail_open
        self.created.append(transport)
        return transport


@pytest.fixture
def factory():
    return TransportFactory()


@pytest.fixture
def controller(fast_config, factory):
    controller = TecController(fast_config, transport_factory=factory)
    yield controller
    controller.shutdown()


@pytest.fixture
def handle(controller):
    return controller.connect("SIM0")


class TestConnect:
    """Test opening sessions."""

    def test_connect(self, controller, handle):
        assert isinstance(handle, SessionHandle)
        assert handle.port_id == "SIM0"
        assert controller.current_state(handle) == SessionState.CONNECTED
        assert controller.device_info(handle).firmware_version == (1, 4, 0, 0)
        assert controller.fault_record(handle) is None
        assert controller.handles == [handle]

    def test_connect_failure(self, controller, factory):
        """A port that cannot be opened leaves no session behind."""
        factory.fail_open = True
        with pytest.raises(ConnectError) as exc_info:
            controller.connect("SIM0")
        assert exc_info.value.record.reason == FaultReason.TRANSPORT_CLOSED
        assert controller.handles == []

    def test_duplicate_port(self, controller, handle):
        with pytest.raises(ConnectError):
            controller.connect("SIM0")

    def test_duplicate_port_during_handshake(self, fast_config):
        """A second connect on a port that is still opening is refused."""
        entered = threading.Event()
        release = threading.Event()

        class SlowFactory(TransportFactory):
            def __call__(self):
                entered.set()
                release.wait(2.0)
                return super().__call__()

        slow = SlowFactory()
        controller = TecController(fast_config, transport_factory=slow)
        handles = []
        first = threading.Thread(target=lambda: handles.append(controller.connect("SIM0")))
        first.start()
        try:
            assert entered.wait(2.0)
            with pytest.raises(ConnectError):
                controller.connect("SIM0")
        finally:
            release.set()
            first.join(3.0)
        try:
            assert len(handles) == 1
            assert controller.handles == handles
            assert len(slow.created) == 1
        finally:
            controller.shutdown()

    def test_two_ports(self, controller, handle):
        """Sessions on different ports are independent."""
        other = controller.connect("SIM1")
        assert other.session_id != handle.session_id
        controller.enable(handle, ControlTarget())
        assert controller.current_state(other) == SessionState.CONNECTED

    def test_list_ports(self):
        ports = [TransportInfo(port="/dev/ttyACM0", description="TEC controller")]
        with patch("cryo_cooler.controllers.tec_controller.list_serial_ports", return_value=ports):
            assert TecController.list_ports() == ports


class TestRegulation:
    """Test enable, telemetry and disable through the API."""

    def test_enable_reaches_active(self, controller, handle, factory):
        controller.enable(handle, ControlTarget(offset_from_dew_point_c=2.0))
        assert wait_for(lambda: controller.current_state(handle) == SessionState.ACTIVE)
        assert factory.created[0].simulator.state.tec_enabled

    def test_power_is_commanded(self, controller, handle, factory):
        """The simulated coolant sits far above the dew point, so power ramps up."""
        controller.enable(handle, ControlTarget(max_power_pct=30.0))
        simulator = factory.created[0].simulator
        assert wait_for(lambda: simulator.state.power_level > 0)
        assert simulator.state.power_level <= 30

    def test_subscribe_receives_frames(self, controller, handle):
        subscription = controller.subscribe_telemetry(handle)
        frame = subscription.wait(timeout=2.0)
        assert isinstance(frame, TelemetryFrame)
        assert frame.ambient_temp_c == pytest.approx(25.0)

    def test_disable(self, controller, handle, factory):
        controller.enable(handle, ControlTarget())
        assert controller.disable(handle) is True
        assert controller.current_state(handle) == SessionState.CONNECTED
        assert not factory.created[0].simulator.state.tec_enabled

    def test_enable_rejects_non_target(self, controller, handle):
        with pytest.raises(TypeError):
            controller.enable(handle, 2.0)

    def test_unencodable_target(self, controller, handle, factory):
        """A target that does not fit the wire format fails enable and keeps the thread alive."""
        target = ControlTarget()
        object.__setattr__(target, "offset_from_dew_point_c", -1e39)
        with pytest.raises(EnableError):
            controller.enable(handle, target)
        assert controller.current_state(handle) == SessionState.CONNECTED

        controller.enable(handle, ControlTarget())
        assert wait_for(lambda: controller.current_state(handle) == SessionState.ACTIVE)

    def test_unexpected_enable_error_is_wrapped(self, controller, handle):
        with patch.object(FrameBuilder, "set_setpoint_offset", side_effect=RuntimeError("boom")):
            with pytest.raises(EnableError):
                controller.enable(handle, ControlTarget())

    def test_no_setpoint_after_disable(self, controller, handle, factory):
        """Once disable is acknowledged no further power level is commanded."""
        transport = factory.created[0]
        controller.enable(handle, ControlTarget())
        assert wait_for(lambda: controller.current_state(handle) == SessionState.ACTIVE)
        assert wait_for(lambda: transport.simulator.state.power_level > 0)

        transport.clear_tx_log()
        assert controller.disable(handle) is True
        time.sleep(0.3)

        opcodes = [(int(f.opcode), f.payload[0]) for f in transport.sent_frames()]
        disable_at = opcodes.index((Opcode.SET_DISABLE_NOT_ENABLE, 1))
        assert all(op != Opcode.SET_TEC_POWER_LEVEL for op, _ in opcodes[disable_at + 1:])


class TestUnknownHandle:
    """Test calls on handles that are not connected."""

    @pytest.fixture
    def stale(self):
        return SessionHandle(session_id=99, port_id="SIM9")

    def test_enable(self, controller, stale):
        with pytest.raises(EnableError):
            controller.enable(stale, ControlTarget())

    def test_disable(self, controller, stale):
        assert controller.disable(stale) is False

    def test_state(self, controller, stale):
        assert controller.current_state(stale) == SessionState.DISCONNECTED
        assert controller.fault_record(stale) is None
        assert controller.device_info(stale) is None

    def test_subscribe(self, controller, stale):
        with pytest.raises(SessionError):
            controller.subscribe_telemetry(stale)

    def test_disconnect_is_noop(self, controller, stale):
        controller.disconnect(stale)


class TestFaultAndShutdown:
    """Test fault reporting and releasing resources."""

    def test_link_loss_faults(self, controller, handle, factory):
        controller.enable(handle, ControlTarget())
        factory.created[0].sever_link()

        assert wait_for(lambda: controller.current_state(handle) == SessionState.FAULT)
        assert controller.fault_record(handle).reason == FaultReason.TRANSPORT_CLOSED
        with pytest.raises(EnableError):
            controller.enable(handle, ControlTarget())
        assert controller.disable(handle) is False

    def test_disconnect_releases_port(self, controller, handle, factory):
        subscription = controller.subscribe_telemetry(handle)
        controller.disconnect(handle)

        assert not factory.created[0].is_open
        assert subscription.closed
        assert subscription.wait(timeout=0.1) is None
        assert controller.current_state(handle) == SessionState.DISCONNECTED
        assert controller.handles == []

    def test_disconnect_disables_tec(self, controller, handle, factory):
        controller.enable(handle, ControlTarget())
        controller.disconnect(handle)
        assert not factory.created[0].simulator.state.tec_enabled

    def test_reconnect_after_disconnect(self, controller, handle):
        controller.disconnect(handle)
        again = controller.connect("SIM0")
        assert again.session_id != handle.session_id
        assert controller.current_state(again) == SessionState.CONNECTED

    def test_context_manager(self, fast_config, factory):
        with TecController(fast_config, transport_factory=factory) as controller:
            controller.connect("SIM0")
        assert controller.handles == []
        assert not factory.created[0].is_open


class TestSessionWorker:
    """Test the control thread directly."""

    @pytest.fixture
    def worker(self, fast_config):
        worker = SessionWorker(DeviceSession(SimulatedTransport(), fast_config), TelemetryBus())
        yield worker
        worker.stop()

    def test_unknown_command(self, worker):
        worker.start()
        with pytest.raises(ValueError):
            worker.submit("reset_board")

    def test_submit_before_start(self, worker):
        with pytest.raises(SessionError):
            worker.submit("disable").result(timeout=1.0)

    def test_submit_after_stop(self, worker):
        worker.start()
        worker.stop()
        assert not worker.is_running
        with pytest.raises(SessionError):
            worker.submit("connect", "SIM0").result(timeout=1.0)

    def test_commands_run_on_control_thread(self, worker):
        worker.start()
        assert worker.submit("connect", "SIM0").result(timeout=2.0).hardware_version == 2
        assert worker.session.state == SessionState.CONNECTED
        assert wait_for(lambda: worker.bus.latest() is not None)

    def test_stop_disconnects(self, worker):
        worker.start()
        worker.submit("connect", "SIM0").result(timeout=2.0)
        worker.stop()
        assert worker.session.state == SessionState.DISCONNECTED

    def test_start_twice(self, worker):
        worker.start()
        with pytest.raises(RuntimeError):
            worker.start()

    def test_commands_run_between_poll_and_regulate(self):
        """Every command lands after a poll and before the setpoint of the same tick."""
        session = Mock()
        session.poll.return_value = None
        session.regulate.return_value = None
        session.disable.return_value = True
        worker = SessionWorker(session, TelemetryBus(), tick_interval=0.02)
        worker.start()
        try:
            for _ in range(3):
                assert worker.submit("disable").result(timeout=1.0) is True
        finally:
            worker.stop(timeout=1.0)

        names = [call[0] for call in session.method_calls]
        positions = [i for i, name in enumerate(names) if name == "disable"]
        assert len(positions) == 3
        for i in positions:
            assert names[i - 1] == "poll"
            assert names[i + 1] == "regulate"
