"""
Device Simulator Tests
Tests for the simulated board and the simulated transport
"""

import struct

import pytest

from cryo_cooler.communication.device_simulator import (
    DeviceSimulator,
    SimulatedTransport,
    SimulatorState,
    dew_point,
)
from cryo_cooler.communication.protocol import (
    FrameBuilder,
    FrameCodec,
    FrameParser,
    Opcode,
    DecodeStatus,
    encode_frame,
    response_opcode,
)
from cryo_cooler.communication.telemetry import TecStatus, parse_status
from cryo_cooler.communication.transport_base import (
    OpenError,
    TransportClosedError,
    TransportTimeoutError,
)


class TestDewPoint:
    """Test the Magnus dew point approximation."""

    def test_typical_room(self):
        assert dew_point(25.0, 50.0) == pytest.approx(13.85, abs=0.05)

    def test_saturated_air(self):
        """At 100% humidity the dew point equals the air temperature."""
        assert dew_point(18.0, 100.0) == pytest.approx(18.0, abs=1e-6)


class TestDeviceSimulator:
    """Test simulated board responses."""

    @pytest.fixture
    def device(self, sim_clock):
        return DeviceSimulator(clock=sim_clock)

    def status(self, device):
        return parse_status(FrameParser.parse_status(device.handle_command(FrameBuilder.heart_beat())))

    def test_response_opcode(self, device):
        """Responses echo opcode + 0x7F."""
        ack = device.handle_command(FrameBuilder.read(Opcode.GET_HUMIDITY))
        assert ack.opcode == response_opcode(Opcode.GET_HUMIDITY)
        assert FrameParser.parse_float(ack) == pytest.approx(50.0)

    def test_fresh_board_needs_reset(self, device):
        """A board that was never reset does not report BOARD_INIT."""
        status = self.status(device)
        assert not status & TecStatus.BOARD_INIT
        assert status & TecStatus.LOW_POWER_MODE_ACTIVE

        device.handle_command(FrameBuilder.reset_board())
        assert self.status(device) & TecStatus.BOARD_INIT

    def test_enable_disable(self, device):
        device.handle_command(FrameBuilder.enable())
        assert device.state.tec_enabled
        assert not self.status(device) & TecStatus.LOW_POWER_MODE_ACTIVE

        device.handle_command(FrameBuilder.disable())
        assert not device.state.tec_enabled

    def test_settings_are_stored(self, device):
        device.handle_command(FrameBuilder.set_setpoint_offset(3.5))
        for frame in FrameBuilder.set_pid(50.0, 2.0, 0.25):
            device.handle_command(frame)
        assert device.state.setpoint_offset_c == 3.5
        assert (device.state.kp, device.state.ki, device.state.kd) == (50.0, 2.0, 0.25)

    def test_power_level(self, device):
        device.handle_command(FrameBuilder.enable())
        device.handle_command(FrameBuilder.set_power_level(40))
        ack = device.handle_command(FrameBuilder.read(Opcode.GET_TEC_POWER_LEVEL))
        assert FrameParser.parse_power_level(ack) == 40

    def test_ignored_power_ceiling(self, device):
        """The known firmware limitation: commanded level has no effect."""
        device.state.ignore_power_ceiling = True
        device.handle_command(FrameBuilder.enable())
        device.handle_command(FrameBuilder.set_power_level(20))
        ack = device.handle_command(FrameBuilder.read(Opcode.GET_TEC_POWER_LEVEL))
        assert FrameParser.parse_power_level(ack) == 100

    def test_voltage_and_current_scaling(self, device):
        device.handle_command(FrameBuilder.enable())
        device.handle_command(FrameBuilder.set_power_level(50))
        voltage = FrameParser.parse_tec_voltage(device.handle_command(FrameBuilder.read(Opcode.GET_TEC_VOLTAGE)))
        current = FrameParser.parse_tec_current(device.handle_command(FrameBuilder.read(Opcode.GET_TEC_CURRENT)))
        assert voltage == pytest.approx(6.0, abs=0.05)
        assert current == pytest.approx(3.0, abs=0.2)

    def test_thermal_model_cools(self, sim_clock):
        """Running the TEC pulls the coolant below its idle temperature."""
        device = DeviceSimulator(SimulatorState(coolant_temp_c=33.0), clock=sim_clock)
        device.handle_command(FrameBuilder.enable())
        device.handle_command(FrameBuilder.set_power_level(100))
        sim_clock.advance(600.0)
        ack = device.handle_command(FrameBuilder.read(Opcode.GET_TEC_TEMPERATURE))
        # 25 ambient + 8 load - 0.35 * 100
        assert FrameParser.parse_float(ack) == pytest.approx(-2.0, abs=0.1)

    def test_forced_ocp_and_fault_bits(self, device):
        device.state.force_ocp = True
        device.state.forced_status_bits = int(TecStatus.FAILSAFE_ACTIVE)
        status = self.status(device)
        assert status & TecStatus.OCP_ACTIVE
        assert status & TecStatus.FAILSAFE_ACTIVE

    def test_corrupt_command_ignored(self, device):
        """Commands failing CRC get no response."""
        data = bytearray(encode_frame(FrameBuilder.heart_beat()))
        data[2] ^= 0x01
        assert device.process(bytes(data)) == []
        assert device.process(encode_frame(FrameBuilder.heart_beat()))[0].opcode == 0x7F


class TestSimulatedTransport:
    """Test the in-process transport and its fault injection."""

    @pytest.fixture
    def link(self, transport):
        transport.open("SIM0")
        return transport

    def test_request_response(self, link):
        link.write(encode_frame(FrameBuilder.heart_beat()))
        result = FrameCodec().decode(link.read(0.1))
        assert result.is_frame
        assert result.frame.opcode == 0x7F

    def test_read_timeout(self, link):
        with pytest.raises(TransportTimeoutError):
            link.read(0.01)

    def test_corrupt_next(self, link):
        link.corrupt_next(1)
        link.write(encode_frame(FrameBuilder.heart_beat()))
        assert FrameCodec().decode(link.read(0.1)).status == DecodeStatus.CORRUPT_FRAME

    def test_drop_next(self, link):
        link.drop_next(1)
        link.write(encode_frame(FrameBuilder.heart_beat()))
        with pytest.raises(TransportTimeoutError):
            link.read(0.01)
        link.write(encode_frame(FrameBuilder.heart_beat()))
        assert len(link.read(0.1)) == 8

    def test_inject(self, link):
        link.inject(b"\x01\x02")
        assert link.read(0.1) == b"\x01\x02"

    def test_sever_link(self, link):
        link.sever_link()
        with pytest.raises(TransportClosedError):
            link.write(encode_frame(FrameBuilder.heart_beat()))
        with pytest.raises(TransportClosedError):
            link.read(0.1)
        assert not link.is_open

    def test_fail_open(self, transport):
        transport.fail_open = True
        with pytest.raises(OpenError):
            transport.open("SIM0")

    def test_closed(self, transport):
        with pytest.raises(TransportClosedError):
            transport.write(b"\xAA")

    def test_tx_log(self, link):
        link.write(encode_frame(FrameBuilder.heart_beat()))
        link.write(encode_frame(FrameBuilder.set_power_level(30)))
        assert len(link.get_tx_log()) == 2
        assert [f.opcode for f in link.sent_frames()] == [Opcode.HEART_BEAT, Opcode.SET_TEC_POWER_LEVEL]
        link.clear_tx_log()
        assert link.sent_frames() == []

    def test_list_ports(self):
        assert SimulatedTransport.list_ports()[0].port == "SIM0"
