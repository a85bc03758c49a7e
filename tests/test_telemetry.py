"""
Cryo Cooler Telemetry Tests
Tests for status flags and the telemetry snapshot
"""

from datetime import datetime

import pytest

from cryo_cooler.communication.telemetry import (
    DeviceInfo,
    TecStatus,
    TelemetryFrame,
    parse_status,
    STATUS_MASK,
)


class TestTecStatus:
    """Test status word parsing."""

    def test_bit_positions(self):
        """Flags sit at the documented bit positions."""
        assert TecStatus.BOARD_INIT == 1 << 0
        assert TecStatus.FAILSAFE_ACTIVE == 1 << 7
        assert TecStatus.OCP_ACTIVE == 1 << 13
        assert TecStatus.LOW_POWER_MODE_ACTIVE == 1 << 16
        assert TecStatus.TEMP_MODE == 1 << 17

    def test_undefined_bits_dropped(self):
        """Bits above bit 17 are masked off."""
        status = parse_status(0xFFFFFFFF)
        assert int(status) == STATUS_MASK

    def test_combined_flags(self):
        """Multiple flags decode together."""
        status = parse_status(int(TecStatus.POWER_OK | TecStatus.OCP_ACTIVE))
        assert status & TecStatus.POWER_OK
        assert status & TecStatus.OCP_ACTIVE
        assert not status & TecStatus.BOARD_INIT


class TestTelemetryFrame:
    """Test derived telemetry values."""

    def test_dew_point_margin(self, make_frame):
        """Margin is coolant minus dew point."""
        assert make_frame(coolant=10.0, dew=5.0).dew_point_margin_c == pytest.approx(5.0)

    def test_tec_active(self, make_frame):
        """TEC is active unless low power mode is reported."""
        assert make_frame(active=True).tec_active
        assert not make_frame(active=False).tec_active

    def test_frozen(self, make_frame):
        """Frames are immutable snapshots."""
        frame = make_frame()
        with pytest.raises(AttributeError):
            frame.coolant_temp_c = 1.0

    def test_timestamp(self, make_frame):
        """Frames carry a UTC timestamp."""
        frame = make_frame()
        assert isinstance(frame.timestamp, datetime)
        assert frame.timestamp.tzinfo is not None

    def test_power_watts(self):
        """Electrical power from voltage and current."""
        frame = TelemetryFrame(
            coolant_temp_c=10.0, ambient_temp_c=20.0, relative_humidity_pct=40.0,
            dew_point_c=5.0, tec_power_pct=50, ocp_flag=False, raw_status_bits=0,
            tec_voltage_v=6.0, tec_current_a=3.0,
        )
        assert frame.tec_power_w == pytest.approx(18.0)

    def test_fault_descriptions_healthy(self, make_frame):
        """A healthy frame has no problems listed."""
        assert make_frame().get_fault_descriptions() == []

    def test_fault_descriptions(self, make_frame):
        """Missing sensor bits and OCP are described."""
        status = int(TecStatus.POWER_OK | TecStatus.TEMP_SENSE_OK)
        descriptions = make_frame(status=status, ocp=True).get_fault_descriptions()
        assert "Humidity sensor error" in descriptions
        assert "Over-current protection active" in descriptions
        assert "TEC has no power" not in descriptions


class TestDeviceInfo:
    """Test device identification."""

    def test_firmware_string(self):
        info = DeviceInfo(firmware_version=(1, 4, 0, 0), hardware_version=2, port="COM3")
        assert info.firmware_string == "1.4"

    def test_defaults(self):
        info = DeviceInfo()
        assert info.firmware_version == (0, 0, 0, 0)
        assert info.port is None
