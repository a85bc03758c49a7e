"""
Cryo Cooler Telemetry Data Structures

This module defines the device status word and the telemetry snapshot
assembled once per poll cycle from individual device readings.

Status word (HEART_BEAT response, 18 significant bits):
- bit 0:  BOARD_INIT            bit 9:  PID_INVALID
- bit 1:  POWER_OK              bit 10: PID_OUT_OF_RANGE
- bit 2:  TEMP_SENSE_OK         bit 11: PID_DEFAULT
- bit 3:  HUM_SENSE_OK          bit 12: PID_RUNNING
- bit 4:  LAST_CMD_OK           bit 13: OCP_ACTIVE
- bit 5:  LAST_CMD_BAD_CRC      bit 14: BOARD_TEMP_OK
- bit 6:  LAST_CMD_INCOMPLETE   bit 15: TEC_CONN_OK
- bit 7:  FAILSAFE_ACTIVE       bit 16: LOW_POWER_MODE_ACTIVE (TEC disabled)
- bit 8:  PID_READY             bit 17: TEMP_MODE
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntFlag
from typing import Optional


class TecStatus(IntFlag):
    """Device status flags reported by HEART_BEAT."""
    NONE = 0
    BOARD_INIT = 1 << 0
    POWER_OK = 1 << 1
    TEMP_SENSE_OK = 1 << 2
    HUM_SENSE_OK = 1 << 3
    LAST_CMD_OK = 1 << 4
    LAST_CMD_BAD_CRC = 1 << 5
    LAST_CMD_INCOMPLETE = 1 << 6
    FAILSAFE_ACTIVE = 1 << 7
    PID_READY = 1 << 8
    PID_INVALID = 1 << 9
    PID_OUT_OF_RANGE = 1 << 10
    PID_DEFAULT = 1 << 11
    PID_RUNNING = 1 << 12
    OCP_ACTIVE = 1 << 13
    BOARD_TEMP_OK = 1 << 14
    TEC_CONN_OK = 1 << 15
    LOW_POWER_MODE_ACTIVE = 1 << 16
    TEMP_MODE = 1 << 17


STATUS_MASK = (1 << 18) - 1


def parse_status(raw: int) -> TecStatus:
    """Convert a raw status word into TecStatus, dropping undefined bits."""
    return TecStatus(raw & STATUS_MASK)


@dataclass(frozen=True)
class TelemetryFrame:
    """
    One poll cycle worth of device readings.

    Built only from responses that passed CRC validation.
    """

    coolant_temp_c: float
    ambient_temp_c: float
    relative_humidity_pct: float
    dew_point_c: float
    tec_power_pct: int
    ocp_flag: bool
    raw_status_bits: int
    tec_voltage_v: float = 0.0
    tec_current_a: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> TecStatus:
        return parse_status(self.raw_status_bits)

    @property
    def tec_active(self) -> bool:
        """True when the device reports the TEC as enabled."""
        return not self.status & TecStatus.LOW_POWER_MODE_ACTIVE

    @property
    def dew_point_margin_c(self) -> float:
        """How far the coolant sits above the dew point."""
        return self.coolant_temp_c - self.dew_point_c

    @property
    def tec_power_w(self) -> float:
        return self.tec_voltage_v * self.tec_current_a

    def get_fault_descriptions(self) -> list[str]:
        """Get human-readable descriptions of active problems."""
        status = self.status
        descriptions = []
        if not status & TecStatus.POWER_OK:
            descriptions.append("TEC has no power")
        if not status & TecStatus.TEMP_SENSE_OK:
            descriptions.append("Temperature sensor error")
        if not status & TecStatus.HUM_SENSE_OK:
            descriptions.append("Humidity sensor error")
        if status & TecStatus.PID_OUT_OF_RANGE:
            descriptions.append("PID out of range")
        if status & TecStatus.PID_INVALID:
            descriptions.append("PID invalid")
        if status & TecStatus.OCP_ACTIVE:
            descriptions.append("Over-current protection active")
        if status & TecStatus.FAILSAFE_ACTIVE:
            descriptions.append("Device failsafe active")
        return descriptions


@dataclass(frozen=True)
class DeviceInfo:
    """Device identification read during the handshake."""
    firmware_version: tuple[int, int, int, int] = (0, 0, 0, 0)
    hardware_version: int = 0
    port: Optional[str] = None

    @property
    def firmware_string(self) -> str:
        major, minor = self.firmware_version[0], self.firmware_version[1]
        return f"{major:X}.{minor:X}"
