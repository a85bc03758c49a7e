"""
Safety Monitor

Watches every validated telemetry frame and every outbound power setpoint.

OCP reports from the board are known to produce false positives, so the flag
is debounced: only K consecutive flagged frames count as an over-current
fault. Power setpoints are clamped here a second time, independently of the
control loop's own clamp.
"""

import logging
import math
from typing import Optional

from ..communication.telemetry import TecStatus, TelemetryFrame
from .session_state import FaultReason

logger = logging.getLogger(__name__)


class SafetyMonitor:
    """Debounces OCP, reports device fault bits and enforces the power ceiling."""

    def __init__(self, ocp_debounce_count: int = 3,
                 device_fault_mask: int = int(TecStatus.FAILSAFE_ACTIVE)):
        if ocp_debounce_count < 1:
            raise ValueError("ocp_debounce_count must be at least 1")
        self.ocp_debounce_count = ocp_debounce_count
        self.device_fault_mask = device_fault_mask
        self.ocp_count = 0
        self.clamp_violations = 0

    def reset(self) -> None:
        self.ocp_count = 0
        self.clamp_violations = 0

    def observe(self, frame: TelemetryFrame) -> Optional[FaultReason]:
        """
        Check one telemetry frame.

        Returns:
            FaultReason when the session must fault, otherwise None
        """
        if frame.ocp_flag:
            self.ocp_count += 1
            logger.warning(f"OCP flag set ({self.ocp_count}/{self.ocp_debounce_count})")
        else:
            if self.ocp_count:
                logger.info(f"OCP flag cleared after {self.ocp_count} frame(s)")
            self.ocp_count = 0

        fault_bits = frame.raw_status_bits & self.device_fault_mask
        if fault_bits:
            logger.error(f"Device reported fault bits: {TecStatus(fault_bits)!r}")
            return FaultReason.DEVICE_REPORTED_FAULT

        if self.ocp_count >= self.ocp_debounce_count:
            return FaultReason.OVER_CURRENT
        return None

    def clamp_power(self, value: float, max_power_pct: float) -> float:
        """Clamp an outbound power setpoint to [0, max_power_pct]."""
        if math.isnan(value) or value < 0:
            logger.warning(f"Rejected power setpoint {value}, sending 0%")
            return 0.0
        if value > max_power_pct:
            self.clamp_violations += 1
            logger.warning(f"Power setpoint {value:.1f}% exceeds ceiling {max_power_pct:.1f}%, clamping")
            return float(max_power_pct)
        return float(value)

    def power_level(self, value: float, max_power_pct: float) -> int:
        """Final whole-percent level sent on the wire, never above floor(max_power_pct)."""
        clamped = self.clamp_power(value, max_power_pct)
        return min(int(round(clamped)), int(math.floor(max_power_pct)))
