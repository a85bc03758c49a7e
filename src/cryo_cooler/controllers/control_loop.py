"""
TEC Power Control Loop

PID controller that regulates coolant temperature relative to the dew point.
The controlled quantity is the dew-point margin (coolant minus dew point);
the loop drives TEC power so the margin settles at the requested offset.

    error  = offset_from_dew_point_c - (coolant_temp_c - dew_point_c)
    demand = -error              (positive demand = more cooling needed)

The P term acts on the demand, the I term integrates the demand over wall
time and is clamped to the commandable power range (anti-windup), and the
D term acts on the measured margin so a target change causes no kick.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from ..communication.telemetry import TelemetryFrame

logger = logging.getLogger(__name__)


# Defaults used by the vendor application
DEFAULT_OFFSET_C = 2.0
DEFAULT_KP = 100.0
DEFAULT_KI = 1.0
DEFAULT_KD = 1.0
DEFAULT_MAX_POWER_PCT = 100.0

# Largest magnitude a little-endian f32 payload can carry
FLOAT32_MAX = 3.4028234663852886e38


@dataclass(frozen=True)
class ControlTarget:
    """Regulation target supplied by the caller. Immutable while active."""
    offset_from_dew_point_c: float = DEFAULT_OFFSET_C
    pid_kp: float = DEFAULT_KP
    pid_ki: float = DEFAULT_KI
    pid_kd: float = DEFAULT_KD
    max_power_pct: float = DEFAULT_MAX_POWER_PCT

    def __post_init__(self):
        for name in ("offset_from_dew_point_c", "pid_kp", "pid_ki", "pid_kd", "max_power_pct"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise ValueError(f"{name} must be a finite number, got {value!r}")
            if abs(value) > FLOAT32_MAX:
                raise ValueError(f"{name} does not fit a 32-bit float, got {value!r}")
        # Negative gains would invert the cooling demand
        for name in ("pid_kp", "pid_ki", "pid_kd"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        if not 0 <= self.max_power_pct <= 100:
            raise ValueError(f"max_power_pct must be within 0..100, got {self.max_power_pct}")


@dataclass
class PidState:
    """PID state, owned by a single ControlLoop."""
    integral_accumulator: float = 0.0
    previous_error: float = 0.0
    previous_measurement: float = 0.0
    previous_timestamp: Optional[float] = None
    output: float = 0.0
    missed_ticks: int = 0


def _clamp(value: float, min_val: float, max_val: float) -> float:
    """Clamp value to range"""
    if value < min_val:
        return min_val
    if value > max_val:
        return max_val
    return value


class ControlLoop:
    """
    Dew-point relative PID regulator.

    Args:
        target: Regulation target
        max_missed_ticks: Holds tolerated before hold() reports a fault
        max_slew_pct_per_s: Limit on how fast power may rise (0 disables)
        nominal_interval: Tick interval assumed for the first update after reset
    """

    def __init__(self, target: ControlTarget, max_missed_ticks: int = 3,
                 max_slew_pct_per_s: float = 20.0, nominal_interval: float = 0.5):
        self.target = target
        self.max_missed_ticks = max_missed_ticks
        self.max_slew_pct_per_s = max_slew_pct_per_s
        self.nominal_interval = nominal_interval
        self.state = PidState()

    @property
    def output(self) -> float:
        """Last computed power setpoint in percent."""
        return self.state.output

    def reset(self) -> None:
        """Clear PID state. The first update after a reset is P only."""
        self.state = PidState()
        logger.debug("PID state reset")

    def error(self, frame: TelemetryFrame) -> float:
        return self.target.offset_from_dew_point_c - frame.dew_point_margin_c

    def update(self, frame: TelemetryFrame, now: float) -> float:
        """
        Compute the next power setpoint.

        Args:
            frame: Validated telemetry for this tick
            now: Monotonic time of the tick, in seconds

        Returns:
            Power setpoint in percent, within [0, max_power_pct]
        """
        st = self.state
        target = self.target
        max_power = target.max_power_pct

        first = st.previous_timestamp is None
        dt = None if first else now - st.previous_timestamp
        if dt is not None and dt <= 0:
            return st.output

        measurement = frame.dew_point_margin_c
        error = target.offset_from_dew_point_c - measurement
        demand = -error

        p_term = target.pid_kp * demand
        d_term = 0.0
        if not first:
            st.integral_accumulator = _clamp(
                st.integral_accumulator + target.pid_ki * demand * dt, 0.0, max_power)
            d_term = target.pid_kd * (measurement - st.previous_measurement) / dt

        raw = p_term + st.integral_accumulator + d_term
        output = _clamp(raw, 0.0, max_power)

        if self.max_slew_pct_per_s > 0 and output > st.output:
            step = self.max_slew_pct_per_s * (self.nominal_interval if first else dt)
            output = min(output, st.output + step)

        st.previous_error = error
        st.previous_measurement = measurement
        st.previous_timestamp = now
        st.missed_ticks = 0
        st.output = output

        logger.debug(f"PID error={error:.2f} P={p_term:.1f} I={st.integral_accumulator:.1f} "
                     f"D={d_term:.1f} -> {output:.1f}%")
        return output

    def hold(self) -> bool:
        """
        Keep the previous setpoint for a tick without telemetry.

        Returns:
            True once more than max_missed_ticks consecutive ticks were held
        """
        self.state.missed_ticks += 1
        logger.warning(f"No telemetry, holding {self.state.output:.1f}% "
                       f"({self.state.missed_ticks}/{self.max_missed_ticks})")
        return self.state.missed_ticks > self.max_missed_ticks
