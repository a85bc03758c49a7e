"""
Cryo Cooler Device Simulator
Simulates the TEC controller board for testing without hardware.

Implements:
- Protocol responses for every opcode (readings, settings, heart beat)
- First-order thermal model of the coolant loop
- Fault injection (corrupt/dropped responses, OCP, device fault bits,
  lost link, failed open, ignored power ceiling)
"""

import logging
import math
import struct
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .protocol import (
    AckFrame, CommandFrame, FrameCodec, Opcode, FrameParser,
    FRAME_SIZE, TEC_CURRENT_DIVISOR, TEC_VOLTAGE_DIVISOR, response_opcode,
)
from .telemetry import TecStatus
from .transport_base import (
    TransportBase, TransportInfo, TransportState,
    OpenError, TransportClosedError, TransportTimeoutError,
)

logger = logging.getLogger(__name__)


# Magnus formula constants (Sonntag 1990)
MAGNUS_B = 17.62
MAGNUS_C = 243.12


def dew_point(temp_c: float, relative_humidity_pct: float) -> float:
    """Dew point in Celsius for the given air temperature and humidity."""
    rh = min(max(relative_humidity_pct, 0.1), 100.0)
    gamma = math.log(rh / 100.0) + MAGNUS_B * temp_c / (MAGNUS_C + temp_c)
    return MAGNUS_C * gamma / (MAGNUS_B - gamma)


@dataclass
class SimulatorState:
    """Complete simulator state."""
    # Device info
    firmware_version: tuple = (1, 4, 0, 0)
    hardware_version: int = 2
    board_initialized: bool = False

    # Environment
    ambient_temp_c: float = 25.0
    relative_humidity_pct: float = 50.0
    heat_load_c: float = 8.0          # coolant rise above ambient with the TEC off
    cooling_per_pct: float = 0.35     # steady-state coolant drop per percent of TEC power
    time_constant_s: float = 20.0
    coolant_temp_c: float = 33.0

    # Electrical
    supply_voltage_v: float = 12.0
    max_current_a: float = 6.0

    # Settings written by the host
    tec_enabled: bool = False
    power_level: int = 0
    setpoint_offset_c: float = 2.0
    kp: float = 100.0
    ki: float = 1.0
    kd: float = 1.0
    ntc_coefficient: float = 3950.0

    # Injected faults
    force_ocp: bool = False
    forced_status_bits: int = 0
    ignore_power_ceiling: bool = False

    @property
    def dew_point_c(self) -> float:
        return dew_point(self.ambient_temp_c, self.relative_humidity_pct)

    @property
    def effective_power(self) -> int:
        """Power the TEC actually runs at."""
        if not self.tec_enabled:
            return 0
        if self.ignore_power_ceiling:
            return 100
        return self.power_level


class DeviceSimulator:
    """
    TEC controller board simulator.

    Consumes command frames and produces the response frames a real board
    would send. Time advances from the injected clock on every command.
    """

    def __init__(self, state: Optional[SimulatorState] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.state = state or SimulatorState()
        self._clock = clock
        self._last_update = clock()
        self._codec = FrameCodec(frame_type=CommandFrame)
        self.commands: list[CommandFrame] = []

    def status_word(self) -> int:
        """Build the HEART_BEAT status word from the current state."""
        s = self.state
        status = (TecStatus.POWER_OK | TecStatus.TEMP_SENSE_OK | TecStatus.HUM_SENSE_OK
                  | TecStatus.LAST_CMD_OK | TecStatus.BOARD_TEMP_OK | TecStatus.TEC_CONN_OK
                  | TecStatus.PID_READY)
        if s.board_initialized:
            status |= TecStatus.BOARD_INIT
        if s.tec_enabled:
            status |= TecStatus.PID_RUNNING
        else:
            status |= TecStatus.LOW_POWER_MODE_ACTIVE
        if s.force_ocp:
            status |= TecStatus.OCP_ACTIVE
        return int(status) | s.forced_status_bits

    def update(self, now: Optional[float] = None) -> None:
        """Advance the thermal model to the given time."""
        now = self._clock() if now is None else now
        dt = now - self._last_update
        self._last_update = now
        if dt <= 0:
            return
        s = self.state
        target = s.ambient_temp_c + s.heat_load_c - s.cooling_per_pct * s.effective_power
        alpha = 1.0 - math.exp(-dt / s.time_constant_s)
        s.coolant_temp_c += (target - s.coolant_temp_c) * alpha

    def process(self, data: bytes) -> list[AckFrame]:
        """
        Process incoming bytes and return responses for every complete command.

        Corrupt commands get no response, like the real board.
        """
        responses = []
        self._codec.feed(data)
        while True:
            result = self._codec.decode()
            if result.is_frame:
                response = self.handle_command(result.frame)
                if response is not None:
                    responses.append(response)
            elif result.is_corrupt:
                logger.warning("Simulator dropped corrupt command")
            else:
                break
        return responses

    def handle_command(self, frame: CommandFrame) -> Optional[AckFrame]:
        """Apply one command and build its response."""
        self.update()
        self.commands.append(frame)
        s = self.state
        opcode = int(frame.opcode)

        readers = {
            Opcode.HEART_BEAT: lambda: struct.pack("<I", self.status_word()),
            Opcode.GET_TEC_TEMPERATURE: lambda: struct.pack("<f", s.coolant_temp_c),
            Opcode.GET_HUMIDITY: lambda: struct.pack("<f", s.relative_humidity_pct),
            Opcode.GET_DEW_POINT: lambda: struct.pack("<f", s.dew_point_c),
            Opcode.GET_SET_POINT_OFFSET: lambda: struct.pack("<f", s.setpoint_offset_c),
            Opcode.GET_P_COEFFICIENT: lambda: struct.pack("<f", s.kp),
            Opcode.GET_I_COEFFICIENT: lambda: struct.pack("<f", s.ki),
            Opcode.GET_D_COEFFICIENT: lambda: struct.pack("<f", s.kd),
            Opcode.GET_TEC_POWER_LEVEL: lambda: bytes([s.effective_power, 0, 0, 0]),
            Opcode.GET_HW_VERSION: lambda: struct.pack("<I", s.hardware_version),
            Opcode.GET_FW_VERSION: lambda: bytes(s.firmware_version),
            Opcode.GET_NTC_COEFFICIENT: lambda: struct.pack("<f", s.ntc_coefficient),
            Opcode.GET_BOARD_TEMP: lambda: struct.pack("<f", s.ambient_temp_c),
            Opcode.GET_TEC_VOLTAGE: lambda: struct.pack("<I", round(self._tec_voltage() * TEC_VOLTAGE_DIVISOR)),
            Opcode.GET_TEC_CURRENT: lambda: struct.pack("<I", round(self._tec_current() * TEC_CURRENT_DIVISOR)),
            Opcode.GET_VOLTAGE_AND_CURRENT: lambda: struct.pack(
                "<HH", round(self._tec_voltage() * 100), round(self._tec_current() * 100)),
        }

        if opcode in readers:
            payload = readers[opcode]()
        elif opcode in (Opcode.SET_POINT_OFFSET, Opcode.SET_P_COEFFICIENT,
                        Opcode.SET_I_COEFFICIENT, Opcode.SET_D_COEFFICIENT,
                        Opcode.SET_NTC_COEFFICIENT, Opcode.SET_CPU_TEMP):
            value = FrameParser.parse_float(frame)
            if opcode == Opcode.SET_POINT_OFFSET:
                s.setpoint_offset_c = value
            elif opcode == Opcode.SET_P_COEFFICIENT:
                s.kp = value
            elif opcode == Opcode.SET_I_COEFFICIENT:
                s.ki = value
            elif opcode == Opcode.SET_D_COEFFICIENT:
                s.kd = value
            elif opcode == Opcode.SET_NTC_COEFFICIENT:
                s.ntc_coefficient = value
            payload = frame.payload
        elif opcode == Opcode.SET_TEC_POWER_LEVEL:
            s.power_level = min(frame.payload[0], 100)
            payload = frame.payload
        elif opcode == Opcode.SET_DISABLE_NOT_ENABLE:
            s.tec_enabled = frame.payload[0] == 0
            logger.info(f"Simulator TEC {'enabled' if s.tec_enabled else 'disabled'}")
            payload = frame.payload
        elif opcode == Opcode.SET_RESET_BOARD:
            s.board_initialized = True
            s.tec_enabled = False
            s.power_level = 0
            logger.info("Simulator board reset")
            payload = frame.payload
        elif opcode == Opcode.SET_TEMP_SENSOR:
            payload = frame.payload
        else:
            logger.warning(f"Simulator received unknown opcode 0x{opcode:02X}")
            return None

        return AckFrame(response_opcode(opcode), payload)

    def _tec_current(self) -> float:
        return self.state.max_current_a * self.state.effective_power / 100.0

    def _tec_voltage(self) -> float:
        return self.state.supply_voltage_v * self.state.effective_power / 100.0


class SimulatedTransport(TransportBase):
    """
    In-process transport wired to a DeviceSimulator.

    Every write is answered synchronously by the simulator; responses are
    queued for the next read. Fault injection hooks mimic a noisy or broken
    serial link.
    """

    def __init__(self, simulator: Optional[DeviceSimulator] = None):
        super().__init__()
        self.simulator = simulator or DeviceSimulator()
        self._rx_buffer = bytearray()
        self._cond = threading.Condition()
        self._tx_log: list[bytes] = []
        self._port: Optional[str] = None
        self._link_lost = False

        # Fault injection
        self.fail_open = False
        self._corrupt_remaining = 0
        self._drop_remaining = 0

    @staticmethod
    def list_ports() -> list[TransportInfo]:
        return [TransportInfo(port="SIM0", description="Simulated TEC controller", hardware_id="SIM")]

    # Fault injection ---------------------------------------------------

    def corrupt_next(self, count: int = 1) -> None:
        """Flip a payload byte in the next `count` responses."""
        with self._cond:
            self._corrupt_remaining += count

    def drop_next(self, count: int = 1) -> None:
        """Swallow the next `count` responses."""
        with self._cond:
            self._drop_remaining += count

    def inject(self, data: bytes) -> None:
        """Push raw bytes into the receive path."""
        with self._cond:
            self._rx_buffer.extend(data)
            self._cond.notify_all()

    def sever_link(self) -> None:
        """Simulate a pulled cable: every later call raises TransportClosedError."""
        with self._cond:
            self._link_lost = True
            self._cond.notify_all()
        logger.info("Simulated link severed")

    # Inspection --------------------------------------------------------

    def get_tx_log(self) -> list[bytes]:
        """Get log of all transmitted data."""
        with self._cond:
            return list(self._tx_log)

    def clear_tx_log(self) -> None:
        with self._cond:
            self._tx_log.clear()

    def sent_frames(self) -> list[CommandFrame]:
        """Decode the tx log into command frames."""
        data = b"".join(self.get_tx_log())
        codec = FrameCodec(frame_type=CommandFrame, max_buffer_size=max(FRAME_SIZE, len(data)))
        codec.feed(data)
        frames = []
        while True:
            result = codec.decode()
            if not result.is_frame:
                break
            frames.append(result.frame)
        return frames

    # TransportBase -----------------------------------------------------

    def open(self, port: str) -> None:
        if self.fail_open:
            self._set_state(TransportState.ERROR)
            raise OpenError(f"Failed to open {port}: port busy")
        with self._cond:
            self._rx_buffer.clear()
            self._link_lost = False
            self._port = port
        self._set_state(TransportState.OPEN)
        logger.info(f"Simulated port opened: {port}")

    def close(self) -> None:
        with self._cond:
            self._port = None
            self._rx_buffer.clear()
            self._cond.notify_all()
        self._set_state(TransportState.CLOSED)

    def write(self, data: bytes) -> None:
        with self._cond:
            self._check_open()
            self._tx_log.append(bytes(data))
            for response in self.simulator.process(data):
                raw = bytearray(FrameCodec.encode(response))
                if self._drop_remaining > 0:
                    self._drop_remaining -= 1
                    logger.debug(f"Dropping response {response!r}")
                    continue
                if self._corrupt_remaining > 0:
                    self._corrupt_remaining -= 1
                    raw[3] ^= 0xFF
                    logger.debug(f"Corrupting response {response!r}")
                self._rx_buffer.extend(raw)
            self._cond.notify_all()

    def read(self, timeout: float) -> bytes:
        deadline = time.monotonic() + max(0.0, timeout)
        with self._cond:
            while True:
                self._check_open()
                if self._rx_buffer:
                    data = bytes(self._rx_buffer)
                    self._rx_buffer.clear()
                    return data
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TransportTimeoutError(f"No data within {timeout:.3f}s")
                self._cond.wait(remaining)

    def discard_input(self) -> None:
        with self._cond:
            self._rx_buffer.clear()

    def get_port_info(self) -> Optional[TransportInfo]:
        if self._port is None:
            return None
        return TransportInfo(port=self._port, description="Simulated TEC controller")

    def _check_open(self) -> None:
        if self._link_lost:
            self._set_state(TransportState.ERROR)
            raise TransportClosedError("Simulated link lost")
        if self._port is None:
            raise TransportClosedError("Simulated port not open")
