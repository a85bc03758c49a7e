"""
Device Session

State machine for one connection to the TEC controller board.

    DISCONNECTED -> CONNECTING -> CONNECTED -> ENABLING -> ACTIVE
                                     ^                       |
                                     +------- disable -------+

    any state except DISCONNECTED -> FAULT

FAULT is terminal: nothing is transmitted until disconnect() or connect()
resets the session. There is exactly one request outstanding at a time;
every command is written and its response awaited before the next one.

A DeviceSession is not thread-safe. SessionWorker drives it from a single
control thread; other threads may only read `state` and `fault`.
"""

import logging
import struct
import time
from typing import Callable, Optional

from ..communication.protocol import (
    AckFrame, CommandFrame, FrameBuilder, FrameCodec, FrameParser, Opcode, ProtocolError, encode_frame,
)
from ..communication.telemetry import DeviceInfo, TecStatus, TelemetryFrame, parse_status
from ..communication.transport_base import (
    TransportBase, TransportError, OpenError, TransportClosedError, TransportTimeoutError,
)
from ..models.session_config import SessionConfig
from .control_loop import ControlLoop, ControlTarget
from .safety_monitor import SafetyMonitor
from .session_state import (
    FaultReason, FaultRecord, SessionState, POWERED_STATES, TRANSMIT_STATES,
)

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Base exception for session errors."""
    pass


class ConnectError(SessionError):
    """Port could not be opened or the handshake failed."""

    def __init__(self, message: str, record: Optional[FaultRecord] = None):
        super().__init__(message)
        self.record = record


class EnableError(SessionError):
    """Enable rejected in the current state, or the enable exchange failed."""
    pass


class _LinkFault(Exception):
    """Aborts the current exchange after the session escalated."""

    def __init__(self, record: FaultRecord):
        super().__init__(str(record))
        self.record = record


# Readings requested after HEART_BEAT on every poll
POLL_READINGS = (
    Opcode.GET_TEC_TEMPERATURE,
    Opcode.GET_BOARD_TEMP,
    Opcode.GET_HUMIDITY,
    Opcode.GET_DEW_POINT,
    Opcode.GET_TEC_POWER_LEVEL,
    Opcode.GET_TEC_VOLTAGE,
    Opcode.GET_TEC_CURRENT,
)

POLLING_STATES = frozenset({SessionState.CONNECTED, SessionState.ENABLING, SessionState.ACTIVE})


class DeviceSession:
    """
    One connection to a TEC controller board.

    Args:
        transport: Transport to the board (owned by the session once connected)
        config: Session timing and budgets
        clock: Monotonic clock used for deadlines and control timing
    """

    def __init__(self, transport: TransportBase, config: Optional[SessionConfig] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or SessionConfig()
        self.config.validate()
        self._transport = transport
        self._clock = clock
        self._codec = FrameCodec(frame_type=AckFrame, max_buffer_size=self.config.max_rx_buffer)
        self.safety = SafetyMonitor(
            ocp_debounce_count=self.config.ocp_debounce_count,
            device_fault_mask=self.config.device_fault_mask,
        )

        self._state = SessionState.DISCONNECTED
        self._fault: Optional[FaultRecord] = None
        self._device_info: Optional[DeviceInfo] = None
        self._target: Optional[ControlTarget] = None
        self._loop: Optional[ControlLoop] = None
        self._pending_frame: Optional[TelemetryFrame] = None
        self._last_frame: Optional[TelemetryFrame] = None
        self._commanded_power: Optional[int] = None
        self._enable_started: Optional[float] = None
        self._corrupt_count = 0
        self._missed_polls = 0

        self.state_callback: Optional[Callable[[SessionState, SessionState], None]] = None

    # ========== Properties ==========

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def fault(self) -> Optional[FaultRecord]:
        return self._fault

    @property
    def device_info(self) -> Optional[DeviceInfo]:
        return self._device_info

    @property
    def target(self) -> Optional[ControlTarget]:
        return self._target

    @property
    def control_loop(self) -> Optional[ControlLoop]:
        return self._loop

    @property
    def last_telemetry(self) -> Optional[TelemetryFrame]:
        return self._last_frame

    @property
    def commanded_power(self) -> Optional[int]:
        """Last power level sent to the board."""
        return self._commanded_power

    @property
    def codec(self) -> FrameCodec:
        return self._codec

    # ========== Lifecycle ==========

    def connect(self, port: str) -> DeviceInfo:
        """
        Open the port and identify the board.

        Sends HEART_BEAT, resets the board if it reports itself uninitialized,
        then reads firmware and hardware versions.

        Raises:
            ConnectError: If the port cannot be opened or the board does not answer
        """
        if self._state in POLLING_STATES:
            logger.info("Already connected, disconnecting first")
            self.disconnect()
        elif self._state != SessionState.DISCONNECTED:
            self._reset()

        self._set_state(SessionState.CONNECTING)
        try:
            self._transport.open(port)
        except OpenError as e:
            self._set_state(SessionState.DISCONNECTED)
            record = FaultRecord(FaultReason.TRANSPORT_CLOSED, detail=str(e))
            logger.error(f"Cannot open {port}: {e}")
            raise ConnectError(f"Cannot open {port}: {e}", record) from e

        self._transport.discard_input()
        try:
            info = self._handshake(port)
        except _LinkFault as e:
            self._reset()
            logger.error(f"Handshake with {port} failed: {e.record}")
            raise ConnectError(f"Handshake with {port} failed: {e.record}", e.record) from None

        self._device_info = info
        self._set_state(SessionState.CONNECTED)
        logger.info(f"Connected to {port}: firmware {info.firmware_string}, "
                    f"hardware {info.hardware_version}")
        return info

    def enable(self, target: ControlTarget, now: Optional[float] = None) -> None:
        """
        Start regulation with the given target.

        Allowed from CONNECTED, and from ENABLING or ACTIVE to replace the
        target. PID state is reset and the session re-enters ENABLING.

        Raises:
            EnableError: In FAULT or DISCONNECTED (no side effects), or when
                the board does not acknowledge the enable sequence
        """
        if not isinstance(target, ControlTarget):
            raise TypeError(f"Expected ControlTarget, got {type(target).__name__}")
        if self._state not in POLLING_STATES:
            raise EnableError(f"Cannot enable in state {self._state.name}")

        # Encode everything up front so a bad value leaves the session untouched
        try:
            frames = [
                FrameBuilder.set_power_level(0),
                FrameBuilder.set_setpoint_offset(target.offset_from_dew_point_c),
                *FrameBuilder.set_pid(target.pid_kp, target.pid_ki, target.pid_kd),
                FrameBuilder.enable(),
            ]
        except (ProtocolError, struct.error, OverflowError) as e:
            raise EnableError(f"Target cannot be sent to the device: {e}") from e

        now = self._clock() if now is None else now
        self._target = target
        self._loop = ControlLoop(
            target,
            max_missed_ticks=self.config.max_missed_ticks,
            max_slew_pct_per_s=self.config.max_slew_pct_per_s,
            nominal_interval=self.config.tick_interval,
        )
        self._pending_frame = None
        self._enable_started = now
        self._set_state(SessionState.ENABLING)

        for frame in frames:
            try:
                self._require(frame, self.config.response_timeout)
            except _LinkFault as e:
                raise EnableError(f"Enable failed: {e.record}") from None

        self._commanded_power = 0
        logger.info(f"TEC enable sent: offset {target.offset_from_dew_point_c:.1f}C, "
                    f"max power {target.max_power_pct:.0f}%")

    def disable(self) -> bool:
        """
        Switch the TEC off. Best effort, never raises.

        The session returns to CONNECTED even when the board does not answer
        within disable_timeout.

        Returns:
            True if the board acknowledged the disable command
        """
        if self._state not in POLLING_STATES:
            logger.debug(f"Disable ignored in state {self._state.name}")
            return False

        try:
            ack = self._transact(FrameBuilder.disable(), self.config.disable_timeout)
        except _LinkFault:
            return False

        if ack is None:
            logger.warning("Disable not acknowledged, assuming TEC is off")
        if self._state in POWERED_STATES:
            self._clear_control()
            self._set_state(SessionState.CONNECTED)
            logger.info("TEC disabled")
        return ack is not None

    def disconnect(self) -> None:
        """Disable if powered, close the transport and clear all session data."""
        if self._state in POWERED_STATES:
            self.disable()
        self._reset()

    def close_transport(self) -> None:
        """Release the port without any protocol exchange."""
        self._transport.close()

    # ========== Control tick ==========

    def poll(self, now: Optional[float] = None) -> Optional[TelemetryFrame]:
        """
        Run one telemetry cycle.

        Returns:
            The validated TelemetryFrame, or None if the cycle failed
        """
        now = self._clock() if now is None else now
        self._pending_frame = None
        if self._state not in POLLING_STATES:
            return None

        try:
            frame = self._read_telemetry()
        except _LinkFault:
            return None

        if frame is None:
            self._on_missed_poll(now)
            return None

        self._last_frame = frame
        self._missed_polls = 0

        reason = self.safety.observe(frame)
        if reason is not None:
            detail = ", ".join(frame.get_fault_descriptions()) or reason.name
            self._escalate(reason, detail)
            return frame

        if self._state == SessionState.ENABLING:
            if frame.tec_active:
                self._loop.reset()
                self._set_state(SessionState.ACTIVE)
            elif self._enable_expired(now):
                self._escalate(FaultReason.TIMEOUT,
                               f"TEC not running {self.config.enable_timeout:.1f}s after enable")
                return frame

        if self._state == SessionState.ACTIVE:
            self._pending_frame = frame
        return frame

    def regulate(self, now: Optional[float] = None) -> Optional[float]:
        """
        Compute and send the power setpoint for the last polled frame.

        Only acts in ACTIVE. Without fresh telemetry the previous setpoint is
        held; too many consecutive holds fault the session.

        Returns:
            Power setpoint in percent, or None if nothing was sent
        """
        now = self._clock() if now is None else now
        frame, self._pending_frame = self._pending_frame, None
        if self._state != SessionState.ACTIVE:
            return None

        if frame is None:
            if self._loop.hold():
                self._escalate(FaultReason.TIMEOUT,
                               f"No telemetry for {self._loop.state.missed_ticks} ticks")
            return None

        power = self._loop.update(frame, now)
        level = self.safety.power_level(power, self._target.max_power_pct)
        try:
            ack = self._transact(FrameBuilder.set_power_level(level), self.config.response_timeout)
        except _LinkFault:
            return None
        if ack is None:
            logger.warning(f"Power level {level}% not acknowledged")
        self._commanded_power = level
        return power

    def tick(self, now: Optional[float] = None) -> Optional[TelemetryFrame]:
        """Poll then regulate, for callers that have no command queue."""
        now = self._clock() if now is None else now
        frame = self.poll(now)
        self.regulate(now)
        return frame

    # ========== Internals ==========

    def _set_state(self, new_state: SessionState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        logger.info(f"Session state: {old_state.name} -> {new_state.name}")
        if self.state_callback:
            self.state_callback(old_state, new_state)

    def _handshake(self, port: str) -> DeviceInfo:
        timeout = self.config.handshake_timeout
        ack = self._require(FrameBuilder.heart_beat(), timeout)
        status = parse_status(FrameParser.parse_status(ack))
        if not status & TecStatus.BOARD_INIT:
            logger.info("Board not initialized, sending reset")
            self._require(FrameBuilder.reset_board(), timeout)

        firmware = FrameParser.parse_fw_version(
            self._require(FrameBuilder.read(Opcode.GET_FW_VERSION), timeout))
        hardware = FrameParser.parse_u32(
            self._require(FrameBuilder.read(Opcode.GET_HW_VERSION), timeout))
        return DeviceInfo(firmware_version=firmware, hardware_version=hardware, port=port)

    def _read_telemetry(self) -> Optional[TelemetryFrame]:
        timeout = self.config.response_timeout
        status_ack = self._transact(FrameBuilder.heart_beat(), timeout)
        if status_ack is None:
            return None

        readings = {}
        for opcode in POLL_READINGS:
            ack = self._transact(FrameBuilder.read(opcode), timeout)
            if ack is None:
                return None
            readings[opcode] = ack

        raw_status = FrameParser.parse_status(status_ack)
        return TelemetryFrame(
            coolant_temp_c=FrameParser.parse_float(readings[Opcode.GET_TEC_TEMPERATURE]),
            ambient_temp_c=FrameParser.parse_float(readings[Opcode.GET_BOARD_TEMP]),
            relative_humidity_pct=FrameParser.parse_float(readings[Opcode.GET_HUMIDITY]),
            dew_point_c=FrameParser.parse_float(readings[Opcode.GET_DEW_POINT]),
            tec_power_pct=FrameParser.parse_power_level(readings[Opcode.GET_TEC_POWER_LEVEL]),
            ocp_flag=bool(raw_status & TecStatus.OCP_ACTIVE),
            raw_status_bits=raw_status,
            tec_voltage_v=FrameParser.parse_tec_voltage(readings[Opcode.GET_TEC_VOLTAGE]),
            tec_current_a=FrameParser.parse_tec_current(readings[Opcode.GET_TEC_CURRENT]),
        )

    def _on_missed_poll(self, now: float) -> None:
        if self._state == SessionState.ENABLING:
            if self._enable_expired(now):
                self._escalate(FaultReason.TIMEOUT,
                               f"No telemetry {self.config.enable_timeout:.1f}s after enable")
        elif self._state == SessionState.CONNECTED:
            self._missed_polls += 1
            logger.warning(f"Poll failed ({self._missed_polls}/{self.config.max_missed_ticks})")
            if self._missed_polls > self.config.max_missed_ticks:
                self._escalate(FaultReason.TIMEOUT,
                               f"{self._missed_polls} consecutive polls without telemetry")

    def _enable_expired(self, now: float) -> bool:
        return now - self._enable_started >= self.config.enable_timeout

    def _require(self, frame: CommandFrame, timeout: float) -> AckFrame:
        ack = self._transact(frame, timeout)
        if ack is None:
            raise _LinkFault(self._escalate(FaultReason.TIMEOUT, f"No response to {frame!r}"))
        return ack

    def _transact(self, frame: CommandFrame, timeout: float) -> Optional[AckFrame]:
        """
        Send one command and wait for its response.

        Returns:
            The matching AckFrame, or None on timeout or a corrupt response

        Raises:
            _LinkFault: After escalating on a closed transport or an
                exhausted corrupt frame budget
        """
        if self._state not in TRANSMIT_STATES:
            raise SessionError(f"Cannot transmit in state {self._state.name}")

        try:
            self._transport.write(encode_frame(frame))
        except TransportClosedError as e:
            raise _LinkFault(self._escalate(FaultReason.TRANSPORT_CLOSED, str(e))) from None

        deadline = self._clock() + timeout
        while True:
            result = self._codec.decode()

            if result.is_frame:
                if result.frame.answers(frame):
                    self._corrupt_count = 0
                    return result.frame
                logger.debug(f"Ignoring stale {result.frame!r} while waiting on {frame!r}")
                continue

            if result.is_corrupt:
                self._corrupt_count += 1
                self._codec.reset()
                self._transport.discard_input()
                budget = self.config.corrupt_frame_budget
                logger.warning(f"Corrupt response to {frame!r} ({self._corrupt_count}/{budget})")
                if self._corrupt_count >= budget:
                    raise _LinkFault(self._escalate(
                        FaultReason.CHECKSUM_ERROR, f"{self._corrupt_count} consecutive corrupt frames"))
                return None

            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.warning(f"Timeout waiting for response to {frame!r}")
                return None
            try:
                data = self._transport.read(remaining)
            except TransportTimeoutError:
                logger.warning(f"Timeout waiting for response to {frame!r}")
                return None
            except TransportClosedError as e:
                raise _LinkFault(self._escalate(FaultReason.TRANSPORT_CLOSED, str(e))) from None
            self._codec.feed(data)

    def _escalate(self, reason: FaultReason, detail: str) -> FaultRecord:
        """
        Latch FAULT.

        While CONNECTING the record is only returned, connect() reports it.
        A powered TEC gets one best-effort disable before the latch, unless
        the transport is gone.
        """
        record = FaultRecord(reason, detail=detail)
        if self._state == SessionState.CONNECTING:
            return record
        if self._state in (SessionState.DISCONNECTED, SessionState.FAULT):
            return self._fault or record

        if self._state in POWERED_STATES and reason != FaultReason.TRANSPORT_CLOSED:
            try:
                self._transport.write(encode_frame(FrameBuilder.disable()))
            except TransportError as e:
                logger.warning(f"Could not send disable before fault: {e}")

        self._fault = record
        self._clear_control()
        self._set_state(SessionState.FAULT)
        logger.error(f"Session fault: {record}")
        return record

    def _clear_control(self) -> None:
        self._target = None
        self._loop = None
        self._pending_frame = None
        self._enable_started = None

    def _reset(self) -> None:
        self._transport.close()
        self._codec.reset()
        self.safety.reset()
        self._clear_control()
        self._fault = None
        self._device_info = None
        self._last_frame = None
        self._commanded_power = None
        self._corrupt_count = 0
        self._missed_polls = 0
        self._set_state(SessionState.DISCONNECTED)
