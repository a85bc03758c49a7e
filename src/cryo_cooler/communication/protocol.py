"""
Cryo Cooler TEC Binary Protocol Implementation

Frame Format (host -> device and device -> host):
┌──────┬────────┬─────────────────┬──────────┐
│ 0xAA │ OpCode │      Data       │  CRC16   │
│ 1B   │ 1B     │ 4B              │ 2B LE    │
└──────┴────────┴─────────────────┴──────────┘

- Start byte: 0xAA (fixed)
- OpCode: command identifier; responses echo OpCode + 0x7F
- Data: 4 bytes, little-endian float / uint32 / raw bytes depending on OpCode
- CRC16: CRC-16/XMODEM over Start+OpCode+Data
"""

from dataclasses import dataclass
from enum import Enum, IntEnum, auto
from typing import Optional, Type, Union
import logging
import struct


logger = logging.getLogger(__name__)


class Opcode(IntEnum):
    """Device command opcodes."""

    HEART_BEAT = 0x00

    # Readings
    GET_TEC_TEMPERATURE = 0x01
    GET_HUMIDITY = 0x02
    GET_DEW_POINT = 0x03
    GET_SET_POINT_OFFSET = 0x04
    GET_P_COEFFICIENT = 0x05
    GET_I_COEFFICIENT = 0x06
    GET_D_COEFFICIENT = 0x07
    GET_TEC_POWER_LEVEL = 0x08
    GET_HW_VERSION = 0x09
    GET_FW_VERSION = 0x0A
    GET_NTC_COEFFICIENT = 0x1B
    GET_BOARD_TEMP = 0x1F
    GET_VOLTAGE_AND_CURRENT = 0x22
    GET_TEC_VOLTAGE = 0x23
    GET_TEC_CURRENT = 0x24

    # Settings
    SET_POINT_OFFSET = 0x14
    SET_P_COEFFICIENT = 0x15
    SET_I_COEFFICIENT = 0x16
    SET_D_COEFFICIENT = 0x17
    SET_DISABLE_NOT_ENABLE = 0x18
    SET_CPU_TEMP = 0x19
    SET_TEMP_SENSOR = 0x1C
    SET_TEC_POWER_LEVEL = 0x1D
    SET_RESET_BOARD = 0x1E
    SET_NTC_COEFFICIENT = 0x20


class ProtocolError(Exception):
    """Protocol-related errors."""
    pass


class ChecksumError(ProtocolError):
    """Frame failed CRC validation."""
    pass


# Protocol constants
FRAME_START_BYTE = 0xAA
FRAME_SIZE = 8
FRAME_DATA_SIZE = 4
FRAME_CRC_SIZE = 2
RESPONSE_OPCODE_OFFSET = 0x7F
DEFAULT_MAX_BUFFER = 256

FRAME_FORMAT = "<BB4sH"


def crc16_xmodem(data: bytes, initial: int = 0x0000) -> int:
    """
    Calculate CRC-16/XMODEM checksum.

    Args:
        data: Data bytes to calculate CRC over
        initial: Initial CRC value (default 0x0000)

    Returns:
        16-bit CRC value
    """
    crc = initial
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = (crc << 1) ^ 0x1021
            else:
                crc <<= 1
            crc &= 0xFFFF
    return crc


def _normalize_payload(payload: bytes) -> bytes:
    payload = bytes(payload)
    if len(payload) > FRAME_DATA_SIZE:
        raise ProtocolError(f"Payload size {len(payload)} exceeds {FRAME_DATA_SIZE} bytes")
    return payload.ljust(FRAME_DATA_SIZE, b"\x00")


@dataclass(frozen=True)
class CommandFrame:
    """Host -> device frame. Immutable once built."""

    opcode: int
    payload: bytes = b"\x00\x00\x00\x00"

    def __post_init__(self):
        if not 0 <= int(self.opcode) <= 0xFF:
            raise ProtocolError(f"Opcode out of range: {self.opcode}")
        object.__setattr__(self, "payload", _normalize_payload(self.payload))

    @property
    def checksum(self) -> int:
        return crc16_xmodem(bytes([FRAME_START_BYTE, int(self.opcode)]) + self.payload)

    def __repr__(self) -> str:
        return f"CommandFrame(opcode=0x{int(self.opcode):02X}, payload={self.payload.hex(' ')})"


@dataclass(frozen=True)
class AckFrame:
    """Device -> host response frame."""

    opcode: int
    payload: bytes = b"\x00\x00\x00\x00"

    def __post_init__(self):
        if not 0 <= int(self.opcode) <= 0xFF:
            raise ProtocolError(f"Opcode out of range: {self.opcode}")
        object.__setattr__(self, "payload", _normalize_payload(self.payload))

    @property
    def checksum(self) -> int:
        return crc16_xmodem(bytes([FRAME_START_BYTE, int(self.opcode)]) + self.payload)

    @property
    def request_opcode(self) -> int:
        """Opcode of the request this frame answers."""
        return (int(self.opcode) - RESPONSE_OPCODE_OFFSET) & 0xFF

    def answers(self, request: CommandFrame) -> bool:
        """Check whether this response belongs to the given request."""
        return self.request_opcode == int(request.opcode)

    def __repr__(self) -> str:
        return f"AckFrame(opcode=0x{int(self.opcode):02X}, payload={self.payload.hex(' ')})"


Frame = Union[CommandFrame, AckFrame]


def response_opcode(request_opcode: int) -> int:
    """Get the opcode a device uses to answer a request."""
    return (int(request_opcode) + RESPONSE_OPCODE_OFFSET) & 0xFF


def encode_frame(frame: Frame) -> bytes:
    """
    Encode a protocol frame to bytes.

    Args:
        frame: CommandFrame or AckFrame to encode

    Returns:
        Encoded 8-byte frame
    """
    return struct.pack(FRAME_FORMAT, FRAME_START_BYTE, int(frame.opcode), frame.payload, frame.checksum)


def decode_frame(data: bytes, frame_type: Type = AckFrame) -> tuple[Optional[Frame], int]:
    """
    Decode a protocol frame from bytes.

    Args:
        data: Input bytes buffer
        frame_type: Frame class to build (AckFrame for device responses,
            CommandFrame for requests seen by a device)

    Returns:
        Tuple of (decoded frame or None, bytes consumed)
        If frame is None, bytes_consumed indicates how many bytes to skip,
        zero means more data is needed

    Raises:
        ChecksumError: If the frame CRC does not match
    """
    # Find start byte
    start_idx = 0
    while start_idx < len(data) and data[start_idx] != FRAME_START_BYTE:
        start_idx += 1

    if start_idx > 0:
        return None, start_idx

    if len(data) < FRAME_SIZE:
        return None, 0

    _, opcode, payload, received_crc = struct.unpack(FRAME_FORMAT, bytes(data[:FRAME_SIZE]))
    calculated_crc = crc16_xmodem(bytes(data[:FRAME_SIZE - FRAME_CRC_SIZE]))

    if received_crc != calculated_crc:
        raise ChecksumError(f"CRC mismatch: received 0x{received_crc:04X}, calculated 0x{calculated_crc:04X}")

    return frame_type(opcode=opcode, payload=payload), FRAME_SIZE


class DecodeStatus(Enum):
    """Outcome of a FrameCodec.decode call."""
    FRAME = auto()
    NEED_MORE_DATA = auto()
    CORRUPT_FRAME = auto()


@dataclass
class DecodeResult:
    """Result of a FrameCodec.decode call."""
    status: DecodeStatus
    frame: Optional[Frame] = None
    consumed: int = 0

    @property
    def is_frame(self) -> bool:
        return self.status == DecodeStatus.FRAME

    @property
    def is_corrupt(self) -> bool:
        return self.status == DecodeStatus.CORRUPT_FRAME


@dataclass
class CodecStats:
    """Counters kept by a FrameCodec."""
    frames_decoded: int = 0
    corrupt_frames: int = 0
    overflows: int = 0
    bytes_discarded: int = 0


class FrameCodec:
    """
    Stream codec with a partial receive buffer.

    Bytes from the transport are fed in; complete frames come out one per
    decode() call. Corrupt frames are reported and skipped by resyncing on
    the next start byte, the codec never raises on bad input.
    """

    def __init__(self, frame_type: Type = AckFrame, max_buffer_size: int = DEFAULT_MAX_BUFFER):
        if max_buffer_size < FRAME_SIZE:
            raise ValueError(f"max_buffer_size must be at least {FRAME_SIZE}")
        self._frame_type = frame_type
        self._max_buffer_size = max_buffer_size
        self._rx_buffer = bytearray()
        self._overflowed = False
        self.stats = CodecStats()

    @property
    def buffered(self) -> int:
        """Number of bytes waiting in the partial buffer."""
        return len(self._rx_buffer)

    @staticmethod
    def encode(frame: Frame) -> bytes:
        return encode_frame(frame)

    def feed(self, data: bytes) -> None:
        """Append received bytes to the partial buffer."""
        if not data:
            return
        self._rx_buffer.extend(data)
        if len(self._rx_buffer) > self._max_buffer_size:
            logger.warning(f"Receive buffer overflow ({len(self._rx_buffer)} bytes), flushing")
            self.stats.overflows += 1
            self.stats.bytes_discarded += len(self._rx_buffer)
            self._rx_buffer.clear()
            self._overflowed = True

    def decode(self, data: bytes = b"") -> DecodeResult:
        """
        Decode the next frame from the buffer.

        Args:
            data: Optional new bytes to feed before decoding

        Returns:
            DecodeResult with FRAME, NEED_MORE_DATA or CORRUPT_FRAME status
        """
        self.feed(data)

        if self._overflowed:
            self._overflowed = False
            self.stats.corrupt_frames += 1
            return DecodeResult(DecodeStatus.CORRUPT_FRAME)

        while True:
            try:
                frame, consumed = decode_frame(self._rx_buffer, self._frame_type)
            except ChecksumError as e:
                skip = self._next_start_index()
                logger.warning(f"{e}, discarding {skip} bytes to resync")
                del self._rx_buffer[:skip]
                self.stats.corrupt_frames += 1
                self.stats.bytes_discarded += skip
                return DecodeResult(DecodeStatus.CORRUPT_FRAME, consumed=skip)

            if frame is not None:
                del self._rx_buffer[:consumed]
                self.stats.frames_decoded += 1
                logger.debug(f"Decoded {frame!r}")
                return DecodeResult(DecodeStatus.FRAME, frame=frame, consumed=consumed)

            if consumed == 0:
                return DecodeResult(DecodeStatus.NEED_MORE_DATA)

            # Noise before a start byte
            logger.debug(f"Skipping {consumed} bytes before start byte")
            del self._rx_buffer[:consumed]
            self.stats.bytes_discarded += consumed

    def reset(self) -> None:
        """Flush the partial buffer."""
        self.stats.bytes_discarded += len(self._rx_buffer)
        self._rx_buffer.clear()
        self._overflowed = False

    def _next_start_index(self) -> int:
        try:
            return self._rx_buffer.index(FRAME_START_BYTE, 1)
        except ValueError:
            return len(self._rx_buffer)


class FrameBuilder:
    """Helper class to build command frames."""

    @staticmethod
    def heart_beat() -> CommandFrame:
        """Create a HEART_BEAT frame (also used as identify)."""
        return CommandFrame(Opcode.HEART_BEAT)

    @staticmethod
    def read(opcode: Opcode) -> CommandFrame:
        """Create a read request with an empty data field."""
        return CommandFrame(opcode)

    @staticmethod
    def reset_board() -> CommandFrame:
        return CommandFrame(Opcode.SET_RESET_BOARD)

    @staticmethod
    def set_float(opcode: Opcode, value: float) -> CommandFrame:
        """Create a setter frame carrying a little-endian float."""
        return CommandFrame(opcode, struct.pack("<f", value))

    @staticmethod
    def set_setpoint_offset(offset_c: float) -> CommandFrame:
        return FrameBuilder.set_float(Opcode.SET_POINT_OFFSET, offset_c)

    @staticmethod
    def set_pid(kp: float, ki: float, kd: float) -> list[CommandFrame]:
        """Create the three coefficient frames, in P, I, D order."""
        return [
            FrameBuilder.set_float(Opcode.SET_P_COEFFICIENT, kp),
            FrameBuilder.set_float(Opcode.SET_I_COEFFICIENT, ki),
            FrameBuilder.set_float(Opcode.SET_D_COEFFICIENT, kd),
        ]

    @staticmethod
    def set_power_level(level: int) -> CommandFrame:
        """
        Create a TEC power level frame.

        Args:
            level: Power level in percent (0-100), carried in the first data byte
        """
        if not 0 <= level <= 100:
            raise ProtocolError(f"Power level out of range: {level}")
        return CommandFrame(Opcode.SET_TEC_POWER_LEVEL, bytes([level, 0, 0, 0]))

    @staticmethod
    def enable() -> CommandFrame:
        return CommandFrame(Opcode.SET_DISABLE_NOT_ENABLE, b"\x00\x00\x00\x00")

    @staticmethod
    def disable() -> CommandFrame:
        return CommandFrame(Opcode.SET_DISABLE_NOT_ENABLE, b"\x01\x00\x00\x00")


# Raw ADC to physical unit divisors used by the device firmware
TEC_VOLTAGE_DIVISOR = 21.1
TEC_CURRENT_DIVISOR = 4.6545


class FrameParser:
    """Helper class to parse response payloads."""

    @staticmethod
    def parse_float(frame: AckFrame) -> float:
        return struct.unpack("<f", frame.payload)[0]

    @staticmethod
    def parse_u32(frame: AckFrame) -> int:
        return struct.unpack("<I", frame.payload)[0]

    @staticmethod
    def parse_status(frame: AckFrame) -> int:
        """Parse HEART_BEAT response into the raw status word."""
        return FrameParser.parse_u32(frame)

    @staticmethod
    def parse_fw_version(frame: AckFrame) -> tuple[int, int, int, int]:
        return tuple(frame.payload[:4])

    @staticmethod
    def parse_tec_voltage(frame: AckFrame) -> float:
        """TEC voltage in volts."""
        return FrameParser.parse_u32(frame) / TEC_VOLTAGE_DIVISOR

    @staticmethod
    def parse_tec_current(frame: AckFrame) -> float:
        """TEC current in amps."""
        return FrameParser.parse_u32(frame) / TEC_CURRENT_DIVISOR

    @staticmethod
    def parse_power_level(frame: AckFrame) -> int:
        return frame.payload[0]
