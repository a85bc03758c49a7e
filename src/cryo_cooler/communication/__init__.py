"""
Cryo Cooler Communication Package

This package provides the byte-level link between the host and the TEC
controller board.

Modules:
    protocol: 8-byte frame codec, opcodes, command builders and payload parsers
    transport_base: Abstract transport interface and transport errors
    serial_transport: USB serial transport implementation
    telemetry: Status flags and telemetry data structures
    device_simulator: In-process board simulator for hardware-free runs

Example usage:
    from cryo_cooler.communication import SerialTransport, FrameCodec, FrameBuilder

    transport = SerialTransport()
    transport.open("/dev/ttyACM0")
    transport.write(FrameCodec.encode(FrameBuilder.heart_beat()))
"""

from .protocol import (
    Opcode,
    CommandFrame,
    AckFrame,
    FrameCodec,
    FrameBuilder,
    FrameParser,
    DecodeStatus,
    DecodeResult,
    ProtocolError,
    ChecksumError,
    encode_frame,
    decode_frame,
    crc16_xmodem,
)
from .transport_base import (
    TransportBase,
    TransportInfo,
    TransportError,
    OpenError,
    TransportTimeoutError,
    TransportClosedError,
)
from .serial_transport import SerialTransport, list_ports
from .telemetry import TecStatus, TelemetryFrame, DeviceInfo
from .device_simulator import DeviceSimulator, SimulatedTransport, SimulatorState

__all__ = [
    # Protocol
    "Opcode",
    "CommandFrame",
    "AckFrame",
    "FrameCodec",
    "FrameBuilder",
    "FrameParser",
    "DecodeStatus",
    "DecodeResult",
    "ProtocolError",
    "ChecksumError",
    "encode_frame",
    "decode_frame",
    "crc16_xmodem",
    # Transport
    "TransportBase",
    "TransportInfo",
    "TransportError",
    "OpenError",
    "TransportTimeoutError",
    "TransportClosedError",
    "SerialTransport",
    "list_ports",
    # Telemetry
    "TecStatus",
    "TelemetryFrame",
    "DeviceInfo",
    # Simulator
    "DeviceSimulator",
    "SimulatedTransport",
    "SimulatorState",
]
