"""
Cryo Cooler USB Serial Transport Implementation

This module implements the serial transport for the cooler's TEC controller
board. It uses pyserial with blocking reads bounded by per-call timeouts.
"""

from typing import Optional
import logging
import threading

import serial
import serial.tools.list_ports

from .transport_base import (
    TransportBase,
    TransportInfo,
    TransportState,
    OpenError,
    TransportTimeoutError,
    TransportClosedError,
)


logger = logging.getLogger(__name__)


# Default serial settings (fixed by the device firmware)
DEFAULT_BAUDRATE = 115200
DEFAULT_WRITE_TIMEOUT = 1.0


def list_ports() -> list[TransportInfo]:
    """
    List available serial ports.

    Returns:
        List of TransportInfo for each available port, sorted by port name
    """
    ports = []
    for port in serial.tools.list_ports.comports():
        ports.append(TransportInfo(
            port=port.device,
            description=port.description or "",
            hardware_id=port.hwid or "",
            manufacturer=port.manufacturer or "",
        ))

    ports.sort(key=lambda p: p.port)
    logger.debug(f"Found {len(ports)} serial ports")
    return ports


class SerialTransport(TransportBase):
    """USB serial transport to the TEC controller."""

    def __init__(self, baudrate: int = DEFAULT_BAUDRATE, write_timeout: float = DEFAULT_WRITE_TIMEOUT):
        super().__init__()
        self.baudrate = baudrate
        self.write_timeout = write_timeout
        self._serial: Optional[serial.Serial] = None
        self._port_info: Optional[TransportInfo] = None
        self._lock = threading.Lock()

    def open(self, port: str) -> None:
        """
        Open the serial port at 115200 8N1 without flow control.

        Raises:
            OpenError: If the port does not exist or is in use
        """
        if self.is_open:
            self.close()

        # Accept "COMx - description" as shown by port pickers
        port_name = port.split(" - ")[0] if " - " in port else port

        try:
            self._serial = serial.Serial(
                port=port_name,
                baudrate=self.baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                xonxoff=False,
                rtscts=False,
                timeout=0,
                write_timeout=self.write_timeout,
            )
        except (serial.SerialException, OSError, ValueError) as e:
            self._serial = None
            self._set_state(TransportState.ERROR)
            raise OpenError(f"Failed to open {port_name}: {e}") from e

        self._port_info = TransportInfo(port=port_name, description="")
        self._set_state(TransportState.OPEN)
        logger.info(f"Serial port opened: {port_name} @ {self.baudrate}")

    def close(self) -> None:
        """Close the serial port."""
        with self._lock:
            if self._serial is not None:
                try:
                    self._serial.close()
                except (serial.SerialException, OSError) as e:
                    logger.warning(f"Error closing serial port: {e}")
                self._serial = None
                logger.info("Serial port closed")
            self._port_info = None
            self._set_state(TransportState.CLOSED)

    def write(self, data: bytes) -> None:
        with self._lock:
            if not self.is_open or self._serial is None:
                raise TransportClosedError("Serial port not open")
            try:
                self._serial.write(data)
                self._serial.flush()
            except (serial.SerialException, OSError) as e:
                self._mark_lost()
                raise TransportClosedError(f"Serial write failed: {e}") from e
        logger.debug(f"TX {data.hex(' ')}")

    def read(self, timeout: float) -> bytes:
        with self._lock:
            if not self.is_open or self._serial is None:
                raise TransportClosedError("Serial port not open")
            try:
                self._serial.timeout = max(0.0, timeout)
                data = self._serial.read(1)
                if data:
                    waiting = self._serial.in_waiting
                    if waiting:
                        data += self._serial.read(waiting)
            except (serial.SerialException, OSError) as e:
                self._mark_lost()
                raise TransportClosedError(f"Serial read failed: {e}") from e

        if not data:
            raise TransportTimeoutError(f"No data within {timeout:.3f}s")
        logger.debug(f"RX {data.hex(' ')}")
        return data

    def discard_input(self) -> None:
        with self._lock:
            if self._serial is not None and self.is_open:
                try:
                    self._serial.reset_input_buffer()
                except (serial.SerialException, OSError) as e:
                    logger.warning(f"Failed to flush input buffer: {e}")

    def get_port_info(self) -> Optional[TransportInfo]:
        return self._port_info

    def _mark_lost(self) -> None:
        logger.error("Serial connection lost")
        try:
            if self._serial is not None:
                self._serial.close()
        except (serial.SerialException, OSError):
            logger.debug("Ignoring close error on lost port")
        self._serial = None
        self._set_state(TransportState.ERROR)
