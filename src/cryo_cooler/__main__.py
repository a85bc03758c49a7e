"""
Headless runner for the cryo cooler controller.

Usage:
    python -m cryo_cooler --list-ports
    python -m cryo_cooler --port /dev/ttyACM0 --offset 2.0
    python -m cryo_cooler --simulate --duration 30 --verbose

Options:
    --port PORT         Serial port of the TEC controller board
    --simulate          Use the built-in board simulator instead of a port
    --offset C          Target coolant offset above dew point (enables the TEC)
    --kp/--ki/--kd      PID coefficients
    --max-power PCT     TEC power ceiling in percent
    --config FILE       Session configuration JSON
    --duration S        Stop after S seconds (default: run until Ctrl-C)
    --list-ports        List serial ports and exit
    --verbose           Debug logging
"""

import argparse
import logging
import sys
import time
from typing import Optional

from . import __version__
from .communication.device_simulator import SimulatedTransport
from .communication.serial_transport import list_ports
from .controllers.control_loop import (
    ControlTarget, DEFAULT_KD, DEFAULT_KI, DEFAULT_KP, DEFAULT_MAX_POWER_PCT,
)
from .controllers.device_session import SessionError
from .controllers.session_state import SessionState
from .controllers.tec_controller import TecController
from .models.session_config import SessionConfig
from .utils.logger import setup_logger

logger = logging.getLogger(__name__)


EXIT_OK = 0
EXIT_CONNECT_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_FAULT = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cryo_cooler",
        description="Dew-point relative TEC cooler controller",
    )
    parser.add_argument("--port", help="Serial port of the TEC controller board")
    parser.add_argument("--simulate", action="store_true", help="Use the built-in board simulator")
    parser.add_argument("--offset", type=float, default=None,
                        help="Coolant offset above dew point in C; enables the TEC")
    parser.add_argument("--kp", type=float, default=DEFAULT_KP)
    parser.add_argument("--ki", type=float, default=DEFAULT_KI)
    parser.add_argument("--kd", type=float, default=DEFAULT_KD)
    parser.add_argument("--max-power", type=float, default=DEFAULT_MAX_POWER_PCT,
                        help="TEC power ceiling in percent")
    parser.add_argument("--config", help="Session configuration JSON file")
    parser.add_argument("--duration", type=float, default=None, help="Run time in seconds")
    parser.add_argument("--list-ports", action="store_true", help="List serial ports and exit")
    parser.add_argument("--log-dir", default=None, help="Log directory (default: ~/.cryo_cooler/logs)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def format_frame(frame) -> str:
    return (f"coolant {frame.coolant_temp_c:6.2f}C  dew {frame.dew_point_c:6.2f}C  "
            f"ambient {frame.ambient_temp_c:6.2f}C  RH {frame.relative_humidity_pct:5.1f}%  "
            f"TEC {frame.tec_power_pct:3d}% {frame.tec_voltage_v:5.2f}V {frame.tec_current_a:5.2f}A"
            f"{'  OCP' if frame.ocp_flag else ''}")


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logger(log_level=logging.DEBUG if args.verbose else logging.INFO, log_dir=args.log_dir)

    if args.list_ports:
        for info in list_ports():
            print(f"{info.port}\t{info.description}")
        return EXIT_OK

    config = SessionConfig()
    if args.config:
        config, error = SessionConfig.load_from_file(args.config)
        if config is None:
            print(f"Error: {error}", file=sys.stderr)
            return EXIT_CONFIG_ERROR

    target = None
    if args.offset is not None:
        try:
            target = ControlTarget(
                offset_from_dew_point_c=args.offset,
                pid_kp=args.kp,
                pid_ki=args.ki,
                pid_kd=args.kd,
                max_power_pct=args.max_power,
            )
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_CONFIG_ERROR

    if args.simulate:
        port = args.port or "SIM0"
        controller = TecController(config, transport_factory=SimulatedTransport)
    elif args.port:
        port = args.port
        controller = TecController(config)
    else:
        print("Error: --port or --simulate is required", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    with controller:
        try:
            handle = controller.connect(port)
        except SessionError as e:
            print(f"Connect failed: {e}", file=sys.stderr)
            return EXIT_CONNECT_FAILED

        info = controller.device_info(handle)
        print(f"Connected to {port} (firmware {info.firmware_string}, hardware {info.hardware_version})")

        if target is not None:
            try:
                controller.enable(handle, target)
            except SessionError as e:
                print(f"Enable failed: {e}", file=sys.stderr)
                return EXIT_FAULT

        subscription = controller.subscribe_telemetry(handle)
        stop_at = None if args.duration is None else time.monotonic() + args.duration
        try:
            while stop_at is None or time.monotonic() < stop_at:
                frame = subscription.wait(timeout=1.0)
                state = controller.current_state(handle)
                if frame is not None:
                    print(f"[{state.name:>9}] {format_frame(frame)}")
                if state == SessionState.FAULT:
                    print(f"Fault: {controller.fault_record(handle)}", file=sys.stderr)
                    return EXIT_FAULT
        except KeyboardInterrupt:
            print("Interrupted, shutting down")

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
