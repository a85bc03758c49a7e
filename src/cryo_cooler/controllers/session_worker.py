"""
Session Worker

The single control thread of a device session. It owns the transport, the
codec buffer, the DeviceSession, the PID state and the safety counters; no
other thread touches them.

Tick order:
    1. poll telemetry
    2. publish the frame to the TelemetryBus
    3. drain caller commands (connect / enable / disable / disconnect)
    4. compute and send the power setpoint

Commands therefore always take effect before the next setpoint computed
after they were issued.
"""

import logging
import queue
import threading
import time
from concurrent.futures import Future
from typing import Any, Optional

from .device_session import DeviceSession, SessionError
from .telemetry_bus import TelemetryBus

logger = logging.getLogger(__name__)


COMMANDS = frozenset({"connect", "enable", "disable", "disconnect"})


class SessionWorker:
    """Runs a DeviceSession on a dedicated daemon thread."""

    def __init__(self, session: DeviceSession, bus: TelemetryBus,
                 tick_interval: Optional[float] = None, name: str = "cryo-session"):
        self.session = session
        self.bus = bus
        self.tick_interval = tick_interval if tick_interval is not None else session.config.tick_interval
        self.name = name

        self._commands: queue.Queue = queue.Queue()
        self._accepting = False
        self._submit_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.ticks = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Session worker already started")
        self._accepting = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.debug(f"Control thread {self.name} started")

    def submit(self, command: str, *args: Any) -> Future:
        """
        Queue a session command for the next tick.

        Returns:
            Future resolved with the command's result, or with its exception
        """
        if command not in COMMANDS:
            raise ValueError(f"Unknown session command: {command}")

        future: Future = Future()
        with self._submit_lock:
            if not self._accepting:
                future.set_exception(SessionError("Session worker is not running"))
                return future
            self._commands.put((command, args, future))
        self._wake.set()
        return future

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop the control thread.

        The thread disables and disconnects the session on its way out. The
        transport is closed here as well if the thread does not finish in time.
        """
        timeout = timeout if timeout is not None else self.session.config.shutdown_timeout
        self._stop_event.set()
        self._wake.set()

        thread = self._thread
        if thread is None:
            self.session.close_transport()
            return
        if thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.error(f"Control thread {self.name} did not stop within {timeout:.1f}s, "
                             f"closing transport")
                self.session.close_transport()

    def _run(self) -> None:
        deadline = time.monotonic()
        try:
            while not self._stop_event.is_set():
                self._tick()
                self.ticks += 1

                deadline += self.tick_interval
                delay = deadline - time.monotonic()
                if delay < 0:
                    logger.warning(f"Tick overran by {-delay:.3f}s")
                    deadline = time.monotonic()
                    delay = 0
                if self._wake.wait(delay):
                    self._wake.clear()
                    deadline = time.monotonic()
        except Exception:
            logger.exception("Unexpected error in control thread, shutting session down")
        finally:
            self._shutdown()

    def _tick(self) -> None:
        frame = self.session.poll()
        if frame is not None:
            self.bus.publish(frame)
        self._drain_commands()
        self.session.regulate()

    def _drain_commands(self) -> None:
        while True:
            try:
                command, args, future = self._commands.get_nowait()
            except queue.Empty:
                return
            if not future.set_running_or_notify_cancel():
                continue
            logger.debug(f"Running command {command}{args}")
            try:
                result = getattr(self.session, command)(*args)
            except SessionError as e:
                future.set_exception(e)
            except Exception as e:
                future.set_exception(e)
                raise
            else:
                future.set_result(result)

    def _shutdown(self) -> None:
        with self._submit_lock:
            self._accepting = False

        try:
            self.session.disconnect()
        except Exception:
            logger.exception("Error during session shutdown")
        finally:
            self.session.close_transport()

        while True:
            try:
                _, _, future = self._commands.get_nowait()
            except queue.Empty:
                break
            if future.set_running_or_notify_cancel():
                future.set_exception(SessionError("Session worker stopped"))
        logger.debug(f"Control thread {self.name} stopped")
