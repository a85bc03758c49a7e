"""
Telemetry Bus

Latest-value-wins fan-out of telemetry frames. The control thread publishes
an immutable snapshot each tick; subscribers read whatever snapshot is
current and never see a backlog. Publishing never waits on a subscriber.
"""

import logging
import threading
import time
from typing import Iterator, Optional

from ..communication.telemetry import TelemetryFrame

logger = logging.getLogger(__name__)


class Subscription:
    """Handle returned by TelemetryBus.subscribe()."""

    def __init__(self, bus: "TelemetryBus"):
        self._bus = bus
        self._event = threading.Event()
        self._seen = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def latest(self) -> Optional[TelemetryFrame]:
        return self._bus.latest()

    def wait(self, timeout: Optional[float] = None) -> Optional[TelemetryFrame]:
        """
        Wait for a frame this subscription has not returned yet.

        Args:
            timeout: Seconds to wait, None to wait until a frame or close

        Returns:
            The newest unseen frame, or None on timeout or close
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._closed:
            seq, frame = self._bus._snapshot
            if seq > self._seen:
                self._seen = seq
                return frame
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
            self._event.wait(remaining)
            self._event.clear()
        return None

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def _notify(self) -> None:
        self._event.set()

    def _mark_closed(self) -> None:
        self._closed = True
        self._event.set()

    def __iter__(self) -> Iterator[TelemetryFrame]:
        while True:
            frame = self.wait()
            if frame is None:
                return
            yield frame

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class TelemetryBus:
    """Publishes the latest TelemetryFrame to any number of subscribers."""

    def __init__(self):
        # (sequence, frame) swapped as one reference so readers never tear
        self._snapshot: tuple = (0, None)
        self._subscriptions: set[Subscription] = set()
        self._lock = threading.Lock()

    def publish(self, frame: TelemetryFrame) -> None:
        seq = self._snapshot[0] + 1
        self._snapshot = (seq, frame)
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription._notify()

    def latest(self) -> Optional[TelemetryFrame]:
        return self._snapshot[1]

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        with self._lock:
            self._subscriptions.add(subscription)
        logger.debug(f"Telemetry subscriber added ({len(self._subscriptions)} total)")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.discard(subscription)
        subscription._mark_closed()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def close(self) -> None:
        """Unsubscribe everyone; blocked wait() calls return None."""
        with self._lock:
            subscriptions = list(self._subscriptions)
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription._mark_closed()
