"""
Shared plumbing for the device adapters: the inbound event channel and
the hardware fault exception.

MIDI input threads and HID poll threads publish canonical events here; one
server thread consumes them. Publishing never blocks a device thread: on
overflow the event is dropped and counted.
"""

import queue
import threading
from typing import Optional

from deckbridge.events import HardwareEvent
from deckbridge.logging_config import get_logger

logger = get_logger(__name__)


class DeviceError(IOError):
    """Raised when a MIDI or HID device cannot be opened, read or written."""

    pass


class InboundChannel:
    """Bounded multi-producer, single-consumer event queue."""

    def __init__(self, maxsize: int = 4096):
        self._queue: queue.Queue[HardwareEvent] = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self._published = 0
        self._dropped = 0

    def publish(self, event: HardwareEvent) -> bool:
        """
        Enqueue an event without blocking.

        Returns:
            False if the channel was full and the event was dropped
        """
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            with self._lock:
                self._dropped += 1
                dropped = self._dropped
            if dropped % 100 == 1:
                logger.warning(f"Inbound channel full, dropped {dropped} events so far")
            return False

        with self._lock:
            self._published += 1
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[HardwareEvent]:
        """Next event, or None after timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[HardwareEvent]:
        """Remove and return everything currently queued."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "published": self._published,
                "dropped": self._dropped,
                "queued": self._queue.qsize(),
            }
