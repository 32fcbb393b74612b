"""
MIDI message normalization and 14-bit Control Change reconstruction.

The 14-bit CC convention pairs controller C (0-31, MSB) with controller
C + 32 (LSB). HighResolutionPairing holds the pending MSB per
(channel, controller) and combines it with the LSB when it arrives within
the pairing window. Each connected MIDI device owns its own MIDINormalizer,
so pairing state is never shared between devices.
"""

from typing import Any, Callable, Optional

import mido

from deckbridge.events import EventType, HardwareEvent
from deckbridge.logging_config import get_logger
from deckbridge.utils import now_ms

logger = get_logger(__name__)

DEFAULT_PAIRING_WINDOW_MS = 50.0
MAX_14BIT = 16383
PITCH_CENTER = 8192

# Raw driver type names (mido) to canonical event types
_RAW_TYPES: dict[str, EventType] = {
    "note_on": EventType.NOTE_ON,
    "noteon": EventType.NOTE_ON,
    "note_off": EventType.NOTE_OFF,
    "noteoff": EventType.NOTE_OFF,
    "control_change": EventType.CC,
    "cc": EventType.CC,
    "pitchwheel": EventType.PITCH,
    "pitch": EventType.PITCH,
    "program_change": EventType.PROGRAM,
    "program": EventType.PROGRAM,
}


def is_msb_controller(controller: int) -> bool:
    """Controllers 0-31 carry the MSB of a 14-bit value."""
    return 0 <= controller < 32


def is_lsb_controller(controller: int) -> bool:
    """Controllers 32-63 carry the LSB of controller - 32."""
    return 32 <= controller < 64


def normalize(
    device_id: str,
    raw_type: str,
    raw_fields: dict[str, Any],
    timestamp: Optional[float] = None,
) -> Optional[HardwareEvent]:
    """
    Convert a raw MIDI message description into a canonical event.

    Missing fields are simply left unset on the event.

    Args:
        device_id: Owning device id
        raw_type: Driver type name ("note_on", "control_change", ...) or canonical name
        raw_fields: Message fields (channel, note, velocity, control, value, pitch, program)
        timestamp: Epoch milliseconds (defaults to now)

    Returns:
        HardwareEvent, or None for message types the bridge does not handle
        (sysex, clock, aftertouch, ...)
    """
    event_type = _RAW_TYPES.get(raw_type)
    if event_type is None:
        return None

    fields: dict[str, Any] = {
        "device_id": device_id,
        "type": event_type,
        "timestamp": now_ms() if timestamp is None else timestamp,
        "channel": raw_fields.get("channel"),
    }

    if event_type in (EventType.NOTE_ON, EventType.NOTE_OFF):
        velocity = raw_fields.get("velocity")
        fields.update(note=raw_fields.get("note"), velocity=velocity, value=velocity)

    elif event_type == EventType.CC:
        controller = raw_fields.get("control", raw_fields.get("controller"))
        fields.update(controller=controller, value=raw_fields.get("value"))

    elif event_type == EventType.PITCH:
        if "pitch" in raw_fields:
            value = raw_fields["pitch"] + PITCH_CENTER
        else:
            value = raw_fields.get("value")
        if value is not None:
            fields.update(
                value=value,
                value_14bit=value,
                max_value=MAX_14BIT,
                normalized=value / MAX_14BIT,
                high_res=True,
            )

    elif event_type == EventType.PROGRAM:
        program = raw_fields.get("program", raw_fields.get("value"))
        fields.update(program=program, value=program)

    return HardwareEvent(**fields)


class HighResolutionPairing:
    """
    Pending-MSB table for one device.

    At most one pending entry exists per (channel, MSB controller); a second
    MSB before the LSB replaces the first. Entries older than the window are
    swept on every call.
    """

    def __init__(self, window_ms: float = DEFAULT_PAIRING_WINDOW_MS):
        self.window_ms = window_ms
        # (channel, msb controller) -> (msb value, timestamp)
        self._pending: dict[tuple[int, int], tuple[int, float]] = {}

    @property
    def pending(self) -> dict[tuple[int, int], tuple[int, float]]:
        """Snapshot of pending MSB entries."""
        return dict(self._pending)

    def process(self, event: HardwareEvent) -> Optional[HardwareEvent]:
        """
        Feed one CC event through the pairing table.

        Args:
            event: Normalized CC event

        Returns:
            Combined high-resolution event if this LSB completes a pair,
            otherwise None (the event is forwarded as-is by the caller)
        """
        self._sweep(event.timestamp)

        if event.type != EventType.CC or event.controller is None or event.value is None:
            return None

        channel = event.channel or 0

        if is_msb_controller(event.controller):
            self._pending[(channel, event.controller)] = (event.value, event.timestamp)
            return None

        if not is_lsb_controller(event.controller):
            return None

        msb_controller = event.controller - 32
        pending = self._pending.pop((channel, msb_controller), None)
        if pending is None:
            return None

        msb_value, msb_timestamp = pending
        if event.timestamp - msb_timestamp > self.window_ms:
            return None

        combined = msb_value * 128 + event.value
        return HardwareEvent(
            device_id=event.device_id,
            type=EventType.CC,
            timestamp=event.timestamp,
            channel=event.channel,
            controller=msb_controller,
            value=combined,
            value_14bit=combined,
            max_value=MAX_14BIT,
            normalized=combined / MAX_14BIT,
            high_res=True,
            msb=msb_value,
            lsb=event.value,
            lsb_controller=event.controller,
        )

    def clear(self) -> None:
        self._pending.clear()

    def _sweep(self, now: float) -> None:
        expired = [key for key, (_, ts) in self._pending.items() if now - ts > self.window_ms]
        for key in expired:
            del self._pending[key]


class MIDINormalizer:
    """
    Per-device MIDI input path: mido message -> canonical events.

    Timestamps are taken from the injected clock and forced to be
    non-decreasing for this device.
    """

    def __init__(
        self,
        device_id: str,
        window_ms: float = DEFAULT_PAIRING_WINDOW_MS,
        clock: Callable[[], float] = now_ms,
    ):
        """
        Args:
            device_id: Owning device id
            window_ms: 14-bit pairing window in milliseconds
            clock: Returns epoch milliseconds
        """
        self.device_id = device_id
        self.pairing = HighResolutionPairing(window_ms)
        self._clock = clock
        self._last_timestamp = 0.0

    def _next_timestamp(self) -> float:
        self._last_timestamp = max(self._last_timestamp, self._clock())
        return self._last_timestamp

    def process(self, msg: mido.Message) -> list[HardwareEvent]:
        """
        Normalize one message.

        Every CC is forwarded as a 7-bit event, except an LSB that completes
        an MSB/LSB pair, which is replaced by the combined event.

        Args:
            msg: Incoming mido message

        Returns:
            Events in emission order (empty for unsupported message types)
        """
        event = normalize(self.device_id, msg.type, msg.dict(), self._next_timestamp())
        if event is None:
            logger.debug(f"[{self.device_id}] Ignoring unsupported MIDI message: {msg.type}")
            return []

        if event.type != EventType.CC:
            return [event]

        combined = self.pairing.process(event)
        return [event if combined is None else combined]
