"""
Canonical hardware event and output models.

Every input adapter (MIDI normalizer, HID state differ) produces
HardwareEvent records, so translators and the router never see
driver-specific message objects.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Wire-level event types produced by the input adapters."""

    # MIDI
    NOTE_ON = "noteon"
    NOTE_OFF = "noteoff"
    CC = "cc"
    PITCH = "pitch"
    PROGRAM = "program"

    # HID (named after the parsing descriptor's control type)
    BUTTON = "button"
    MODIFIER = "modifier"
    DELTA = "delta"
    ABSOLUTE = "absolute"
    ENCODER = "encoder"


MIDI_EVENT_TYPES = frozenset(
    {EventType.NOTE_ON, EventType.NOTE_OFF, EventType.CC, EventType.PITCH, EventType.PROGRAM},
)


class HardwareEvent(BaseModel):
    """
    Immutable, device-independent input event.

    Timestamps are epoch milliseconds and non-decreasing per device. Fields
    not meaningful for a given event type stay None.
    """

    device_id: str
    type: EventType
    timestamp: float

    # MIDI addressing
    channel: Optional[int] = Field(default=None, ge=0, le=15)
    note: Optional[int] = None
    controller: Optional[int] = None
    program: Optional[int] = None
    velocity: Optional[int] = None

    # HID addressing
    control: Optional[str] = None

    value: Optional[int] = None
    delta: Optional[int] = None
    previous_value: Optional[int] = None

    # High-resolution (14-bit) reconstruction
    high_res: bool = False
    normalized: Optional[float] = None
    value_14bit: Optional[int] = None
    max_value: Optional[int] = None
    msb: Optional[int] = None
    lsb: Optional[int] = None
    lsb_controller: Optional[int] = None

    model_config = {"frozen": True}

    @property
    def is_midi(self) -> bool:
        """True for events produced by the MIDI normalizer."""
        return self.type in MIDI_EVENT_TYPES

    def describe(self) -> dict[str, Any]:
        """Compact dict for log lines (None fields dropped)."""
        return self.model_dump(mode="json", exclude_none=True, exclude_defaults=True)


class OutputDescriptor(BaseModel):
    """
    Resolved hardware feedback write.

    MIDI outputs carry type/channel/note-or-controller/value; HID outputs
    carry report_id plus either a byte/bit location and value, or raw
    display data.
    """

    protocol: str  # "midi" or "hid"
    kind: str = "led"
    value: int = Field(default=0, ge=0, le=255)

    # MIDI
    type: Optional[EventType] = None
    channel: int = Field(default=0, ge=0, le=15)
    note: Optional[int] = None
    controller: Optional[int] = None

    # HID
    report_id: Optional[int] = None
    byte: Optional[int] = None
    bit: Optional[int] = None
    report_length: Optional[int] = None
    data: Optional[list[int]] = None

    model_config = {"frozen": True}
