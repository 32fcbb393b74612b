"""
Semantic action records and their downstream wire shape.

Actions are the canonical output unit of the translators. They are frozen
pydantic models: the router only forwards or drops them, never mutates them.
"""

from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from deckbridge.utils import now_ms


class Priority(str, Enum):
    """Router service classes."""

    CRITICAL = "critical"  # Jog wheels: bypass queues, sent on the calling thread
    HIGH = "high"  # Transport controls
    NORMAL = "normal"  # Everything else


class Target(str, Enum):
    """Downstream destination tags."""

    AUDIO = "audio"
    APP = "app"
    UI = "ui"


ActionValue = Union[bool, int, float, str]

# Keys of the downstream action message, in wire order
WIRE_FIELDS = ("type", "command", "target", "priority", "timestamp", "deck", "value", "delta", "direction", "mode", "from")


class Action(BaseModel):
    """
    Immutable semantic action.

    target and priority are optional at the model level so that the router
    can reject incomplete actions instead of the constructor raising.
    """

    type: str
    command: str
    target: Optional[Target] = None
    priority: Optional[Priority] = None
    timestamp: float = Field(default_factory=now_ms)

    deck: Optional[str] = None
    value: Optional[ActionValue] = None
    delta: Optional[Union[int, float]] = None
    direction: Optional[str] = None
    mode: Optional[str] = None
    raw_value: Optional[int] = None

    device_id: Optional[str] = None
    source: Optional[str] = Field(default=None, alias="from")

    model_config = {"frozen": True, "populate_by_name": True}

    def to_message(self) -> dict[str, Any]:
        """
        Build the JSON-ready downstream message.

        Optional fields that are unset are omitted; timestamp is integer
        epoch milliseconds.
        """
        payload: dict[str, Any] = {
            "type": self.type,
            "command": self.command,
            "target": self.target.value if self.target else None,
            "priority": self.priority.value if self.priority else None,
            "timestamp": int(self.timestamp),
            "deck": self.deck,
            "value": self.value,
            "delta": self.delta,
            "direction": self.direction,
            "mode": self.mode,
            "from": self.source,
        }
        return {key: payload[key] for key in WIRE_FIELDS if payload[key] is not None}

    def matches(self, action_type: str, command: str, deck: Optional[str] = None) -> bool:
        """Check type/command and, if given, deck."""
        if self.type != action_type or self.command != command:
            return False
        return deck is None or self.deck == deck
