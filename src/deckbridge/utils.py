"""Shared utilities for deckbridge."""

import re
import time
from typing import Optional, Union

# States that count as "off" when a feedback state is coerced to an LED level
OFF_STATES = frozenset({"", "off", "stopped", "disabled", "false", "0", "none"})


def now_ms() -> float:
    """Wall-clock time in epoch milliseconds (the wire timestamp unit)."""
    return time.time() * 1000.0


def monotonic_ms() -> float:
    """Monotonic clock in milliseconds, for windows and throttles."""
    return time.monotonic() * 1000.0


def parse_usb_id(value: Union[int, str, None]) -> Optional[int]:
    """Parse a USB vendor/product id given as int, decimal or hex string.

    Args:
        value: 0x17cc, "0x17cc", "6092" or None

    Returns:
        Integer id or None

    Raises:
        ValueError: If the string is not a number
    """
    if value is None or isinstance(value, int):
        return value

    text = value.strip().lower()
    if not text:
        return None
    return int(text, 16) if text.startswith("0x") else int(text)


def slugify(name: str) -> str:
    """Lower-case a device name and replace whitespace runs with dashes."""
    return re.sub(r"\s+", "-", name.strip().lower())


def is_on_state(state: object) -> bool:
    """
    Coerce a feedback state to on/off.

    Booleans are themselves, numbers are on when positive, and strings are on
    unless they name an "off" state (stopped, disabled, ...).
    """
    if isinstance(state, bool):
        return state
    if isinstance(state, (int, float)):
        return state > 0
    if state is None:
        return False
    return str(state).strip().lower() not in OFF_STATES


def clamp(value: float, low: float, high: float) -> float:
    """Clamp value to [low, high]."""
    return max(low, min(high, value))
