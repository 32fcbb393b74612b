"""
Error-isolated callback dispatch system.

Applications hook into the bridge through callbacks: device connect and
disconnect, translated actions, and downstream state messages. A failing
callback is logged and skipped; it never propagates into an input thread or
the dispatch loop.
"""

import threading
from collections import defaultdict
from typing import Any, Callable, Optional

from deckbridge.actions import Action
from deckbridge.logging_config import get_logger

logger = get_logger(__name__)

# Callback type signatures
DeviceCallback = Callable[[str, dict[str, Any]], None]  # (device_id, info)
ActionCallback = Callable[[Action], None]
StateCallback = Callable[[dict[str, Any]], None]


class CallbackManager:
    """
    Manages callback registration and dispatch with error isolation.

    Supports three kinds of callbacks:
    1. Device connected / disconnected
    2. Action callbacks, optionally filtered by action type
    3. Downstream state callbacks
    """

    def __init__(self):
        self._connected_callbacks: list[DeviceCallback] = []
        self._disconnected_callbacks: list[DeviceCallback] = []
        # Action type filter (None = all actions) -> callbacks
        self._action_callbacks: defaultdict[Optional[str], list[ActionCallback]] = defaultdict(list)
        self._state_callbacks: list[StateCallback] = []

        self._lock = threading.RLock()

    # Registration methods

    def register_device_connected(self, callback: DeviceCallback) -> None:
        """
        Register callback for device connections.

        Args:
            callback: Function(device_id: str, info: dict) -> None
        """
        with self._lock:
            self._connected_callbacks.append(callback)
            logger.debug(f"Registered device-connected callback: {_name(callback)}")

    def register_device_disconnected(self, callback: DeviceCallback) -> None:
        """
        Register callback for device disconnections.

        Args:
            callback: Function(device_id: str, info: dict) -> None
        """
        with self._lock:
            self._disconnected_callbacks.append(callback)
            logger.debug(f"Registered device-disconnected callback: {_name(callback)}")

    def register_action(self, callback: ActionCallback, action_type: Optional[str] = None) -> None:
        """
        Register callback for translated actions.

        Args:
            callback: Function(action: Action) -> None
            action_type: Optional action type filter ("transport", "mixer", ...)
        """
        with self._lock:
            self._action_callbacks[action_type].append(callback)
            logger.debug(f"Registered action callback: {_name(callback)} (type: {action_type or 'all'})")

    def register_state(self, callback: StateCallback) -> None:
        """
        Register callback for downstream state messages.

        Args:
            callback: Function(message: dict) -> None
        """
        with self._lock:
            self._state_callbacks.append(callback)
            logger.debug(f"Registered state callback: {_name(callback)}")

    def unregister_action(self, callback: ActionCallback) -> bool:
        """
        Unregister an action callback from every filter it was registered under.

        Returns:
            True if the callback was registered and removed
        """
        removed = False
        with self._lock:
            for callbacks in self._action_callbacks.values():
                while callback in callbacks:
                    callbacks.remove(callback)
                    removed = True
        return removed

    # Dispatch methods

    def on_device_connected(self, device_id: str, info: dict[str, Any]) -> None:
        with self._lock:
            callbacks = self._connected_callbacks.copy()
        for callback in callbacks:
            self._safe_call(callback, device_id, info)

    def on_device_disconnected(self, device_id: str, info: dict[str, Any]) -> None:
        with self._lock:
            callbacks = self._disconnected_callbacks.copy()
        for callback in callbacks:
            self._safe_call(callback, device_id, info)

    def on_action(self, action: Action) -> None:
        """
        Dispatch action callbacks.

        Type-filtered callbacks run before unfiltered ones.
        """
        # Copy callback lists under lock, execute without it
        with self._lock:
            typed = self._action_callbacks[action.type].copy()
            untyped = self._action_callbacks[None].copy()

        for callback in typed + untyped:
            self._safe_call(callback, action)

    def on_state(self, message: dict[str, Any]) -> None:
        with self._lock:
            callbacks = self._state_callbacks.copy()
        for callback in callbacks:
            self._safe_call(callback, message)

    # Helper methods

    def _safe_call(self, callback: Callable, *args) -> None:
        """
        Execute callback with exception isolation.

        Args:
            callback: Callable to execute
            *args: Arguments to pass to callback
        """
        try:
            callback(*args)
        except Exception as e:
            logger.exception(f"Error in callback '{_name(callback)}': {e}")

    def clear_all(self) -> None:
        """Clear all registered callbacks."""
        with self._lock:
            self._connected_callbacks.clear()
            self._disconnected_callbacks.clear()
            self._action_callbacks.clear()
            self._state_callbacks.clear()
            logger.debug("Cleared all callbacks")

    def get_callback_counts(self) -> dict[str, int]:
        with self._lock:
            return {
                "device_connected": len(self._connected_callbacks),
                "device_disconnected": len(self._disconnected_callbacks),
                "action": sum(len(cbs) for cbs in self._action_callbacks.values()),
                "state": len(self._state_callbacks),
            }


def _name(callback: Callable) -> str:
    return getattr(callback, "__name__", repr(callback))
