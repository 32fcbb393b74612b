"""
Feedback state cache.

Holds the last known per-deck playback/mixer snapshot and library state
reported by the downstream peers, and turns state changes into rate-limited
hardware feedback updates. This is the one piece of state shared between
threads (downstream receive loops, device connect handling), so every access
goes through a single re-entrant lock.
"""

import threading
from typing import Any, Callable, Iterable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from deckbridge.actions import Action
from deckbridge.config import FeedbackClass, FeedbackThrottle
from deckbridge.logging_config import get_logger
from deckbridge.utils import clamp, monotonic_ms

logger = get_logger(__name__)

FeedbackState = Union[bool, int, float, str, None]


class _StateModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class PlaybackState(_StateModel):
    playing: bool = False
    paused: bool = False
    cued: bool = False


class PositionState(_StateModel):
    current_time: float = 0.0
    duration: float = 0.0


class VUMeterState(_StateModel):
    peak: float = 0.0
    rms: float = 0.0


class SyncState(_StateModel):
    enabled: bool = False
    locked: bool = False

    @property
    def label(self) -> str:
        """Sync LED state: locked, enabled or disabled."""
        if self.enabled and self.locked:
            return "locked"
        return "enabled" if self.enabled else "disabled"


class TempoState(_StateModel):
    bpm: float = 120.0
    pitch: float = 0.0


class DeckState(_StateModel):
    """Snapshot for one deck."""

    playback: PlaybackState = Field(default_factory=PlaybackState)
    position: PositionState = Field(default_factory=PositionState)
    vu_meter: VUMeterState = Field(default_factory=VUMeterState)
    sync: SyncState = Field(default_factory=SyncState)
    tempo: TempoState = Field(default_factory=TempoState)


class LibraryState(_StateModel):
    selected_track: Optional[Any] = None
    playlist: Optional[Any] = None


class StateMessage(_StateModel):
    """
    Downstream state message.

    Any subset of the deck fields may be present; library fields come from
    the app server.
    """

    type: str = "state"
    source: Optional[str] = None
    deck: Optional[str] = None
    playback: Optional[PlaybackState] = None
    position: Optional[PositionState] = None
    vu_meter: Optional[VUMeterState] = None
    sync: Optional[SyncState] = None
    tempo: Optional[TempoState] = None
    selected_track: Optional[Any] = None
    playlist: Optional[Any] = None


DECK_FIELDS = ("playback", "position", "vu_meter", "sync", "tempo")


class FeedbackUpdate(BaseModel):
    """One feedback write for one device control."""

    device_id: str
    control_id: str
    feedback_class: FeedbackClass
    action_type: str
    command: str
    deck: Optional[str] = None
    state: FeedbackState = None

    model_config = {"frozen": True}

    def as_action(self) -> Action:
        """Action key used to look up the device's feedback descriptor."""
        return Action(type=self.action_type, command=self.command, deck=self.deck)


# (control id, class, action type, command, deck, state) before fan-out to devices
_Pending = tuple[str, FeedbackClass, str, str, Optional[str], FeedbackState]


def _track_title(track: Any) -> str:
    if isinstance(track, dict):
        return str(track.get("title") or track.get("name") or "")
    return "" if track is None else str(track)


class FeedbackStateCache:
    """
    Per-deck state snapshot plus per-(device, control) feedback throttle.
    """

    def __init__(
        self,
        decks: Iterable[str] = ("A", "B"),
        throttle: Optional[FeedbackThrottle] = None,
        clock: Callable[[], float] = monotonic_ms,
        emitter: Optional[Callable[[FeedbackUpdate], Any]] = None,
    ):
        """
        Args:
            decks: Deck names
            throttle: Minimum interval per feedback class (ms)
            clock: Millisecond clock used for throttling
            emitter: Receives each feedback update that passes the throttle
        """
        self._decks: dict[str, DeckState] = {deck.upper(): DeckState() for deck in decks}
        self._library = LibraryState()
        self.throttle = throttle or FeedbackThrottle()
        self._clock = clock
        self._emitter = emitter

        self._devices: set[str] = set()
        self._last_sent: dict[tuple[str, str], float] = {}
        self._lock = threading.RLock()

    def set_emitter(self, emitter: Optional[Callable[[FeedbackUpdate], Any]]) -> None:
        self._emitter = emitter

    # Devices

    def register_device(self, device_id: str) -> None:
        with self._lock:
            self._devices.add(device_id)

    def unregister_device(self, device_id: str) -> None:
        with self._lock:
            self._devices.discard(device_id)
            self._clear_throttle(device_id)

    @property
    def devices(self) -> set[str]:
        with self._lock:
            return set(self._devices)

    def _clear_throttle(self, device_id: str) -> None:
        for key in [key for key in self._last_sent if key[0] == device_id]:
            del self._last_sent[key]

    # Throttling

    def should_emit(self, feedback_class: FeedbackClass, key: tuple[str, str]) -> bool:
        """True if no emission is recorded for key or its interval has elapsed."""
        with self._lock:
            last = self._last_sent.get(key)
            if last is None:
                return True
            return self._clock() - last >= self.throttle.interval_for(feedback_class)

    def emit_feedback(self, feedback_class: FeedbackClass, key: tuple[str, str]) -> bool:
        """
        Throttle gate: record an emission for key if it is allowed now.

        Args:
            feedback_class: Class whose interval applies
            key: (device_id, control_id)

        Returns:
            True if the caller may emit
        """
        with self._lock:
            if not self.should_emit(feedback_class, key):
                return False
            self._last_sent[key] = self._clock()
            return True

    # State updates

    def apply_downstream_state(self, message: Union[dict[str, Any], StateMessage]) -> list[FeedbackUpdate]:
        """
        Merge a state message and emit the feedback it affects.

        Each top-level deck field present in the message replaces the cached
        field wholesale. Only fields present trigger feedback.

        Returns:
            Feedback updates that passed the throttle
        """
        try:
            state = message if isinstance(message, StateMessage) else StateMessage.model_validate(message)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed state message: {e}")
            return []

        with self._lock:
            pending: list[_Pending] = []

            present = {name: getattr(state, name) for name in DECK_FIELDS if getattr(state, name) is not None}
            if present:
                deck = (state.deck or "A").upper()
                if deck not in self._decks:
                    logger.warning(f"Unknown deck in state update: {state.deck}")
                else:
                    self._decks[deck] = self._decks[deck].model_copy(update=present)
                    pending.extend(self._deck_feedback(deck, present))

            library_update = {}
            if state.selected_track is not None:
                library_update["selected_track"] = state.selected_track
            if state.playlist is not None:
                library_update["playlist"] = state.playlist
            if library_update:
                self._library = self._library.model_copy(update=library_update)
                if "selected_track" in library_update:
                    pending.append(self._track_feedback())

            updates = [
                update
                for device_id in sorted(self._devices)
                for update in self._fan_out(device_id, pending)
                if self.emit_feedback(update.feedback_class, (device_id, update.control_id))
            ]

        self._emit(updates)
        return updates

    def sync_device(self, device_id: str) -> list[FeedbackUpdate]:
        """
        Replay the full snapshot to one device.

        The device's throttle entries are cleared first, so the whole burst
        goes out immediately.

        Returns:
            Feedback updates sent to the device
        """
        logger.info(f"Syncing feedback for device {device_id}")
        with self._lock:
            self._devices.add(device_id)
            self._clear_throttle(device_id)

            pending: list[_Pending] = []
            for deck, deck_state in self._decks.items():
                pending.extend(self._deck_feedback(deck, {name: getattr(deck_state, name) for name in DECK_FIELDS}))
            if self._library.selected_track is not None:
                pending.append(self._track_feedback())

            updates = self._fan_out(device_id, pending)
            now = self._clock()
            for update in updates:
                self._last_sent[(device_id, update.control_id)] = now

        self._emit(updates)
        return updates

    def _deck_feedback(self, deck: str, fields: dict[str, Any]) -> list[_Pending]:
        suffix = deck.lower()
        pending: list[_Pending] = []

        playback = fields.get("playback")
        if playback is not None:
            pending.append(
                (f"play_{suffix}", FeedbackClass.LED, "transport", "play", deck, "playing" if playback.playing else "stopped")
            )
            pending.append(
                (f"cue_{suffix}", FeedbackClass.LED, "transport", "cue", deck, "cued" if playback.cued else "stopped")
            )

        sync = fields.get("sync")
        if sync is not None:
            pending.append((f"sync_{suffix}", FeedbackClass.LED, "transport", "sync", deck, sync.label))

        vu_meter = fields.get("vu_meter")
        if vu_meter is not None:
            level = int(clamp(round(vu_meter.peak * 127), 0, 127))
            pending.append((f"vu_{suffix}", FeedbackClass.VU_METER, "mixer", "vuMeter", deck, level))

        return pending

    def _track_feedback(self) -> _Pending:
        title = _track_title(self._library.selected_track)
        return ("track_info", FeedbackClass.DISPLAY, "library", "trackInfo", None, title)

    @staticmethod
    def _fan_out(device_id: str, pending: list[_Pending]) -> list[FeedbackUpdate]:
        return [
            FeedbackUpdate(
                device_id=device_id,
                control_id=control_id,
                feedback_class=feedback_class,
                action_type=action_type,
                command=command,
                deck=deck,
                state=state,
            )
            for control_id, feedback_class, action_type, command, deck, state in pending
        ]

    def _emit(self, updates: list[FeedbackUpdate]) -> None:
        if self._emitter is None:
            return
        for update in updates:
            try:
                self._emitter(update)
            except Exception as e:
                logger.exception(f"Error emitting feedback {update.control_id} to {update.device_id}: {e}")

    # Getters

    def get_deck_state(self, deck: str) -> Optional[DeckState]:
        with self._lock:
            return self._decks.get(deck.upper())

    def get_library_state(self) -> LibraryState:
        with self._lock:
            return self._library

    def get_state(self) -> dict[str, Any]:
        """Full snapshot as JSON-ready dicts (camelCase keys)."""
        with self._lock:
            return {
                "decks": {deck: state.model_dump(by_alias=True) for deck, state in self._decks.items()},
                "library": self._library.model_dump(by_alias=True),
            }
