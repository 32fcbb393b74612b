"""
Translate canonical hardware events into semantic actions, and actions back
into hardware feedback writes.

One translator instance exists per connected device. Lookup tables are built
once from the validated mapping; translation is an exact-key lookup followed
by value derivation. Failures inside translation are logged and yield None
for that one event.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional, Union

from deckbridge.actions import Action, ActionValue
from deckbridge.config import (
    ControlMapping,
    DeviceMapping,
    FeedbackClass,
    FeedbackDescriptor,
    HIDControlType,
    Protocol,
)
from deckbridge.events import EventType, HardwareEvent, OutputDescriptor
from deckbridge.expression import evaluate
from deckbridge.logging_config import get_logger
from deckbridge.utils import clamp, is_on_state

logger = get_logger(__name__)

FeedbackState = Union[bool, int, float, str, None]

LED_ON = 127
LED_OFF = 0


def resolve_feedback_value(feedback: FeedbackDescriptor, state: FeedbackState) -> int:
    """
    Map a feedback state to an output value.

    The descriptor's state map wins. Otherwise numbers pass through clamped
    to 0..127, and anything else is on (127) or off (0).
    """
    key = str(state).lower() if isinstance(state, bool) else str(state)
    if key in feedback.state_map:
        return feedback.state_map[key]
    if isinstance(state, (int, float)) and not isinstance(state, bool):
        return int(clamp(round(state), 0, 127))
    return LED_ON if is_on_state(state) else LED_OFF


def _template_matches(action: Action, mapping: ControlMapping) -> bool:
    template = mapping.action
    if action.type != template.type or action.command != template.command:
        return False
    return template.deck is None or action.deck == template.deck


class Translator(ABC):
    """Shared translator behaviour: action assembly and feedback lookup."""

    protocol: Protocol

    def __init__(self, mapping: DeviceMapping):
        self.mapping = mapping
        self.device_name = mapping.name

    @abstractmethod
    def translate(self, event: HardwareEvent) -> Optional[Action]:
        """Return the action for an event, or None if nothing matches."""

    @abstractmethod
    def _build_output(self, feedback: FeedbackDescriptor, state: FeedbackState) -> Optional[OutputDescriptor]:
        pass

    def action_to_wire_output(self, action: Action, state: FeedbackState) -> Optional[OutputDescriptor]:
        """
        Resolve feedback for an action.

        Searches mappings with a feedback descriptor whose action template
        matches type, command and (if the template names one) deck.

        Args:
            action: Action key (type/command/deck)
            state: Current state ("playing", True, 96, ...)

        Returns:
            Output write, or None if no mapping provides feedback for it
        """
        for mapping in self.mapping.mappings.values():
            if mapping.feedback is not None and _template_matches(action, mapping):
                return self._build_output(mapping.feedback, state)
        return None

    def _make_action(self, event: HardwareEvent, mapping: ControlMapping, **fields: Any) -> Action:
        template = mapping.action
        return Action(
            type=template.type,
            command=template.command,
            target=mapping.target,
            priority=mapping.priority,
            timestamp=event.timestamp,
            deck=template.deck,
            device_id=event.device_id,
            source=self.device_name,
            **fields,
        )

    def _log_action(self, event: HardwareEvent, action: Action) -> None:
        logger.debug(f"[TRANSLATE] {self.device_name}: {event.describe()} -> {action.to_message()}")


class MIDITranslator(Translator):
    """
    MIDI event -> action, keyed by (type, channel, note-or-controller).

    A pattern with ``highRes: true`` only fires on combined 14-bit events;
    other CC patterns only fire on plain 7-bit events.
    """

    protocol = Protocol.MIDI

    def __init__(self, mapping: DeviceMapping):
        super().__init__(mapping)
        self._lookup: dict[tuple[str, int, Optional[int]], ControlMapping] = {
            control.midi.lookup_key: control for control in mapping.mappings.values() if control.midi is not None
        }
        logger.debug(f"Built MIDI lookup table for {self.device_name}: {len(self._lookup)} entries")

    @staticmethod
    def lookup_key(event: HardwareEvent) -> tuple[str, int, Optional[int]]:
        if event.type in (EventType.NOTE_ON, EventType.NOTE_OFF):
            number = event.note
        elif event.type == EventType.CC:
            number = event.controller
        else:
            number = None
        return (event.type.value, event.channel or 0, number)

    def translate(self, event: HardwareEvent) -> Optional[Action]:
        mapping = self._lookup.get(self.lookup_key(event))
        if mapping is None:
            logger.debug(f"No mapping for MIDI event on {self.device_name}: {event.describe()}")
            return None

        if event.type == EventType.CC and mapping.midi.high_res != event.high_res:
            return None

        try:
            action = self._build_action(event, mapping)
        except (ValueError, TypeError, ArithmeticError) as e:
            logger.error(f"Failed to translate MIDI event on {self.device_name}: {e}")
            return None

        self._log_action(event, action)
        return action

    def _context(self, event: HardwareEvent) -> dict[str, Any]:
        value = event.value if event.value is not None else 0
        return {
            "value": value,
            "velocity": event.velocity or 0,
            "delta": event.delta or 0,
            "note": event.note if event.note is not None else 0,
            "controller": event.controller if event.controller is not None else 0,
            "channel": event.channel or 0,
            "normalized": event.normalized if event.normalized is not None else value / 127,
            "msb": event.msb if event.msb is not None else value,
            "lsb": event.lsb or 0,
        }

    def _derive_value(self, event: HardwareEvent) -> Optional[ActionValue]:
        if event.high_res and event.normalized is not None:
            return event.normalized
        if event.type == EventType.CC:
            return (event.value or 0) / 127
        if event.type in (EventType.NOTE_ON, EventType.NOTE_OFF):
            return event.type == EventType.NOTE_ON and (event.velocity or 0) > 0
        return event.value

    def _build_action(self, event: HardwareEvent, mapping: ControlMapping) -> Action:
        template = mapping.action
        context = self._context(event)

        if template.value is not None:
            value = template.value
        elif template.value_expression:
            value = evaluate(template.value_expression, context)
        else:
            value = self._derive_value(event)

        # Any non-zero velocity means "pressed" for transport buttons
        if template.type == "transport" and event.type == EventType.NOTE_ON:
            value = (event.velocity or 0) > 0

        fields: dict[str, Any] = {"value": value}
        if template.direction:
            fields["direction"] = evaluate(template.direction, context, default=None)
        if template.mode:
            fields["mode"] = evaluate(template.mode, context, default=None)
        if event.delta is not None:
            fields["delta"] = event.delta

        return self._make_action(event, mapping, **fields)

    def _build_output(self, feedback: FeedbackDescriptor, state: FeedbackState) -> Optional[OutputDescriptor]:
        if feedback.midi_out is None:
            return None
        if feedback.type == FeedbackClass.DISPLAY:
            logger.debug(f"{self.device_name}: display feedback is not supported over MIDI")
            return None
        midi_out = feedback.midi_out
        return OutputDescriptor(
            protocol="midi",
            kind=feedback.type.value,
            type=midi_out.type,
            channel=midi_out.channel,
            note=midi_out.note,
            controller=midi_out.controller,
            value=resolve_feedback_value(feedback, state),
        )


class HIDTranslator(Translator):
    """
    HID control change -> action, keyed by control name.

    Keeps a modifier table (e.g. shift) that conditions and expressions can
    read. Several mappings may claim one control; they are tried in file
    order and the first whose condition holds wins.
    """

    protocol = Protocol.HID

    def __init__(self, mapping: DeviceMapping):
        super().__init__(mapping)
        self._controls = mapping.parsing.controls if mapping.parsing else {}
        self._modifiers: dict[str, bool] = {
            name: False for name, descriptor in self._controls.items() if descriptor.type == HIDControlType.MODIFIER
        }
        self._lookup: dict[str, list[ControlMapping]] = {}
        for _, control, control_mapping in mapping.iter_control_mappings():
            self._lookup.setdefault(control, []).append(control_mapping)
        logger.debug(f"Built HID lookup table for {self.device_name}: {len(self._lookup)} controls")

    @property
    def modifier_state(self) -> dict[str, bool]:
        return dict(self._modifiers)

    def reset_modifier_state(self) -> None:
        for name in self._modifiers:
            self._modifiers[name] = False

    def _context(self, event: HardwareEvent) -> dict[str, Any]:
        return {
            **self._modifiers,
            "state": dict(self._modifiers),
            "value": event.value if event.value is not None else 0,
            "delta": event.delta or 0,
            "previous": event.previous_value if event.previous_value is not None else 0,
        }

    def translate(self, event: HardwareEvent) -> Optional[Action]:
        descriptor = self._controls.get(event.control)
        if descriptor is None:
            logger.warning(f"Control config not found on {self.device_name}: {event.control}")
            return None

        if descriptor.type == HIDControlType.MODIFIER:
            self._modifiers[event.control] = (event.value or 0) > 0

        candidates = self._lookup.get(event.control)
        if not candidates:
            logger.debug(f"No mapping for HID control on {self.device_name}: {event.describe()}")
            return None

        context = self._context(event)
        try:
            for mapping in candidates:
                if mapping.condition and not evaluate(mapping.condition, context, default=False):
                    continue
                action = self._build_action(event, mapping, descriptor.type, context)
                if action is not None:
                    self._log_action(event, action)
                return action
        except (ValueError, TypeError, ArithmeticError) as e:
            logger.error(f"Failed to translate HID event on {self.device_name}: {e}")
        return None

    def _build_action(
        self,
        event: HardwareEvent,
        mapping: ControlMapping,
        control_type: HIDControlType,
        context: dict[str, Any],
    ) -> Optional[Action]:
        template = mapping.action
        raw = event.value if event.value is not None else 0
        fields: dict[str, Any] = {}

        if control_type == HIDControlType.DELTA:
            fields.update(value=raw, delta=event.delta)

        elif control_type in (HIDControlType.BUTTON, HIDControlType.MODIFIER):
            pressed = raw > 0
            if not pressed and not template.emit_release:
                return None
            fields["value"] = pressed

        elif control_type == HIDControlType.ABSOLUTE:
            low, high = self._controls[event.control].value_range
            fields.update(value=(raw - low) / (high - low) if high != low else 0.0, raw_value=raw)

        elif control_type == HIDControlType.ENCODER:
            delta = event.delta or 0
            fields.update(delta=delta, direction="up" if delta > 0 else "down")

        if template.value is not None:
            fields["value"] = template.value
        elif template.value_expression:
            fields["value"] = evaluate(template.value_expression, context)

        if template.direction:
            fields["direction"] = evaluate(template.direction, context, default=fields.get("direction"))
        if template.mode:
            fields["mode"] = evaluate(template.mode, context, default=None)

        return self._make_action(event, mapping, **fields)

    def _build_output(self, feedback: FeedbackDescriptor, state: FeedbackState) -> Optional[OutputDescriptor]:
        hid_out = feedback.hid_out
        if hid_out is None:
            return None

        if feedback.type == FeedbackClass.DISPLAY:
            text = "" if state is None else str(state)
            return OutputDescriptor(
                protocol="hid",
                kind=feedback.type.value,
                report_id=hid_out.report_id,
                byte=hid_out.byte,
                report_length=hid_out.report_length,
                data=list(text.encode("ascii", errors="replace")),
            )

        return OutputDescriptor(
            protocol="hid",
            kind=feedback.type.value,
            report_id=hid_out.report_id,
            byte=hid_out.byte,
            bit=hid_out.bit,
            report_length=hid_out.report_length,
            value=resolve_feedback_value(feedback, state),
        )


def create_translator(mapping: DeviceMapping) -> Translator:
    """Translator for the mapping's protocol."""
    if mapping.protocol == Protocol.HID:
        return HIDTranslator(mapping)
    return MIDITranslator(mapping)
