import pytest

from conftest import HID_MAPPING
from deckbridge.actions import Action, Priority, Target
from deckbridge.config import DeviceMapping, FeedbackDescriptor
from deckbridge.events import EventType, HardwareEvent
from deckbridge.translators import HIDTranslator, MIDITranslator, create_translator, resolve_feedback_value


def midi_event(type_, timestamp=1000.0, **fields):
    return HardwareEvent(device_id="midi-test", type=type_, timestamp=timestamp, **fields)


def hid_event(type_, control, value, previous=None, delta=None):
    return HardwareEvent(
        device_id="hid-test",
        type=type_,
        timestamp=2000.0,
        control=control,
        value=value,
        previous_value=previous,
        delta=value - (previous or 0) if delta is None else delta,
    )


class TestMIDITranslator:
    def test_note_on_to_transport_action(self, midi_mapping):
        translator = MIDITranslator(midi_mapping)
        action = translator.translate(midi_event(EventType.NOTE_ON, channel=0, note=11, velocity=127, value=127))

        assert action.to_message() == {
            "type": "transport",
            "command": "play",
            "target": "audio",
            "priority": "high",
            "timestamp": 1000,
            "deck": "A",
            "value": True,
            "from": "Test DJ Controller",
        }
        assert action.device_id == "midi-test"

    def test_transport_value_is_boolean_for_any_velocity(self, midi_mapping):
        translator = MIDITranslator(midi_mapping)
        soft = translator.translate(midi_event(EventType.NOTE_ON, channel=0, note=11, velocity=1, value=1))
        zero = translator.translate(midi_event(EventType.NOTE_ON, channel=0, note=11, velocity=0, value=0))
        assert soft.value is True
        assert zero.value is False

    def test_unmapped_event(self, midi_mapping):
        translator = MIDITranslator(midi_mapping)
        assert translator.translate(midi_event(EventType.NOTE_ON, channel=3, note=11, velocity=127)) is None
        assert translator.translate(midi_event(EventType.PITCH, channel=0, value=8192)) is None

    def test_plain_cc_divides_by_127(self, midi_mapping):
        action = MIDITranslator(midi_mapping).translate(midi_event(EventType.CC, channel=0, controller=23, value=127))
        assert action.value == 1.0
        assert action.command == "filter"

    def test_high_res_pattern_uses_combined_events_only(self, midi_mapping):
        translator = MIDITranslator(midi_mapping)
        seven_bit = midi_event(EventType.CC, channel=0, controller=19, value=64)
        combined = midi_event(
            EventType.CC,
            channel=0,
            controller=19,
            value=8192,
            value_14bit=8192,
            max_value=16383,
            normalized=8192 / 16383,
            high_res=True,
            msb=64,
            lsb=0,
        )
        assert translator.translate(seven_bit) is None
        assert translator.translate(combined).value == pytest.approx(0.50003, abs=1e-4)

    def test_plain_pattern_ignores_combined_events(self, midi_mapping):
        combined = midi_event(EventType.CC, channel=0, controller=23, value=100, normalized=0.1, high_res=True)
        assert MIDITranslator(midi_mapping).translate(combined) is None

    def test_value_expression(self, midi_mapping):
        action = MIDITranslator(midi_mapping).translate(midi_event(EventType.CC, channel=0, controller=34, value=62))
        assert action.value == -2
        assert action.priority == Priority.CRITICAL

    def test_direction_expression_and_routing_lifted_from_action(self, midi_mapping):
        translator = MIDITranslator(midi_mapping)
        down = translator.translate(midi_event(EventType.CC, channel=6, controller=64, value=65))
        up = translator.translate(midi_event(EventType.CC, channel=6, controller=64, value=63))
        assert (down.direction, up.direction) == ("down", "up")
        assert down.target == Target.APP
        assert down.priority == Priority.NORMAL

    def test_static_value_wins(self, midi_mapping):
        action = MIDITranslator(midi_mapping).translate(midi_event(EventType.NOTE_ON, channel=7, note=0, velocity=90))
        assert action.value == 1

    def test_broken_expression_falls_back_to_raw_value(self, midi_mapping):
        data = midi_mapping.model_dump(by_alias=True)
        data["mappings"]["jog_a"]["action"]["valueExpression"] = "value / missing"
        translator = MIDITranslator(DeviceMapping.model_validate(data))
        action = translator.translate(midi_event(EventType.CC, channel=0, controller=34, value=70))
        assert action.value == 70

    def test_string_repetition_expression_falls_back(self, midi_mapping):
        data = midi_mapping.model_dump(by_alias=True)
        data["mappings"]["jog_a"]["action"]["valueExpression"] = "'x' * 100000000000000000"
        translator = MIDITranslator(DeviceMapping.model_validate(data))
        action = translator.translate(midi_event(EventType.CC, channel=0, controller=34, value=70))
        assert action.value == 70

    def test_feedback_output(self, midi_mapping):
        translator = MIDITranslator(midi_mapping)
        play = Action(type="transport", command="play", deck="A")

        output = translator.action_to_wire_output(play, "playing")
        assert (output.protocol, output.type, output.channel, output.note, output.value) == (
            "midi",
            EventType.NOTE_ON,
            0,
            11,
            127,
        )
        assert translator.action_to_wire_output(play, "stopped").value == 0

        sync = translator.action_to_wire_output(Action(type="transport", command="sync", deck="A"), "enabled")
        assert (sync.type, sync.controller, sync.value) == (EventType.CC, 88, 64)

    def test_feedback_requires_deck_match(self, midi_mapping):
        translator = MIDITranslator(midi_mapping)
        assert translator.action_to_wire_output(Action(type="transport", command="play", deck="B"), "playing") is None
        assert translator.action_to_wire_output(Action(type="mixer", command="volume", deck="A"), 1) is None


class TestResolveFeedbackValue:
    descriptor = FeedbackDescriptor.model_validate(
        {"midiOut": {"note": 1}, "stateMap": {"locked": 127, "enabled": 64, "true": 100}}
    )

    @pytest.mark.parametrize(
        "state, expected",
        [
            ("locked", 127),
            ("enabled", 64),
            (True, 100),
            (False, 0),
            ("playing", 127),
            ("stopped", 0),
            ("disabled", 0),
            ("", 0),
            (None, 0),
            (96, 96),
            (300, 127),
            (-4, 0),
        ],
    )
    def test_states(self, state, expected):
        assert resolve_feedback_value(self.descriptor, state) == expected


class TestHIDTranslator:
    def test_button_press_and_release_suppression(self, hid_mapping):
        translator = HIDTranslator(hid_mapping)
        press = translator.translate(hid_event(EventType.BUTTON, "play_a", 1, previous=0))
        release = translator.translate(hid_event(EventType.BUTTON, "play_a", 0, previous=1))

        assert press.value is True
        assert press.to_message()["from"] == "Test HID Deck"
        assert release is None

    def test_emit_release_opt_in(self, hid_mapping):
        translator = HIDTranslator(hid_mapping)
        release = translator.translate(hid_event(EventType.BUTTON, "cue_a", 0, previous=1))
        assert release.value is False

    def test_modifier_changes_condition(self, hid_mapping):
        translator = HIDTranslator(hid_mapping)
        nudge = translator.translate(hid_event(EventType.DELTA, "jog_a", 5, delta=2))
        assert (nudge.command, nudge.delta, nudge.value) == ("nudge", 2, 5)

        # Modifier events update state but are not mapped themselves
        assert translator.translate(hid_event(EventType.MODIFIER, "shift", 1, previous=0)) is None
        assert translator.modifier_state == {"shift": True}

        scratch = translator.translate(hid_event(EventType.DELTA, "jog_a", 4, delta=-1))
        assert (scratch.command, scratch.delta, scratch.priority) == ("scratch", -1, Priority.CRITICAL)

        translator.reset_modifier_state()
        assert translator.modifier_state == {"shift": False}

    def test_absolute_normalized_by_range(self, hid_mapping):
        action = HIDTranslator(hid_mapping).translate(hid_event(EventType.ABSOLUTE, "volume_a", 4095, previous=0))
        assert action.value == 1.0
        assert action.raw_value == 4095

        bottom = HIDTranslator(hid_mapping).translate(hid_event(EventType.ABSOLUTE, "volume_a", 0, previous=10))
        assert bottom.value == 0.0

    def test_encoder_direction(self, hid_mapping):
        translator = HIDTranslator(hid_mapping)
        up = translator.translate(hid_event(EventType.ENCODER, "browse", 11, previous=10))
        down = translator.translate(hid_event(EventType.ENCODER, "browse", 9, previous=11))
        assert (up.direction, up.delta) == ("up", 1)
        assert (down.direction, down.delta) == ("down", -2)
        assert up.target == Target.APP

    def test_undeclared_control(self, hid_mapping):
        assert HIDTranslator(hid_mapping).translate(hid_event(EventType.BUTTON, "nope", 1)) is None

    def test_feedback_outputs(self, hid_mapping):
        translator = HIDTranslator(hid_mapping)

        led = translator.action_to_wire_output(Action(type="transport", command="play", deck="A"), "playing")
        assert (led.report_id, led.byte, led.bit, led.value, led.report_length) == (128, 0, None, 127, 8)

        bit = translator.action_to_wire_output(Action(type="transport", command="cue", deck="A"), "cued")
        assert (bit.byte, bit.bit, bit.value) == (1, 3, 127)

        display = translator.action_to_wire_output(Action(type="library", command="trackInfo"), "Song")
        assert display.kind == "display"
        assert display.data == list(b"Song")


def test_create_translator(midi_mapping, hid_mapping):
    assert isinstance(create_translator(midi_mapping), MIDITranslator)
    assert isinstance(create_translator(hid_mapping), HIDTranslator)


def test_hid_mapping_rejects_undeclared_controls():
    data = {**HID_MAPPING, "mappings": {"ghost": {"action": {"type": "a", "command": "b"}, "target": "audio", "priority": "normal"}}}
    with pytest.raises(ValueError):
        DeviceMapping.model_validate(data)
