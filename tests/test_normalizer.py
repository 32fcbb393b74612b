import mido
import pytest

from deckbridge.events import EventType, HardwareEvent
from deckbridge.normalizer import (
    MAX_14BIT,
    HighResolutionPairing,
    MIDINormalizer,
    is_lsb_controller,
    is_msb_controller,
    normalize,
)


def cc(controller, value, timestamp, channel=0):
    return HardwareEvent(
        device_id="dev", type=EventType.CC, timestamp=timestamp, channel=channel, controller=controller, value=value
    )


class TestNormalize:
    def test_note_on(self):
        event = normalize("dev", "note_on", {"channel": 0, "note": 11, "velocity": 127}, timestamp=5.0)
        assert event.type == EventType.NOTE_ON
        assert (event.note, event.velocity, event.value, event.timestamp) == (11, 127, 127, 5.0)

    def test_note_on_velocity_zero_stays_note_on(self):
        event = normalize("dev", "note_on", {"channel": 0, "note": 11, "velocity": 0})
        assert event.type == EventType.NOTE_ON
        assert (event.velocity, event.value) == (0, 0)

    def test_control_change_accepts_both_field_names(self):
        assert normalize("dev", "control_change", {"channel": 2, "control": 7, "value": 9}).controller == 7
        assert normalize("dev", "cc", {"channel": 2, "controller": 7, "value": 9}).controller == 7

    def test_pitchwheel_is_high_resolution(self):
        event = normalize("dev", "pitchwheel", {"channel": 0, "pitch": 8191})
        assert event.type == EventType.PITCH
        assert event.value == MAX_14BIT
        assert event.normalized == 1.0
        assert event.high_res

    def test_program_change(self):
        event = normalize("dev", "program_change", {"channel": 0, "program": 5})
        assert (event.program, event.value) == (5, 5)

    def test_missing_fields_are_left_unset(self):
        event = normalize("dev", "note_on", {})
        assert event.note is None and event.channel is None

    @pytest.mark.parametrize("raw_type", ["sysex", "clock", "aftertouch", "polytouch"])
    def test_unsupported_types(self, raw_type):
        assert normalize("dev", raw_type, {}) is None


def test_controller_ranges():
    assert is_msb_controller(0) and is_msb_controller(31) and not is_msb_controller(32)
    assert is_lsb_controller(32) and is_lsb_controller(63) and not is_lsb_controller(64)


class TestHighResolutionPairing:
    @pytest.mark.parametrize("msb, lsb", [(0, 0), (127, 127), (64, 0), (1, 127), (100, 37)])
    def test_pair_combines(self, msb, lsb):
        pairing = HighResolutionPairing()
        assert pairing.process(cc(19, msb, 0.0)) is None
        combined = pairing.process(cc(51, lsb, 10.0))

        assert combined.value_14bit == msb * 128 + lsb
        assert combined.value == combined.value_14bit
        assert combined.normalized == (msb * 128 + lsb) / 16383
        assert combined.controller == 19
        assert combined.lsb_controller == 51
        assert (combined.msb, combined.lsb, combined.max_value) == (msb, lsb, 16383)
        assert combined.high_res
        assert pairing.pending == {}

    def test_every_pair_combines(self):
        pairing = HighResolutionPairing()
        timestamp = 0.0
        for msb in range(128):
            for lsb in range(128):
                assert pairing.process(cc(19, msb, timestamp)) is None
                combined = pairing.process(cc(51, lsb, timestamp + 1.0))
                assert combined.value_14bit == msb * 128 + lsb
                assert combined.normalized == combined.value_14bit / MAX_14BIT
                timestamp += 100.0
        assert pairing.pending == {}

    def test_extremes(self):
        pairing = HighResolutionPairing()
        pairing.process(cc(0, 127, 0.0))
        assert pairing.process(cc(32, 127, 1.0)).normalized == 1.0
        pairing.process(cc(0, 0, 2.0))
        assert pairing.process(cc(32, 0, 3.0)).normalized == 0.0

    def test_lsb_after_window_is_not_combined(self):
        pairing = HighResolutionPairing(window_ms=50)
        pairing.process(cc(19, 100, 0.0))
        assert pairing.process(cc(51, 5, 51.0)) is None
        assert pairing.pending == {}

    def test_lsb_exactly_at_window_combines(self):
        pairing = HighResolutionPairing(window_ms=50)
        pairing.process(cc(19, 100, 0.0))
        assert pairing.process(cc(51, 5, 50.0)) is not None

    def test_second_msb_overwrites_first(self):
        pairing = HighResolutionPairing()
        pairing.process(cc(19, 10, 0.0))
        pairing.process(cc(19, 20, 1.0))
        combined = pairing.process(cc(51, 3, 2.0))
        assert combined.msb == 20
        assert combined.value_14bit == 20 * 128 + 3

    def test_unpaired_lsb_is_forwarded(self):
        assert HighResolutionPairing().process(cc(51, 3, 0.0)) is None

    def test_channels_are_independent(self):
        pairing = HighResolutionPairing()
        pairing.process(cc(19, 10, 0.0, channel=0))
        assert pairing.process(cc(51, 3, 1.0, channel=1)) is None
        assert pairing.process(cc(51, 3, 2.0, channel=0)) is not None

    def test_plain_controllers_ignored(self):
        pairing = HighResolutionPairing()
        assert pairing.process(cc(64, 10, 0.0)) is None
        assert pairing.pending == {}

    def test_stale_entries_are_swept(self):
        pairing = HighResolutionPairing(window_ms=50)
        pairing.process(cc(1, 10, 0.0))
        pairing.process(cc(2, 10, 10.0))
        pairing.process(cc(64, 0, 55.0))
        assert list(pairing.pending) == [(0, 2)]


class TestMIDINormalizer:
    def test_msb_is_forwarded_and_lsb_replaced(self, clock):
        normalizer = MIDINormalizer("dev", clock=clock)

        msb_events = normalizer.process(mido.Message("control_change", channel=0, control=19, value=100))
        clock.advance(2)
        lsb_events = normalizer.process(mido.Message("control_change", channel=0, control=51, value=5))

        assert [(e.controller, e.value, e.high_res) for e in msb_events] == [(19, 100, False)]
        assert len(lsb_events) == 1
        assert lsb_events[0].high_res
        assert lsb_events[0].value_14bit == 100 * 128 + 5

    def test_late_lsb_is_plain_cc(self, clock):
        normalizer = MIDINormalizer("dev", window_ms=50, clock=clock)
        normalizer.process(mido.Message("control_change", channel=0, control=19, value=100))
        clock.advance(60)
        events = normalizer.process(mido.Message("control_change", channel=0, control=51, value=5))
        assert [(e.controller, e.value, e.high_res) for e in events] == [(51, 5, False)]

    def test_timestamps_never_decrease(self, clock):
        normalizer = MIDINormalizer("dev", clock=clock)
        first = normalizer.process(mido.Message("note_on", note=1, velocity=10))[0]
        clock.advance(-100)
        second = normalizer.process(mido.Message("note_on", note=1, velocity=10))[0]
        assert second.timestamp >= first.timestamp

    def test_unsupported_message(self, clock):
        normalizer = MIDINormalizer("dev", clock=clock)
        assert normalizer.process(mido.Message("clock")) == []
