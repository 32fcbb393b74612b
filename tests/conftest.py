"""Shared fixtures: sample mappings, fake clocks, fake HID handles and recording sinks."""

import json
from pathlib import Path

import pytest

from deckbridge.config import DeviceMapping


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeHIDHandle:
    """hidapi device stand-in: replays queued reports, records writes."""

    def __init__(self, reports=None):
        self.reports = list(reports or [])
        self.writes = []
        self.closed = False
        self.fail_with = None

    def read(self, size, timeout_ms=0):
        if self.fail_with is not None:
            raise self.fail_with
        if not self.reports:
            return []
        return list(self.reports.pop(0))[:size]

    def write(self, data):
        self.writes.append(list(data))
        return len(data)

    def close(self):
        self.closed = True


class FakeMIDIPort:
    """mido port stand-in: queued input messages, recorded output."""

    def __init__(self, name, messages=None):
        self.name = name
        self.messages = list(messages or [])
        self.sent = []
        self.closed = False
        self.fail_with = None

    def iter_pending(self):
        if self.fail_with is not None:
            raise self.fail_with
        while self.messages:
            yield self.messages.pop(0)

    def send(self, msg):
        self.sent.append(msg)

    def close(self):
        self.closed = True


class FakeMIDIBackend:
    """Port listing and opening callables for MIDIManager."""

    def __init__(self, inputs=(), outputs=()):
        self.inputs = list(inputs)
        self.outputs = list(outputs)
        self.ports = {}

    def open_input(self, name):
        return self.ports.setdefault(("in", name), FakeMIDIPort(name))

    def open_output(self, name):
        return self.ports.setdefault(("out", name), FakeMIDIPort(name))

    def manager_kwargs(self):
        return {
            "list_inputs": lambda: list(self.inputs),
            "list_outputs": lambda: list(self.outputs),
            "open_input": self.open_input,
            "open_output": self.open_output,
        }


class RecordingSink:
    """Callable that records what it receives and returns a fixed result."""

    def __init__(self, result=True):
        self.result = result
        self.calls = []

    def __call__(self, item):
        self.calls.append(item)
        return self.result


MIDI_MAPPING = {
    "device": {"name": "Test DJ Controller", "protocol": "midi", "vendor": "Test"},
    "mappings": {
        "_comment": "ignored",
        "play_a": {
            "midi": {"type": "noteon", "channel": 0, "note": 11},
            "action": {"type": "transport", "command": "play", "deck": "A"},
            "target": "audio",
            "priority": "high",
            "feedback": {
                "type": "led",
                "midiOut": {"type": "noteon", "channel": 0, "note": 11},
                "stateMap": {"playing": 127, "stopped": 0},
            },
        },
        "sync_a": {
            "midi": {"type": "noteon", "channel": 0, "note": 88},
            "action": {"type": "transport", "command": "sync", "deck": "A"},
            "target": "audio",
            "priority": "high",
            "feedback": {
                "type": "led",
                "midiOut": {"type": "cc", "channel": 0, "controller": 88},
                "stateMap": {"locked": 127, "enabled": 64, "disabled": 0},
            },
        },
        "volume_a": {
            "midi": {"type": "cc", "channel": 0, "controller": 19, "highRes": True},
            "action": {"type": "mixer", "command": "volume", "deck": "A"},
            "target": "audio",
            "priority": "normal",
        },
        "filter_a": {
            "midi": {"type": "cc", "channel": 0, "controller": 23},
            "action": {"type": "mixer", "command": "filter", "deck": "A"},
            "target": "audio",
            "priority": "normal",
        },
        "jog_a": {
            "midi": {"type": "cc", "channel": 0, "controller": 34},
            "action": {"type": "jog", "command": "nudge", "deck": "A", "valueExpression": "value - 64"},
            "target": "audio",
            "priority": "critical",
        },
        "browse": {
            "midi": {"type": "cc", "channel": 6, "controller": 64},
            "action": {
                "type": "library",
                "command": "browse",
                "direction": "value > 64 ? 'down' : 'up'",
                "target": "app",
                "priority": "normal",
            },
        },
        "hot_cue": {
            "midi": {"type": "noteon", "channel": 7, "note": 0},
            "action": {"type": "hotcue", "command": "trigger", "deck": "A", "value": 1},
            "target": "audio",
            "priority": "high",
        },
    },
}

GENERIC_MIDI_MAPPING = {
    "device": {"name": "Generic MIDI Controller", "protocol": "midi"},
    "mappings": {
        "play_a": {
            "midi": {"type": "noteon", "channel": 0, "note": 1},
            "action": {"type": "transport", "command": "play", "deck": "A"},
            "target": "audio",
            "priority": "high",
        },
    },
}

HID_MAPPING = {
    "device": {
        "name": "Test HID Deck",
        "protocol": "hid",
        "vendor": "Native Instruments",
        "vendorId": "0x17cc",
        "productId": "0x1320",
    },
    "parsing": {
        "reportId": 1,
        "reportLength": 8,
        "controls": {
            "shift": {"type": "modifier", "byte": 1, "bit": 0},
            "play_a": {"type": "button", "byte": 1, "bit": 1},
            "cue_a": {"type": "button", "byte": 1, "bit": 2},
            "jog_a": {"type": "delta", "byte": 2, "signed": True},
            "volume_a": {"type": "absolute", "bytes": [3, 4], "resolution": 12, "max": 4095},
            "browse": {"type": "encoder", "byte": 5},
        },
    },
    "mappings": {
        "play_a": {
            "action": {"type": "transport", "command": "play", "deck": "A"},
            "target": "audio",
            "priority": "high",
            "feedback": {
                "type": "led",
                "hidOut": {"reportId": 128, "byte": 0, "reportLength": 8},
                "stateMap": {"playing": 127, "stopped": 0},
            },
        },
        "cue_a": {
            "action": {"type": "transport", "command": "cue", "deck": "A", "emitRelease": True},
            "target": "audio",
            "priority": "high",
            "feedback": {
                "type": "led",
                "hidOut": {"reportId": 128, "byte": 1, "bit": 3, "reportLength": 8},
            },
        },
        "jog_a_scratch": {
            "control": "jog_a",
            "condition": "shift",
            "action": {"type": "jog", "command": "scratch", "deck": "A"},
            "target": "audio",
            "priority": "critical",
        },
        "jog_a": {
            "action": {"type": "jog", "command": "nudge", "deck": "A"},
            "target": "audio",
            "priority": "critical",
        },
        "volume_a": {
            "action": {"type": "mixer", "command": "volume", "deck": "A"},
            "target": "audio",
            "priority": "normal",
        },
        "browse": {
            "action": {"type": "library", "command": "browse"},
            "target": "app",
            "priority": "normal",
        },
        "track_display": {
            "control": "browse",
            "condition": "false",
            "action": {"type": "library", "command": "trackInfo"},
            "target": "app",
            "priority": "normal",
            "feedback": {
                "type": "display",
                "hidOut": {"reportId": 130, "byte": 2, "reportLength": 16},
            },
        },
    },
}


def hid_report(shift=0, play=0, cue=0, jog=0, volume=0, browse=0):
    """Build a raw input report for HID_MAPPING."""
    buttons = shift | (play << 1) | (cue << 2)
    return [1, buttons, jog & 0xFF, volume & 0xFF, (volume >> 8) & 0xFF, browse, 0, 0]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def midi_mapping():
    return DeviceMapping.model_validate(MIDI_MAPPING)


@pytest.fixture
def generic_midi_mapping():
    return DeviceMapping.model_validate(GENERIC_MIDI_MAPPING)


@pytest.fixture
def hid_mapping():
    return DeviceMapping.model_validate(HID_MAPPING)


@pytest.fixture
def mappings_dir(tmp_path: Path) -> Path:
    """Directory holding the sample mappings as JSON files."""
    (tmp_path / "test-controller.json").write_text(json.dumps(MIDI_MAPPING))
    (tmp_path / "generic-midi.json").write_text(json.dumps(GENERIC_MIDI_MAPPING))
    (tmp_path / "test-hid.json").write_text(json.dumps(HID_MAPPING))
    return tmp_path


@pytest.fixture
def sink():
    return RecordingSink()
