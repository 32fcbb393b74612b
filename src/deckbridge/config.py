"""
Pydantic configuration models for device mappings and server settings.

Device mapping files are JSON documents with camelCase keys describing one
controller: a device descriptor, an optional HID parsing descriptor, and a
set of named control mappings binding a wire-level pattern to an action
template, a target and a priority. Everything is validated at load time so
that translation never has to deal with a malformed mapping.
"""

import json
import os
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from deckbridge.actions import ActionValue, Priority, Target
from deckbridge.events import EventType, MIDI_EVENT_TYPES
from deckbridge.expression import ExpressionError, compile_expression
from deckbridge.logging_config import get_logger, resolve_level
from deckbridge.utils import parse_usb_id

logger = get_logger(__name__)

DEFAULT_MAPPINGS_PATH = Path(__file__).parent / "mappings"


class ConfigurationError(Exception):
    """Raised when a mapping file or settings value is invalid."""

    pass


class _MappingModel(BaseModel):
    """Base for mapping-file models: camelCase aliases, snake_case accepted, immutable."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


def _check_expression(source: Optional[str]) -> Optional[str]:
    if source is not None:
        try:
            compile_expression(source)
        except ExpressionError as e:
            raise ValueError(f"Invalid expression '{source}': {e}") from e
    return source


class Protocol(str, Enum):
    MIDI = "midi"
    HID = "hid"


class FeedbackClass(str, Enum):
    """Throttle classes for hardware feedback."""

    LED = "led"
    VU_METER = "vuMeter"
    DISPLAY = "display"


class HIDControlType(str, Enum):
    BUTTON = "button"
    MODIFIER = "modifier"
    ABSOLUTE = "absolute"
    DELTA = "delta"
    ENCODER = "encoder"


class PollingConfig(_MappingModel):
    """Per-device HID poll interval overrides in milliseconds."""

    default: Optional[float] = Field(default=None, gt=0)
    jog_wheels: Optional[float] = Field(default=None, gt=0)
    buttons: Optional[float] = Field(default=None, gt=0)
    faders: Optional[float] = Field(default=None, gt=0)


class DeviceDescriptor(_MappingModel):
    """Identifies the hardware a mapping applies to."""

    name: str = Field(min_length=1)
    protocol: Protocol
    vendor: Optional[str] = None
    vendor_id: Optional[int] = None
    product_id: Optional[int] = None
    polling: PollingConfig = Field(default_factory=PollingConfig)

    @field_validator("vendor_id", "product_id", mode="before")
    @classmethod
    def parse_usb_ids(cls, v):
        """Accept 0x17cc, "0x17cc" or "6092"."""
        return parse_usb_id(v)


class MIDIPattern(_MappingModel):
    """MIDI wire pattern: type + channel + note-or-controller."""

    type: EventType
    channel: int = Field(default=0, ge=0, le=15)
    note: Optional[int] = Field(default=None, ge=0, le=127)
    controller: Optional[int] = Field(default=None, ge=0, le=127)
    high_res: bool = False

    @model_validator(mode="after")
    def validate_addressing(self):
        if self.type not in MIDI_EVENT_TYPES:
            raise ValueError(f"'{self.type.value}' is not a MIDI event type")
        if self.type in (EventType.NOTE_ON, EventType.NOTE_OFF) and self.note is None:
            raise ValueError(f"MIDI pattern of type '{self.type.value}' requires 'note'")
        if self.type == EventType.CC and self.controller is None:
            raise ValueError("MIDI pattern of type 'cc' requires 'controller'")
        return self

    @property
    def lookup_key(self) -> tuple[str, int, Optional[int]]:
        """Exact-match key (type, channel, note-or-controller)."""
        number = self.note if self.note is not None else self.controller
        return (self.type.value, self.channel, number)


class HIDControlDescriptor(_MappingModel):
    """
    Where a named control lives in the input report.

    A control is either a single bit (``byte`` + ``bit``), a single byte
    (``byte``), or a little-endian field over the report offsets listed in
    ``bytes``, optionally signed over ``resolution`` bits.
    """

    type: HIDControlType
    byte: Optional[int] = Field(default=None, ge=0)
    bit: Optional[int] = Field(default=None, ge=0, le=7)
    bytes: Optional[list[int]] = Field(default=None, min_length=1, max_length=4)
    signed: bool = False
    resolution: Optional[int] = Field(default=None, ge=1, le=32)
    min: Optional[int] = None
    max: Optional[int] = None

    @model_validator(mode="after")
    def validate_location(self):
        if self.bytes is None and self.byte is None:
            raise ValueError("HID control requires 'byte' or 'bytes'")
        if self.bit is not None and self.byte is None:
            raise ValueError("'bit' requires 'byte'")
        if self.bytes is not None and any(offset < 0 for offset in self.bytes):
            raise ValueError("'bytes' offsets must be non-negative")
        return self

    @property
    def bit_resolution(self) -> int:
        """Effective bit width of the control's value."""
        if self.bit is not None:
            return 1
        if self.resolution:
            return self.resolution
        return len(self.bytes) * 8 if self.bytes else 8

    @property
    def value_range(self) -> tuple[int, int]:
        """(min, max) used to normalize absolute controls."""
        low = self.min if self.min is not None else 0
        high = self.max if self.max is not None else (1 << self.bit_resolution) - 1
        return (low, high)


class ParsingConfig(_MappingModel):
    """HID input report layout."""

    report_id: Optional[int] = None
    report_length: Optional[int] = Field(default=None, ge=1)
    controls: dict[str, HIDControlDescriptor] = Field(default_factory=dict)


class ActionTemplate(_MappingModel):
    """Shape of the action produced when a control mapping fires."""

    type: str = Field(min_length=1)
    command: str = Field(min_length=1)
    value: Optional[ActionValue] = None
    value_expression: Optional[str] = None
    direction: Optional[str] = None
    mode: Optional[str] = None
    deck: Optional[str] = None
    emit_release: bool = False

    @field_validator("value_expression", "direction", "mode")
    @classmethod
    def validate_expressions(cls, v):
        """Expressions must parse at load time."""
        return _check_expression(v)


class MIDIOutput(_MappingModel):
    """MIDI feedback address."""

    type: EventType = EventType.NOTE_ON
    channel: int = Field(default=0, ge=0, le=15)
    note: Optional[int] = Field(default=None, ge=0, le=127)
    controller: Optional[int] = Field(default=None, ge=0, le=127)


class HIDOutput(_MappingModel):
    """HID feedback address inside an output report."""

    report_id: int = Field(ge=0)
    byte: Optional[int] = Field(default=None, ge=0)
    bit: Optional[int] = Field(default=None, ge=0, le=7)
    report_length: Optional[int] = Field(default=None, ge=1)


class FeedbackDescriptor(_MappingModel):
    """Output wire pattern plus state-to-value map."""

    type: FeedbackClass = FeedbackClass.LED
    midi_out: Optional[MIDIOutput] = None
    hid_out: Optional[HIDOutput] = None
    state_map: dict[str, int] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_output(self):
        if self.midi_out is None and self.hid_out is None:
            raise ValueError("Feedback requires 'midiOut' or 'hidOut'")
        return self


class ControlMapping(_MappingModel):
    """
    One control mapping.

    ``target`` and ``priority`` may also be written inside ``action``; they
    are lifted to the mapping level before validation.
    """

    midi: Optional[MIDIPattern] = None
    control: Optional[str] = None
    action: ActionTemplate
    target: Target
    priority: Priority
    condition: Optional[str] = None
    feedback: Optional[FeedbackDescriptor] = None

    @model_validator(mode="before")
    @classmethod
    def lift_routing_fields(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("action"), dict):
            action = dict(data["action"])
            data = dict(data)
            for key in ("target", "priority"):
                if key in action:
                    data.setdefault(key, action.pop(key))
            data["action"] = action
        return data

    @field_validator("condition")
    @classmethod
    def validate_condition(cls, v):
        return _check_expression(v)


class DeviceMapping(_MappingModel):
    """Root of a device mapping file."""

    device: DeviceDescriptor
    parsing: Optional[ParsingConfig] = None
    mappings: dict[str, ControlMapping] = Field(default_factory=dict)

    @field_validator("mappings", mode="before")
    @classmethod
    def drop_comment_keys(cls, v):
        """Keys starting with '_' are comments."""
        if isinstance(v, dict):
            return {key: value for key, value in v.items() if not key.startswith("_")}
        return v

    @model_validator(mode="after")
    def validate_protocol_bindings(self):
        if self.device.protocol == Protocol.HID:
            if self.parsing is None:
                raise ValueError("HID mappings require a 'parsing' section")
            for key, control, _ in self.iter_control_mappings():
                if control not in self.parsing.controls:
                    raise ValueError(f"Mapping '{key}' refers to undeclared HID control '{control}'")
        else:
            seen: dict[tuple, str] = {}
            for key, mapping in self.mappings.items():
                if mapping.midi is None:
                    raise ValueError(f"Mapping '{key}' has no 'midi' pattern")
                lookup_key = mapping.midi.lookup_key
                if lookup_key in seen:
                    raise ValueError(f"Mappings '{seen[lookup_key]}' and '{key}' share MIDI pattern {lookup_key}")
                seen[lookup_key] = key
        return self

    @property
    def name(self) -> str:
        return self.device.name

    @property
    def protocol(self) -> Protocol:
        return self.device.protocol

    def iter_control_mappings(self) -> Iterator[tuple[str, str, ControlMapping]]:
        """
        Yield (mapping key, HID control name, mapping) in file order.

        The control name defaults to the mapping key.
        """
        for key, mapping in self.mappings.items():
            yield key, mapping.control or key, mapping

    def hid_poll_interval(self, jog_wheels: float, buttons: float, faders: float) -> float:
        """
        Effective HID poll interval in milliseconds.

        The fastest requirement across the control classes declared in the
        parsing descriptor wins; device polling overrides replace the
        server-wide defaults per class.

        Args:
            jog_wheels: Default interval for delta/encoder controls
            buttons: Default interval for button/modifier controls
            faders: Default interval for absolute controls
        """
        polling = self.device.polling
        intervals = {
            HIDControlType.DELTA: polling.jog_wheels or jog_wheels,
            HIDControlType.ENCODER: polling.jog_wheels or jog_wheels,
            HIDControlType.BUTTON: polling.buttons or buttons,
            HIDControlType.MODIFIER: polling.buttons or buttons,
            HIDControlType.ABSOLUTE: polling.faders or faders,
        }
        declared = {control.type for control in self.parsing.controls.values()} if self.parsing else set()
        if not declared:
            return polling.default or buttons
        return min(intervals[control_type] for control_type in declared)


def load_device_mapping(path: Union[str, Path]) -> DeviceMapping:
    """
    Load and validate one mapping file.

    Args:
        path: JSON mapping file

    Returns:
        Validated DeviceMapping

    Raises:
        ConfigurationError: If the file is missing, not JSON, or invalid
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"Cannot read mapping file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Mapping file {path} is not valid JSON: {e}") from e

    try:
        return DeviceMapping.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid mapping file {path}: {e}") from e


class FeedbackThrottle(_MappingModel):
    """Minimum interval between feedback emissions per class, in milliseconds."""

    led: float = Field(default=20.0, ge=0)
    vu_meter: float = Field(default=16.0, ge=0)
    display: float = Field(default=100.0, ge=0)

    def interval_for(self, feedback_class: FeedbackClass) -> float:
        return {
            FeedbackClass.LED: self.led,
            FeedbackClass.VU_METER: self.vu_meter,
            FeedbackClass.DISPLAY: self.display,
        }[feedback_class]


class ServerSettings(_MappingModel):
    """Process-wide settings (file + environment)."""

    audio_engine_url: str = "ws://localhost:8080"
    app_server_url: Optional[str] = None
    ui_url: Optional[str] = None

    log_level: str = "INFO"
    debug: bool = False

    mappings_path: Path = DEFAULT_MAPPINGS_PATH

    hid_jog_poll_interval: float = Field(default=8.0, gt=0)
    hid_button_poll_interval: float = Field(default=16.0, gt=0)
    hid_fader_poll_interval: float = Field(default=16.0, gt=0)
    hid_read_timeout: float = Field(default=10.0, gt=0)

    high_res_window: float = Field(default=50.0, gt=0)
    router_max_queue_size: int = Field(default=1000, ge=1)
    stats_interval: float = Field(default=30.0, gt=0)
    feedback_throttle: FeedbackThrottle = Field(default_factory=FeedbackThrottle)
    decks: list[str] = Field(default_factory=lambda: ["A", "B"], min_length=1)

    midi_auto_connect: bool = True
    hid_auto_connect: bool = True

    @field_validator("audio_engine_url", "app_server_url", "ui_url")
    @classmethod
    def validate_ws_url(cls, v):
        if v is not None and not v.startswith(("ws://", "wss://")):
            raise ValueError(f"WebSocket URL must start with ws:// or wss://, got '{v}'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        resolve_level(v)
        return v.upper()

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.debug else self.log_level


# Environment variable -> settings field
ENVIRONMENT_VARIABLES = {
    "AUDIO_ENGINE_URL": "audio_engine_url",
    "APP_SERVER_URL": "app_server_url",
    "UI_URL": "ui_url",
    "LOG_LEVEL": "log_level",
    "DEBUG": "debug",
    "MAPPINGS_PATH": "mappings_path",
    "HID_JOG_POLL_INTERVAL": "hid_jog_poll_interval",
    "HID_BUTTON_POLL_INTERVAL": "hid_button_poll_interval",
    "HID_FADER_POLL_INTERVAL": "hid_fader_poll_interval",
}


def load_settings(
    config_file: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ServerSettings:
    """
    Build settings from an optional JSON file and the environment.

    Environment variables take precedence over the file.

    Args:
        config_file: Optional JSON settings file (camelCase or snake_case keys)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated ServerSettings

    Raises:
        ConfigurationError: If the file cannot be read or a value is invalid
    """
    environ = os.environ if environ is None else environ

    file_data: dict[str, Any] = {}
    if config_file is not None:
        try:
            file_data = json.loads(Path(config_file).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot load settings file {config_file}: {e}") from e
        if not isinstance(file_data, dict):
            raise ConfigurationError(f"Settings file {config_file} must contain a JSON object")

    overrides = {field: environ[var] for var, field in ENVIRONMENT_VARIABLES.items() if environ.get(var)}

    try:
        settings = ServerSettings.model_validate(file_data)
        if overrides:
            settings = ServerSettings.model_validate({**settings.model_dump(), **overrides})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e

    if overrides:
        logger.debug(f"Settings overridden from environment: {sorted(overrides)}")
    return settings
