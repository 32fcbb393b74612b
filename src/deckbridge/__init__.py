"""
Deckbridge: DJ controller bridge

Reads MIDI and HID DJ controllers, translates their raw input into semantic
DJ actions through declarative per-device mappings, routes the actions by
priority to a DJ engine over WebSocket, and drives controller LEDs, meters
and displays from the engine's state.
"""

__version__ = "0.1.0"

# Actions and events
from .actions import Action, Priority, Target

# Callbacks
from .callbacks import CallbackManager

# Configuration
from .config import (
    ConfigurationError,
    DeviceMapping,
    FeedbackThrottle,
    Protocol,
    ServerSettings,
    load_device_mapping,
    load_settings,
)
from .events import EventType, HardwareEvent, OutputDescriptor

# Expressions
from .expression import Expression, ExpressionError, evaluate

# Feedback
from .feedback import FeedbackStateCache, FeedbackUpdate

# Device I/O
from .hid_io import HIDManager, HIDStateDiffer, parse_report
from .inbound import DeviceError, InboundChannel

# Logging configuration
from .logging_config import (
    get_logger,
    set_module_level,
    setup_logging,
)
from .midi_io import MIDIManager
from .normalizer import HighResolutionPairing, MIDINormalizer, normalize
from .registry import MappingRegistry
from .router import ActionRouter
from .server import ControllerServer
from .translators import HIDTranslator, MIDITranslator, create_translator

__all__ = [
    # Version
    "__version__",
    # Main API
    "ControllerServer",
    "ServerSettings",
    "load_settings",
    # Actions and events
    "Action",
    "Priority",
    "Target",
    "EventType",
    "HardwareEvent",
    "OutputDescriptor",
    # Mappings
    "DeviceMapping",
    "Protocol",
    "FeedbackThrottle",
    "MappingRegistry",
    "load_device_mapping",
    "ConfigurationError",
    # Pipeline
    "normalize",
    "HighResolutionPairing",
    "MIDINormalizer",
    "HIDStateDiffer",
    "parse_report",
    "MIDITranslator",
    "HIDTranslator",
    "create_translator",
    "ActionRouter",
    "FeedbackStateCache",
    "FeedbackUpdate",
    "Expression",
    "ExpressionError",
    "evaluate",
    # Devices
    "MIDIManager",
    "HIDManager",
    "InboundChannel",
    "DeviceError",
    # Callbacks
    "CallbackManager",
    # Logging
    "setup_logging",
    "get_logger",
    "set_module_level",
]
