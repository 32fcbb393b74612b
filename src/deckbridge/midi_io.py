"""
MIDI I/O with one background input thread per connected device.

Each MIDIInterface reads its input port on its own thread, runs every
message through the device's MIDINormalizer and publishes the resulting
canonical events to the shared inbound channel. Order within one device is
preserved because a single thread handles that device's input.
"""

import threading
import time
from typing import Any, Callable, Optional

import mido

from deckbridge.callbacks import CallbackManager
from deckbridge.config import DeviceMapping
from deckbridge.events import EventType, HardwareEvent, OutputDescriptor
from deckbridge.inbound import DeviceError
from deckbridge.logging_config import get_logger
from deckbridge.normalizer import DEFAULT_PAIRING_WINDOW_MS, MIDINormalizer

logger = get_logger(__name__)


def output_to_message(output: OutputDescriptor) -> Optional[mido.Message]:
    """
    Build the mido message for a MIDI feedback output.

    Returns:
        Message, or None if the descriptor has no usable address
    """
    value = min(output.value, 127)
    if output.type == EventType.CC and output.controller is not None:
        return mido.Message("control_change", channel=output.channel, control=output.controller, value=value)
    if output.note is not None:
        if output.type == EventType.NOTE_OFF:
            return mido.Message("note_off", channel=output.channel, note=output.note, velocity=value)
        return mido.Message("note_on", channel=output.channel, note=output.note, velocity=value)
    return None


class MIDIInterface:
    """
    Thread-safe MIDI ports for one device with background input processing.
    """

    def __init__(
        self,
        device_id: str,
        publish: Callable[[HardwareEvent], Any],
        window_ms: float = DEFAULT_PAIRING_WINDOW_MS,
        open_input: Callable[[str], Any] = mido.open_input,
        open_output: Callable[[str], Any] = mido.open_output,
        on_fault: Optional[Callable[[str, Exception], None]] = None,
    ):
        """
        Initialize MIDI interface.

        Args:
            device_id: Owning device id
            publish: Receives each canonical event
            window_ms: 14-bit pairing window
            open_input: Opens an input port by name
            open_output: Opens an output port by name
            on_fault: Called with (device_id, error) when the input port fails
        """
        self.device_id = device_id
        self._publish = publish
        self._normalizer = MIDINormalizer(device_id, window_ms)
        self._open_input = open_input
        self._open_output = open_output
        self._on_fault = on_fault

        # Ports
        self._input_port: Optional[Any] = None
        self._output_port: Optional[Any] = None
        self._input_port_name: Optional[str] = None
        self._output_port_name: Optional[str] = None

        # Threading components
        self._running = threading.Event()
        self._input_thread: Optional[threading.Thread] = None

        # Thread-safe port access
        self._port_lock = threading.Lock()

        # Statistics
        self._processed_messages = 0
        self._published_events = 0

    @property
    def is_connected(self) -> bool:
        with self._port_lock:
            return self._input_port is not None or self._output_port is not None

    @property
    def input_port_name(self) -> Optional[str]:
        return self._input_port_name

    @property
    def output_port_name(self) -> Optional[str]:
        return self._output_port_name

    @property
    def has_output(self) -> bool:
        return self._output_port is not None

    def connect(self, input_port_name: Optional[str] = None, output_port_name: Optional[str] = None) -> None:
        """
        Open ports and start the input thread.

        Args:
            input_port_name: Input port name (None to skip input)
            output_port_name: Output port name (None to skip output)

        Raises:
            ValueError: If both port names are None
            DeviceError: If ports cannot be opened
        """
        if input_port_name is None and output_port_name is None:
            raise ValueError("At least one port (input or output) must be specified")

        with self._port_lock:
            try:
                if input_port_name:
                    self._input_port = self._open_input(input_port_name)
                    self._input_port_name = input_port_name
                    logger.info(f"Opened MIDI input port: {input_port_name}")

                if output_port_name:
                    self._output_port = self._open_output(output_port_name)
                    self._output_port_name = output_port_name
                    logger.info(f"Opened MIDI output port: {output_port_name}")

            except (OSError, IOError, ValueError) as e:
                # Clean up if partial connection
                if self._input_port:
                    self._input_port.close()
                    self._input_port = None
                if self._output_port:
                    self._output_port.close()
                    self._output_port = None
                raise DeviceError(f"Failed to open MIDI ports: {e}") from e

        if self._input_port:
            self._running.set()
            self._input_thread = threading.Thread(
                target=self._input_loop, daemon=True, name=f"MIDIInput-{self.device_id}"
            )
            self._input_thread.start()
            logger.debug(f"Started MIDI input thread for {self.device_id}")

    def disconnect(self) -> None:
        """Stop input thread and close MIDI ports."""
        self._running.clear()
        if (
            self._input_thread
            and self._input_thread.is_alive()
            and self._input_thread is not threading.current_thread()
        ):
            self._input_thread.join(timeout=2.0)

            if self._input_thread.is_alive():
                logger.warning(f"Input thread for {self.device_id} did not stop gracefully")

        self._input_thread = None

        with self._port_lock:
            if self._input_port:
                try:
                    self._input_port.close()
                    logger.info(f"Closed MIDI input port: {self._input_port_name}")
                except (OSError, IOError) as e:
                    logger.error(f"Error closing input port: {e}")
                finally:
                    self._input_port = None
                    self._input_port_name = None

            if self._output_port:
                try:
                    self._output_port.close()
                    logger.info(f"Closed MIDI output port: {self._output_port_name}")
                except (OSError, IOError) as e:
                    logger.error(f"Error closing output port: {e}")
                finally:
                    self._output_port = None
                    self._output_port_name = None

        self._normalizer.pairing.clear()
        logger.debug(f"MIDI interface {self.device_id} disconnected. Stats: {self.get_stats()}")

    def _input_loop(self) -> None:
        """
        Background thread: read MIDI input and publish canonical events.

        Uses iter_pending() for non-blocking reads with low latency.
        """
        logger.debug(f"MIDI input loop started for {self.device_id}")

        while self._running.is_set():
            try:
                with self._port_lock:
                    if not self._input_port:
                        break
                    pending = list(self._input_port.iter_pending())

                for msg in pending:
                    self.process_message(msg)

                # iter_pending() is non-blocking, so sleep to prevent CPU spinning
                time.sleep(0.001)

            except (OSError, IOError) as e:
                logger.error(f"MIDI input for {self.device_id} failed: {e}")
                self._running.clear()
                if self._on_fault:
                    self._on_fault(self.device_id, e)
                break
            except Exception as e:
                logger.exception(f"Error in MIDI input loop for {self.device_id}: {e}")

        logger.debug(f"MIDI input loop stopped for {self.device_id}")

    def process_message(self, msg: mido.Message) -> list[HardwareEvent]:
        """
        Normalize one message and publish its events.

        Returns:
            Published events
        """
        events = self._normalizer.process(msg)
        self._processed_messages += 1
        for event in events:
            self._publish(event)
        self._published_events += len(events)
        return events

    def send_message(self, msg: mido.Message) -> bool:
        """
        Send MIDI message to output port (thread-safe).

        Returns:
            True if sent successfully, False otherwise
        """
        with self._port_lock:
            if not self._output_port:
                logger.warning(f"Cannot send MIDI to {self.device_id}: no output port connected")
                return False

            try:
                self._output_port.send(msg)
                return True
            except (OSError, IOError, ValueError) as e:
                logger.error(f"Error sending MIDI message to {self.device_id}: {e}")
                return False

    def get_stats(self) -> dict[str, int]:
        return {
            "processed": self._processed_messages,
            "published": self._published_events,
            "pending_msb": len(self._normalizer.pairing.pending),
        }


class MIDIManager:
    """
    Connects MIDI devices by port name.

    Device ids are ``midi-<port name>``. Port listing and opening go through
    injectable callables so tests run without a MIDI backend.
    """

    def __init__(
        self,
        publish: Callable[[HardwareEvent], Any],
        callbacks: Optional[CallbackManager] = None,
        window_ms: float = DEFAULT_PAIRING_WINDOW_MS,
        list_inputs: Callable[[], list[str]] = mido.get_input_names,
        list_outputs: Callable[[], list[str]] = mido.get_output_names,
        open_input: Callable[[str], Any] = mido.open_input,
        open_output: Callable[[str], Any] = mido.open_output,
    ):
        self._publish = publish
        self._callbacks = callbacks or CallbackManager()
        self._window_ms = window_ms
        self._list_inputs = list_inputs
        self._list_outputs = list_outputs
        self._open_input = open_input
        self._open_output = open_output

        self._lock = threading.RLock()
        # device_id -> {"interface", "name", "mapping"}
        self._devices: dict[str, dict[str, Any]] = {}

    def list_input_ports(self) -> list[str]:
        try:
            return list(self._list_inputs())
        except (OSError, IOError, ImportError) as e:
            logger.error(f"Failed to list MIDI input ports: {e}")
            return []

    def list_output_ports(self) -> list[str]:
        try:
            return list(self._list_outputs())
        except (OSError, IOError, ImportError) as e:
            logger.error(f"Failed to list MIDI output ports: {e}")
            return []

    def scan_devices(self) -> dict[str, list[str]]:
        """
        List available MIDI ports.

        Returns:
            {"inputs": [...], "outputs": [...]}
        """
        devices = {"inputs": self.list_input_ports(), "outputs": self.list_output_ports()}
        logger.info(f"MIDI scan: {len(devices['inputs'])} inputs, {len(devices['outputs'])} outputs")
        return devices

    def find_output_for(self, name: str) -> Optional[str]:
        """Output port with the same name, else the first containing it (case-insensitive)."""
        outputs = self.list_output_ports()
        if name in outputs:
            return name
        lowered = name.lower()
        return next((port for port in outputs if lowered in port.lower()), None)

    @staticmethod
    def make_device_id(name: str) -> str:
        return f"midi-{name}"

    def connect_device(self, name: str, mapping: Optional[DeviceMapping] = None) -> str:
        """
        Open a device's input (and matching output, if any).

        Args:
            name: Input port name
            mapping: Mapping selected for the device

        Returns:
            Device id (the existing id if already connected)

        Raises:
            DeviceError: If no port matches or the ports cannot be opened
        """
        device_id = self.make_device_id(name)

        with self._lock:
            if device_id in self._devices:
                logger.warning(f"MIDI device {name} already connected")
                return device_id

            input_name = name if name in self.list_input_ports() else None
            output_name = self.find_output_for(name)
            if input_name is None and output_name is None:
                raise DeviceError(f"MIDI device not found: {name}")

            interface = MIDIInterface(
                device_id,
                self._publish,
                window_ms=self._window_ms,
                open_input=self._open_input,
                open_output=self._open_output,
                on_fault=self._handle_fault,
            )
            interface.connect(input_name, output_name)
            self._devices[device_id] = {"interface": interface, "name": name, "mapping": mapping}

            # Held so an input fault cannot report the disconnect first
            logger.info(f"MIDI device connected: {name} (ID: {device_id})")
            self._callbacks.on_device_connected(
                device_id,
                {"protocol": "midi", "name": name, "has_input": input_name is not None, "has_output": output_name is not None},
            )
        return device_id

    def disconnect_device(self, device_id: str) -> None:
        with self._lock:
            entry = self._devices.pop(device_id, None)

        if entry is None:
            logger.warning(f"MIDI device {device_id} not found")
            return

        entry["interface"].disconnect()
        logger.info(f"MIDI device disconnected: {entry['name']} (ID: {device_id})")
        self._callbacks.on_device_disconnected(device_id, {"protocol": "midi", "name": entry["name"]})

    def _handle_fault(self, device_id: str, error: Exception) -> None:
        logger.warning(f"MIDI device {device_id} failed, disconnecting: {error}")
        self.disconnect_device(device_id)

    def disconnect_all(self) -> None:
        for device_id in list(self._devices):
            self.disconnect_device(device_id)
        logger.info("All MIDI devices disconnected")

    def send(self, device_id: str, output: OutputDescriptor) -> bool:
        """
        Write a feedback output to a device.

        Returns:
            True if the message was sent
        """
        with self._lock:
            entry = self._devices.get(device_id)
        if entry is None:
            logger.warning(f"Cannot send MIDI to {device_id}: device not found")
            return False

        msg = output_to_message(output)
        if msg is None:
            logger.warning(f"Cannot send MIDI to {device_id}: output has no note or controller")
            return False
        return entry["interface"].send_message(msg)

    def get_interface(self, device_id: str) -> Optional[MIDIInterface]:
        with self._lock:
            entry = self._devices.get(device_id)
            return entry["interface"] if entry else None

    def get_mapping(self, device_id: str) -> Optional[DeviceMapping]:
        with self._lock:
            entry = self._devices.get(device_id)
            return entry["mapping"] if entry else None

    def is_connected(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._devices

    def get_connected_devices(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "device_id": device_id,
                    "protocol": "midi",
                    "name": entry["name"],
                    "input": entry["interface"].input_port_name,
                    "output": entry["interface"].output_port_name,
                }
                for device_id, entry in self._devices.items()
            ]
