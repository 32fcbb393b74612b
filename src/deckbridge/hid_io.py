"""
HID input polling, report parsing and state diffing.

HID controllers report their full control state on every read, so each
connected device gets its own poll thread that parses the report into named
control values and diffs them against the previous poll to synthesize
edge-triggered events. The hidapi module is imported lazily so the rest of
the bridge works on hosts without HID support.
"""

import threading
import time
from typing import Any, Callable, Mapping, Optional, Sequence

from pydantic import BaseModel

from deckbridge.callbacks import CallbackManager
from deckbridge.config import DeviceMapping, HIDControlDescriptor, HIDControlType, ParsingConfig
from deckbridge.events import EventType, HardwareEvent, OutputDescriptor
from deckbridge.inbound import DeviceError
from deckbridge.logging_config import get_logger
from deckbridge.utils import monotonic_ms, now_ms, slugify

logger = get_logger(__name__)

DEFAULT_REPORT_SIZE = 64
DEFAULT_READ_TIMEOUT_MS = 10.0

# Vendors auto-detected when scanning without filters
KNOWN_VENDORS = {
    0x17CC: "Native Instruments",
    0x2B73: "Pioneer DJ",
    0x06F8: "Hercules",
    0x0763: "M-Audio",
    0x0944: "Korg",
    0x09E8: "Akai",
}
KNOWN_MANUFACTURER_KEYWORDS = ("native", "pioneer")
KNOWN_PRODUCT_KEYWORDS = ("kontrol", "ddj", "traktor")

_EVENT_TYPES = {
    HIDControlType.BUTTON: EventType.BUTTON,
    HIDControlType.MODIFIER: EventType.MODIFIER,
    HIDControlType.ABSOLUTE: EventType.ABSOLUTE,
    HIDControlType.DELTA: EventType.DELTA,
    HIDControlType.ENCODER: EventType.ENCODER,
}


def _extract(data: Sequence[int], descriptor: HIDControlDescriptor) -> Optional[int]:
    if descriptor.bytes is not None:
        if max(descriptor.bytes) >= len(data):
            return None
        raw = 0
        for shift, offset in enumerate(descriptor.bytes):
            raw |= data[offset] << (shift * 8)
        if descriptor.signed:
            span = 1 << descriptor.bit_resolution
            if raw >= span // 2:
                raw -= span
        return raw

    if descriptor.byte >= len(data):
        return None
    if descriptor.bit is not None:
        return (data[descriptor.byte] >> descriptor.bit) & 0x01

    raw = data[descriptor.byte]
    if descriptor.signed and raw >= 0x80:
        raw -= 0x100
    return raw


def parse_report(data: Sequence[int], controls: Mapping[str, HIDControlDescriptor]) -> dict[str, int]:
    """
    Extract named control values from one raw input report.

    Controls whose bytes are missing from a short report are omitted, not
    defaulted to zero.

    Args:
        data: Raw report bytes
        controls: Parsing descriptors by control name

    Returns:
        Control name -> raw integer value
    """
    state = {}
    for name, descriptor in controls.items():
        value = _extract(data, descriptor)
        if value is not None:
            state[name] = value
    return state


class ControlDelta(BaseModel):
    """One changed control between two polls."""

    control: str
    type: HIDControlType
    value: int
    previous_value: Optional[int] = None
    delta: int
    absolute_position: Optional[int] = None

    model_config = {"frozen": True}


def diff_states(
    previous: Mapping[str, int],
    current: Mapping[str, int],
    types: Mapping[str, HIDControlType],
) -> list[ControlDelta]:
    """
    Compute changes between two parsed states.

    A control missing from ``previous`` always counts as changed. For
    delta-type controls the delta is the raw value itself (a relative tick
    count); for everything else it is current - previous.

    Args:
        previous: Previous control values
        current: Current control values
        types: Control types by name

    Returns:
        Changed controls, in ``current`` order
    """
    deltas = []
    for name, value in current.items():
        previous_value = previous.get(name)
        if previous_value == value and name in previous:
            continue

        control_type = types[name]
        if control_type == HIDControlType.DELTA:
            delta = value
        else:
            delta = value - (previous_value or 0)

        deltas.append(
            ControlDelta(control=name, type=control_type, value=value, previous_value=previous_value, delta=delta)
        )
    return deltas


class HIDStateDiffer:
    """
    Per-device control state.

    Controls omitted from a partial read keep their previous value, so a
    partial read never produces a false delta on the next full read.
    """

    def __init__(self, controls: Mapping[str, HIDControlDescriptor]):
        self._types = {name: descriptor.type for name, descriptor in controls.items()}
        self._state: dict[str, int] = {}
        self._positions: dict[str, int] = {}

    @property
    def state(self) -> dict[str, int]:
        return dict(self._state)

    def update(self, current: Mapping[str, int]) -> list[ControlDelta]:
        """Diff against the stored state, then store the new values."""
        deltas = diff_states(self._state, current, self._types)
        self._state.update(current)

        result = []
        for change in deltas:
            if change.type == HIDControlType.DELTA:
                position = self._positions.get(change.control, 0) + change.delta
                self._positions[change.control] = position
                change = change.model_copy(update={"absolute_position": position})
            result.append(change)
        return result

    def reset(self) -> None:
        self._state.clear()
        self._positions.clear()


def delta_to_event(device_id: str, change: ControlDelta, timestamp: float) -> HardwareEvent:
    """
    Build the canonical event for one control change.

    Delta-type controls report the accumulated position as ``value`` and the
    tick count as ``delta``.
    """
    value = change.absolute_position if change.type == HIDControlType.DELTA else change.value
    return HardwareEvent(
        device_id=device_id,
        type=_EVENT_TYPES[change.type],
        timestamp=timestamp,
        control=change.control,
        value=value,
        delta=change.delta,
        previous_value=change.previous_value,
    )


class HIDPoller:
    """
    Poll loop for one HID device, on its own thread.

    Each tick performs one bounded-wait read; an empty read means nothing
    happened. Any other read failure stops the loop and reports a fault.
    """

    def __init__(
        self,
        device_id: str,
        handle: Any,
        parsing: ParsingConfig,
        publish: Callable[[HardwareEvent], Any],
        interval_ms: float,
        read_timeout_ms: float = DEFAULT_READ_TIMEOUT_MS,
        on_fault: Optional[Callable[[str, Exception], None]] = None,
        clock: Callable[[], float] = now_ms,
    ):
        """
        Args:
            device_id: Owning device id
            handle: Open hidapi device (anything with read(size, timeout_ms))
            parsing: Report layout
            publish: Receives each synthesized event
            interval_ms: Target poll period
            read_timeout_ms: Bounded wait per read
            on_fault: Called with (device_id, error) when the device fails
            clock: Returns epoch milliseconds for event timestamps
        """
        self.device_id = device_id
        self.interval_ms = interval_ms
        self._handle = handle
        self._parsing = parsing
        self._publish = publish
        self._read_timeout_ms = read_timeout_ms
        self._on_fault = on_fault
        self._clock = clock
        self._report_size = parsing.report_length or DEFAULT_REPORT_SIZE
        self._differ = HIDStateDiffer(parsing.controls)
        self._last_timestamp = 0.0

        self._running = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._polls = 0
        self._events = 0

    @property
    def is_running(self) -> bool:
        return self._running.is_set()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._running.set()
        self._thread = threading.Thread(target=self._poll_loop, daemon=True, name=f"HIDPoll-{self.device_id}")
        self._thread.start()
        logger.info(f"Started HID polling for {self.device_id} every {self.interval_ms:g}ms")

    def stop(self) -> None:
        self._running.clear()
        if self._thread and self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
            if self._thread.is_alive():
                logger.warning(f"HID poll thread for {self.device_id} did not stop gracefully")
        self._thread = None

    def poll_once(self) -> list[HardwareEvent]:
        """
        Read one report and publish the resulting events.

        Returns:
            Published events (empty when no data was available)

        Raises:
            DeviceError: If the read fails for any reason other than no data
        """
        try:
            data = self._handle.read(self._report_size, timeout_ms=int(self._read_timeout_ms))
        except (OSError, ValueError) as e:
            raise DeviceError(f"HID read failed on {self.device_id}: {e}") from e

        self._polls += 1
        if not data:
            return []

        if self._parsing.report_id is not None and data[0] != self._parsing.report_id:
            return []

        state = parse_report(data, self._parsing.controls)
        if not state:
            return []

        self._last_timestamp = max(self._last_timestamp, self._clock())
        events = [delta_to_event(self.device_id, change, self._last_timestamp) for change in self._differ.update(state)]
        for event in events:
            self._publish(event)
        self._events += len(events)
        return events

    def _poll_loop(self) -> None:
        logger.debug(f"HID poll loop started for {self.device_id}")

        while self._running.is_set():
            started = monotonic_ms()
            try:
                self.poll_once()
            except DeviceError as e:
                logger.error(str(e))
                self._running.clear()
                if self._on_fault:
                    self._on_fault(self.device_id, e)
                break

            remaining = self.interval_ms - (monotonic_ms() - started)
            if remaining > 0:
                time.sleep(remaining / 1000.0)

        logger.debug(f"HID poll loop stopped for {self.device_id}")

    def get_stats(self) -> dict[str, int]:
        return {"polls": self._polls, "events": self._events}


def _open_hid_path(path: bytes) -> Any:
    import hid

    handle = hid.device()
    handle.open_path(path)
    return handle


def _enumerate_hid() -> list[dict[str, Any]]:
    import hid

    return hid.enumerate()


def _path_to_text(path: Any) -> str:
    return path.decode(errors="replace") if isinstance(path, bytes) else str(path)


def is_known_dj_device(info: Mapping[str, Any]) -> bool:
    """Known DJ vendor id, or a manufacturer/product name that looks like one."""
    if info.get("vendor_id") in KNOWN_VENDORS:
        return True
    manufacturer = (info.get("manufacturer_string") or "").lower()
    product = (info.get("product_string") or "").lower()
    return any(word in manufacturer for word in KNOWN_MANUFACTURER_KEYWORDS) or any(
        word in product for word in KNOWN_PRODUCT_KEYWORDS
    )


class HIDManager:
    """
    Connects HID devices and owns their poll threads.

    Opening and enumeration go through injectable callables so tests can
    run without hidapi or hardware.
    """

    def __init__(
        self,
        publish: Callable[[HardwareEvent], Any],
        callbacks: Optional[CallbackManager] = None,
        jog_poll_interval: float = 8.0,
        button_poll_interval: float = 16.0,
        fader_poll_interval: float = 16.0,
        read_timeout: float = DEFAULT_READ_TIMEOUT_MS,
        opener: Callable[[Any], Any] = _open_hid_path,
        enumerator: Callable[[], list[dict[str, Any]]] = _enumerate_hid,
    ):
        self._publish = publish
        self._callbacks = callbacks or CallbackManager()
        self._intervals = (jog_poll_interval, button_poll_interval, fader_poll_interval)
        self._read_timeout = read_timeout
        self._opener = opener
        self._enumerator = enumerator

        self._lock = threading.RLock()
        # device_id -> {"handle", "poller", "mapping", "path", "manufacturer", "product"}
        self._devices: dict[str, dict[str, Any]] = {}
        # device_id -> report_id -> output buffer
        self._output_reports: dict[str, dict[int, bytearray]] = {}

    def scan_devices(self, vendor_id: Optional[int] = None, product_id: Optional[int] = None) -> list[dict[str, Any]]:
        """
        Enumerate HID devices.

        Without filters only known DJ controllers are returned.

        Raises:
            DeviceError: If enumeration fails
        """
        try:
            all_devices = self._enumerator()
        except (OSError, ImportError) as e:
            raise DeviceError(f"Failed to enumerate HID devices: {e}") from e

        if vendor_id is not None or product_id is not None:
            devices = [
                d
                for d in all_devices
                if (vendor_id is None or d.get("vendor_id") == vendor_id)
                and (product_id is None or d.get("product_id") == product_id)
            ]
        else:
            devices = [d for d in all_devices if is_known_dj_device(d)]

        logger.info(f"HID scan: {len(devices)} of {len(all_devices)} devices matched")
        for d in devices:
            logger.debug(
                f"  {d.get('manufacturer_string')} {d.get('product_string')} "
                f"(0x{d.get('vendor_id', 0):04x}:0x{d.get('product_id', 0):04x}) at {_path_to_text(d.get('path'))}"
            )
        return devices

    @staticmethod
    def make_device_id(mapping: DeviceMapping, path: Any) -> str:
        return f"hid-{slugify(mapping.name)}-{_path_to_text(path).split('/')[-1]}"

    def connect_device(self, path: Any, mapping: DeviceMapping, info: Optional[Mapping[str, Any]] = None) -> str:
        """
        Open a device and start its poll thread.

        Args:
            path: hidapi device path
            mapping: Validated HID mapping (supplies the parsing descriptor)
            info: Optional enumeration entry (manufacturer/product names)

        Returns:
            Device id (the existing id if the path is already connected)

        Raises:
            DeviceError: If the device cannot be opened
        """
        with self._lock:
            for device_id, entry in self._devices.items():
                if entry["path"] == path:
                    logger.warning(f"HID device at {_path_to_text(path)} already connected")
                    return device_id

            try:
                handle = self._opener(path)
            except (OSError, ValueError, ImportError) as e:
                raise DeviceError(f"Failed to open HID device at {_path_to_text(path)}: {e}") from e

            device_id = self.make_device_id(mapping, path)
            info = info or {}
            manufacturer = info.get("manufacturer_string") or mapping.device.vendor or "Unknown"
            product = info.get("product_string") or mapping.name

            poller = HIDPoller(
                device_id,
                handle,
                mapping.parsing,
                self._publish,
                interval_ms=mapping.hid_poll_interval(*self._intervals),
                read_timeout_ms=self._read_timeout,
                on_fault=self._handle_fault,
            )
            self._devices[device_id] = {
                "handle": handle,
                "poller": poller,
                "mapping": mapping,
                "path": path,
                "manufacturer": manufacturer,
                "product": product,
            }
            self._output_reports[device_id] = {}

        poller.start()
        logger.info(f"HID device connected: {manufacturer} {product} (ID: {device_id})")
        self._callbacks.on_device_connected(device_id, {"protocol": "hid", "name": mapping.name})
        return device_id

    def disconnect_device(self, device_id: str) -> None:
        with self._lock:
            entry = self._devices.pop(device_id, None)
            self._output_reports.pop(device_id, None)

        if entry is None:
            logger.warning(f"HID device {device_id} not found")
            return

        entry["poller"].stop()
        try:
            entry["handle"].close()
        except (OSError, ValueError) as e:
            logger.error(f"Error closing HID device {device_id}: {e}")

        logger.info(f"HID device disconnected: {entry['manufacturer']} {entry['product']} (ID: {device_id})")
        self._callbacks.on_device_disconnected(device_id, {"protocol": "hid", "name": entry["mapping"].name})

    def disconnect_all(self) -> None:
        for device_id in list(self._devices):
            self.disconnect_device(device_id)
        logger.info("All HID devices disconnected")

    def _handle_fault(self, device_id: str, error: Exception) -> None:
        logger.warning(f"HID device {device_id} failed, disconnecting: {error}")
        self.disconnect_device(device_id)

    def send(self, device_id: str, output: OutputDescriptor) -> bool:
        """
        Write a feedback output report.

        LED outputs update one byte (or bit) of a per-report buffer kept for
        the device, so other LEDs in the same report keep their state.

        Returns:
            True if the report was written
        """
        with self._lock:
            entry = self._devices.get(device_id)
            if entry is None or output.report_id is None:
                logger.warning(f"Cannot send HID output to {device_id}: device not found")
                return False

            reports = self._output_reports[device_id]
            buffer = reports.get(output.report_id)
            if buffer is None:
                buffer = bytearray(output.report_length or DEFAULT_REPORT_SIZE - 1)
                reports[output.report_id] = buffer

            if output.data is not None:
                start = output.byte or 0
                payload = bytes(output.data)[: max(0, len(buffer) - start)]
                buffer[start : start + len(payload)] = payload
            elif output.byte is not None and output.byte < len(buffer):
                if output.bit is not None:
                    mask = 1 << output.bit
                    buffer[output.byte] = buffer[output.byte] | mask if output.value else buffer[output.byte] & ~mask
                else:
                    buffer[output.byte] = output.value

            report = [output.report_id, *buffer]

            try:
                entry["handle"].write(report)
                return True
            except (OSError, ValueError) as e:
                logger.error(f"Failed to send HID output to {device_id} (report {output.report_id}): {e}")
                return False

    def get_connected_devices(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "device_id": device_id,
                    "protocol": "hid",
                    "name": entry["mapping"].name,
                    "manufacturer": entry["manufacturer"],
                    "product": entry["product"],
                    "path": _path_to_text(entry["path"]),
                    "poll_interval": entry["poller"].interval_ms,
                }
                for device_id, entry in self._devices.items()
            ]

    def get_mapping(self, device_id: str) -> Optional[DeviceMapping]:
        with self._lock:
            entry = self._devices.get(device_id)
            return entry["mapping"] if entry else None

    def is_connected(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._devices
