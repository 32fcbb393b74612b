"""
Controller server: wires devices, translators, router, feedback cache and
downstream clients into one running bridge.

Threads:
- one input thread per MIDI device and one poll thread per HID device, all
  publishing into the inbound channel
- one consumer thread translating inbound events and routing the actions
- the router's dispatch thread
- one event loop thread per downstream client
- optionally a stats thread (debug mode)
"""

import threading
from typing import Any, Callable, Optional

from deckbridge.actions import Action, Target
from deckbridge.callbacks import ActionCallback, CallbackManager, DeviceCallback, StateCallback
from deckbridge.config import DeviceMapping, Protocol, ServerSettings
from deckbridge.downstream import DownstreamClient
from deckbridge.events import HardwareEvent
from deckbridge.feedback import FeedbackStateCache, FeedbackUpdate
from deckbridge.hid_io import HIDManager
from deckbridge.inbound import DeviceError, InboundChannel
from deckbridge.logging_config import get_logger
from deckbridge.midi_io import MIDIManager
from deckbridge.registry import MappingRegistry
from deckbridge.router import ActionRouter

logger = get_logger(__name__)

ClientFactory = Callable[..., DownstreamClient]


class ControllerServer:
    """
    The running bridge.

    Every collaborator can be injected; anything not given is built from
    the settings. Managers passed in must publish into ``inbound`` and
    report connections through ``callbacks``.

    Example:
        >>> from deckbridge.config import load_settings
        >>> with ControllerServer(load_settings()) as server:
        ...     server.on_action(lambda action: print(action.to_message()))
        ...     time.sleep(60)
    """

    def __init__(
        self,
        settings: Optional[ServerSettings] = None,
        registry: Optional[MappingRegistry] = None,
        router: Optional[ActionRouter] = None,
        cache: Optional[FeedbackStateCache] = None,
        inbound: Optional[InboundChannel] = None,
        callbacks: Optional[CallbackManager] = None,
        midi_manager: Optional[MIDIManager] = None,
        hid_manager: Optional[HIDManager] = None,
        client_factory: ClientFactory = DownstreamClient,
    ):
        """
        Args:
            settings: Server settings (defaults apply if None)
            registry: Mapping registry
            router: Action router (built with one sender per downstream client if None)
            cache: Feedback state cache
            inbound: Inbound event channel shared by the device managers
            callbacks: Callback manager shared with the device managers
            midi_manager: MIDI device manager
            hid_manager: HID device manager
            client_factory: Builds downstream clients: factory(url, name=..., on_state=...)
        """
        self.settings = settings or ServerSettings()
        self.registry = registry or MappingRegistry(self.settings.mappings_path)
        self.inbound = inbound or InboundChannel()
        self.callbacks = callbacks or CallbackManager()

        self.clients: dict[Target, DownstreamClient] = {}
        urls = {
            Target.AUDIO: self.settings.audio_engine_url,
            Target.APP: self.settings.app_server_url,
            Target.UI: self.settings.ui_url,
        }
        for target, url in urls.items():
            if url:
                self.clients[target] = client_factory(url, name=target.value, on_state=self._handle_state)

        if router is None:
            # Everything goes through the audio engine unless a target has its own peer
            audio = self.clients.get(Target.AUDIO)
            router = ActionRouter(
                send=audio.send if audio else None,
                senders={target: client.send for target, client in self.clients.items()},
                max_queue_size=self.settings.router_max_queue_size,
            )
        self.router = router

        self.cache = cache or FeedbackStateCache(decks=self.settings.decks, throttle=self.settings.feedback_throttle)
        self.cache.set_emitter(self._emit_feedback)

        self.midi_manager = midi_manager or MIDIManager(
            self.inbound.publish,
            self.callbacks,
            window_ms=self.settings.high_res_window,
        )
        self.hid_manager = hid_manager or HIDManager(
            self.inbound.publish,
            self.callbacks,
            jog_poll_interval=self.settings.hid_jog_poll_interval,
            button_poll_interval=self.settings.hid_button_poll_interval,
            fader_poll_interval=self.settings.hid_fader_poll_interval,
            read_timeout=self.settings.hid_read_timeout,
        )

        self.callbacks.register_device_connected(self._on_device_connected)
        self.callbacks.register_device_disconnected(self._on_device_disconnected)

        self._running = threading.Event()
        self._consumer: Optional[threading.Thread] = None
        self._stats_stop = threading.Event()
        self._stats_thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._running.is_set()

    # Lifecycle

    def start(self) -> None:
        """
        Load mappings, start the pipeline and connect every device that has a mapping.

        Downstream peers that are unreachable do not block startup; their
        clients keep retrying in the background.
        """
        if self.is_running:
            logger.warning("Server already running")
            return

        logger.info("=" * 60)
        logger.info("Starting controller server")
        logger.info("=" * 60)

        self.registry.load_all()

        for client in self.clients.values():
            client.start()
        self.router.start()

        self._running.set()
        self._consumer = threading.Thread(target=self._consume_loop, daemon=True, name="InboundConsumer")
        self._consumer.start()

        if self.settings.midi_auto_connect:
            self.connect_midi_devices()
        if self.settings.hid_auto_connect:
            self.connect_hid_devices()

        if self.settings.debug:
            self._start_stats_logging()

        logger.info("=" * 60)
        logger.info("Controller server started")
        logger.info(f"Connected MIDI devices: {len(self.midi_manager.get_connected_devices())}")
        logger.info(f"Connected HID devices: {len(self.hid_manager.get_connected_devices())}")
        logger.info(f"Available mappings: {len(self.registry.available_mappings())}")
        for target, client in self.clients.items():
            logger.info(f"  {target.value}: {client.url} ({'connected' if client.is_connected else 'connecting'})")
        logger.info("=" * 60)

    def stop(self) -> None:
        """Disconnect devices and stop every thread, in reverse start order."""
        if not self.is_running:
            return

        logger.info("Stopping controller server")

        self._stats_stop.set()
        if self._stats_thread:
            self._stats_thread.join(timeout=2.0)
            self._stats_thread = None

        self.midi_manager.disconnect_all()
        self.hid_manager.disconnect_all()

        self._running.clear()
        if self._consumer:
            self._consumer.join(timeout=2.0)
            self._consumer = None

        self.router.stop()
        for client in self.clients.values():
            client.stop()

        logger.info("Controller server stopped")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False

    # Device discovery

    def connect_midi_devices(self) -> list[str]:
        """
        Connect every MIDI input that resolves to a mapping.

        Returns:
            Connected device ids
        """
        logger.info("Scanning for MIDI devices...")
        devices = self.midi_manager.scan_devices()
        if not devices["inputs"] and not devices["outputs"]:
            logger.warning("No MIDI devices found")
            return []

        connected = []
        for name in devices["inputs"]:
            mapping = self.registry.find_matching_mapping(name, protocol=Protocol.MIDI)
            if mapping is None:
                logger.warning(f"No mapping available for {name}, skipping")
                continue
            logger.info(f"Found mapping for {name}: {mapping.name}")
            try:
                connected.append(self.midi_manager.connect_device(name, mapping))
            except DeviceError as e:
                logger.error(f"Failed to connect to {name}: {e}")
        return connected

    def connect_hid_devices(self) -> list[str]:
        """
        Connect every enumerated HID controller that resolves to a mapping.

        Returns:
            Connected device ids
        """
        logger.info("Scanning for HID devices...")
        try:
            devices = self.hid_manager.scan_devices()
        except DeviceError as e:
            logger.error(str(e))
            return []

        if not devices:
            logger.warning("No HID devices found")
            return []

        connected = []
        for info in devices:
            product = info.get("product_string") or "Unknown"
            label = f"{info.get('manufacturer_string') or ''} {product}".strip()
            mapping = self.registry.find_matching_mapping(
                product, info.get("vendor_id"), info.get("product_id"), protocol=Protocol.HID
            )
            if mapping is None:
                logger.warning(
                    f"No mapping available for {label} "
                    f"(0x{info.get('vendor_id') or 0:04x}:0x{info.get('product_id') or 0:04x}), skipping"
                )
                continue
            logger.info(f"Found mapping for {label}: {mapping.name}")
            try:
                connected.append(self.hid_manager.connect_device(info.get("path"), mapping, info))
            except DeviceError as e:
                logger.error(f"Failed to connect to {label}: {e}")
        return connected

    # Callback registration

    def on_action(self, callback: ActionCallback, action_type: Optional[str] = None) -> None:
        """
        Register a callback for translated actions.

        Args:
            callback: Function(action: Action) -> None
            action_type: Only fire for this action type (None = all)
        """
        self.callbacks.register_action(callback, action_type)

    def on_device_connected(self, callback: DeviceCallback) -> None:
        self.callbacks.register_device_connected(callback)

    def on_device_disconnected(self, callback: DeviceCallback) -> None:
        self.callbacks.register_device_disconnected(callback)

    def on_state(self, callback: StateCallback) -> None:
        """Register a callback for raw downstream state messages."""
        self.callbacks.register_state(callback)

    # Inbound path

    def _consume_loop(self) -> None:
        logger.debug("Inbound consumer started")
        while self._running.is_set():
            event = self.inbound.get(timeout=0.1)
            if event is None:
                continue
            try:
                self.handle_event(event)
            except Exception as e:
                logger.exception(f"Error handling event from {event.device_id}: {e}")
        logger.debug("Inbound consumer stopped")

    def handle_event(self, event: HardwareEvent) -> Optional[Action]:
        """
        Translate one inbound event and route the resulting action.

        Returns:
            The routed action, or None if the event mapped to nothing
        """
        translator = self.registry.get_translator(event.device_id)
        if translator is None:
            mapping = self._mapping_for(event.device_id)
            if mapping is None:
                logger.warning(f"Received input from unknown device: {event.device_id}")
                return None
            translator = self.registry.get_translator(event.device_id, mapping)

        action = translator.translate(event)
        if action is None:
            return None

        self.router.route(action)
        self.callbacks.on_action(action)
        return action

    def _mapping_for(self, device_id: str) -> Optional[DeviceMapping]:
        return self.midi_manager.get_mapping(device_id) or self.hid_manager.get_mapping(device_id)

    def _manager_for(self, device_id: str) -> Optional[Any]:
        if self.midi_manager.is_connected(device_id):
            return self.midi_manager
        if self.hid_manager.is_connected(device_id):
            return self.hid_manager
        return None

    # Device lifecycle

    def _on_device_connected(self, device_id: str, info: dict[str, Any]) -> None:
        mapping = self._mapping_for(device_id)
        if mapping is None:
            logger.warning(f"Device {device_id} connected without a mapping")
            return
        self.registry.get_translator(device_id, mapping)
        self.cache.sync_device(device_id)

    def _on_device_disconnected(self, device_id: str, info: dict[str, Any]) -> None:
        self.registry.remove_translator(device_id)
        self.cache.unregister_device(device_id)

    # Feedback path

    def _handle_state(self, message: dict[str, Any]) -> None:
        self.callbacks.on_state(message)
        self.cache.apply_downstream_state(message)

    def _emit_feedback(self, update: FeedbackUpdate) -> bool:
        translator = self.registry.get_translator(update.device_id)
        manager = self._manager_for(update.device_id)
        if translator is None or manager is None:
            logger.debug(f"Dropping feedback {update.control_id} for unknown device {update.device_id}")
            return False

        output = translator.action_to_wire_output(update.as_action(), update.state)
        if output is None:
            return False
        return manager.send(update.device_id, output)

    # Observability

    def _start_stats_logging(self) -> None:
        self._stats_stop.clear()
        self._stats_thread = threading.Thread(target=self._stats_loop, daemon=True, name="StatsLogger")
        self._stats_thread.start()

    def _stats_loop(self) -> None:
        while not self._stats_stop.wait(self.settings.stats_interval):
            self.router.log_stats()
            inbound = self.inbound.get_stats()
            logger.info(
                f"Inbound stats: published={inbound['published']} dropped={inbound['dropped']} "
                f"queued={inbound['queued']}"
            )

    def get_stats(self) -> dict[str, Any]:
        return {
            "router": self.router.get_stats(),
            "inbound": self.inbound.get_stats(),
            "devices": {
                "midi": len(self.midi_manager.get_connected_devices()),
                "hid": len(self.hid_manager.get_connected_devices()),
            },
            "downstream": {target.value: client.get_stats() for target, client in self.clients.items()},
        }
