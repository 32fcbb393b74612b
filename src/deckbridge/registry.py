"""
Mapping registry: loads mapping files, resolves devices to mappings, and
owns one translator per connected device.

Resolution order for a device: exact name (file stem or device name), then
USB vendor/product id, then case-insensitive partial name match, then the
protocol's generic mapping.
"""

import threading
from pathlib import Path
from typing import Any, Optional, Union

from deckbridge.config import DEFAULT_MAPPINGS_PATH, ConfigurationError, DeviceMapping, Protocol, load_device_mapping
from deckbridge.logging_config import get_logger
from deckbridge.translators import Translator, create_translator

logger = get_logger(__name__)

GENERIC_MAPPINGS = {
    Protocol.MIDI: "generic-midi",
    Protocol.HID: "generic-hid",
}


class MappingRegistry:
    """
    Registry of loaded device mappings, keyed by file stem.
    """

    def __init__(self, mappings_path: Union[str, Path] = DEFAULT_MAPPINGS_PATH):
        """
        Args:
            mappings_path: Directory of ``*.json`` mapping files
        """
        self.mappings_path = Path(mappings_path)
        self._mappings: dict[str, DeviceMapping] = {}
        self._translators: dict[str, Translator] = {}
        # device_id -> mapping stem
        self._device_mappings: dict[str, str] = {}
        self._lock = threading.RLock()

    # Loading

    def load_all(self) -> int:
        """
        Load every mapping file in the mappings directory.

        Invalid files are skipped with a warning.

        Returns:
            Number of mappings loaded
        """
        if not self.mappings_path.is_dir():
            logger.warning(f"Mappings directory not found: {self.mappings_path}")
            return 0

        loaded = 0
        for path in sorted(self.mappings_path.glob("*.json")):
            try:
                self.load_mapping(path.stem)
                loaded += 1
            except ConfigurationError as e:
                logger.warning(f"Skipping mapping {path.name}: {e}")

        logger.info(f"Loaded {loaded} device mappings from {self.mappings_path}")
        return loaded

    def load_mapping(self, name: str) -> DeviceMapping:
        """
        Load (or return the cached) mapping by file stem.

        Raises:
            ConfigurationError: If the file is missing or invalid
        """
        with self._lock:
            cached = self._mappings.get(name)
            if cached is not None:
                return cached

            mapping = load_device_mapping(self.mappings_path / f"{name}.json")
            self._mappings[name] = mapping
            logger.info(
                f"Loaded mapping '{name}': {mapping.name} ({mapping.protocol.value}, {len(mapping.mappings)} controls)"
            )
            return mapping

    def add_mapping(self, name: str, mapping: DeviceMapping) -> None:
        """Register an already validated mapping under a name."""
        with self._lock:
            self._mappings[name] = mapping

    def get_mapping(self, name: str) -> Optional[DeviceMapping]:
        with self._lock:
            return self._mappings.get(name)

    def mapping_name(self, mapping: DeviceMapping) -> Optional[str]:
        """Registry key of a loaded mapping."""
        with self._lock:
            return next((name for name, loaded in self._mappings.items() if loaded is mapping), None)

    # Resolution

    def find_matching_mapping(
        self,
        device_name: str,
        vendor_id: Optional[int] = None,
        product_id: Optional[int] = None,
        protocol: Optional[Protocol] = None,
    ) -> Optional[DeviceMapping]:
        """
        Resolve the mapping for a device.

        Args:
            device_name: MIDI port name or HID product name
            vendor_id: USB vendor id (HID)
            product_id: USB product id (HID)
            protocol: Restrict candidates to one protocol

        Returns:
            Best mapping, or None if not even a generic mapping applies
        """
        with self._lock:
            candidates = {
                name: mapping
                for name, mapping in self._mappings.items()
                if protocol is None or mapping.protocol == protocol
            }

            # Exact name
            for name, mapping in candidates.items():
                if device_name in (name, mapping.name):
                    return mapping

            # USB ids
            if vendor_id is not None and product_id is not None:
                for mapping in candidates.values():
                    if mapping.device.vendor_id == vendor_id and mapping.device.product_id == product_id:
                        logger.info(f"Found vendor/product match for {device_name}: {mapping.name}")
                        return mapping

            # Partial name, generic mappings excluded
            lowered = device_name.lower()
            generic = set(GENERIC_MAPPINGS.values())
            for name, mapping in candidates.items():
                if name in generic:
                    continue
                for candidate in (name.lower(), mapping.name.lower()):
                    if candidate in lowered or lowered in candidate:
                        logger.info(f"Found partial match for {device_name}: {name}")
                        return mapping

            # Generic fallback
            for fallback_protocol, name in GENERIC_MAPPINGS.items():
                if protocol not in (None, fallback_protocol):
                    continue
                mapping = candidates.get(name)
                if mapping is not None:
                    logger.warning(f"No specific mapping for {device_name}, using {name}")
                    return mapping

        return None

    # Translators

    def get_translator(self, device_id: str, mapping: Optional[DeviceMapping] = None) -> Optional[Translator]:
        """
        Translator for a connected device, created on first use.

        Args:
            device_id: Connected device id
            mapping: Mapping to build the translator from (needed the first time)

        Returns:
            Translator, or None if the device has none and no mapping was given
        """
        with self._lock:
            translator = self._translators.get(device_id)
            if translator is not None or mapping is None:
                return translator

            translator = create_translator(mapping)
            self._translators[device_id] = translator
            name = self.mapping_name(mapping)
            if name is not None:
                self._device_mappings[device_id] = name
            logger.info(f"Created {mapping.protocol.value.upper()} translator for {device_id} using {mapping.name}")
            return translator

    def remove_translator(self, device_id: str) -> None:
        with self._lock:
            if self._translators.pop(device_id, None) is not None:
                logger.debug(f"Removed translator for {device_id}")
            self._device_mappings.pop(device_id, None)

    def reload_mapping(self, name: str) -> DeviceMapping:
        """
        Re-read one mapping file and rebuild the translators using it.

        Raises:
            ConfigurationError: If the new file is invalid (the old mapping stays active)
        """
        logger.info(f"Reloading mapping {name}")
        mapping = load_device_mapping(self.mappings_path / f"{name}.json")

        with self._lock:
            self._mappings[name] = mapping
            for device_id, mapping_name in self._device_mappings.items():
                if mapping_name == name:
                    self._translators[device_id] = create_translator(mapping)
                    logger.info(f"Updated translator for {device_id} with new mapping")
        return mapping

    def available_mappings(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "id": name,
                    "name": mapping.name,
                    "protocol": mapping.protocol.value,
                    "vendor": mapping.device.vendor,
                    "vendor_id": mapping.device.vendor_id,
                    "product_id": mapping.device.product_id,
                    "mapping_count": len(mapping.mappings),
                }
                for name, mapping in self._mappings.items()
            ]

    @property
    def translators(self) -> dict[str, Translator]:
        with self._lock:
            return dict(self._translators)
