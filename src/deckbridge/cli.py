"""
Command line entry point.

    deckbridge [--config FILE] [--mappings DIR] [--log-level LEVEL] [--debug]
    deckbridge --list-devices
"""

import argparse
import signal
import sys
import threading
from typing import Optional, Sequence

from rich.console import Console
from rich.table import Table

from deckbridge import __version__
from deckbridge.config import ConfigurationError, ServerSettings, load_settings
from deckbridge.hid_io import HIDManager
from deckbridge.inbound import DeviceError
from deckbridge.logging_config import get_logger, setup_logging
from deckbridge.midi_io import MIDIManager
from deckbridge.server import ControllerServer

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deckbridge",
        description="Bridge MIDI and HID DJ controllers to a DJ engine over WebSocket",
    )
    parser.add_argument("--config", metavar="FILE", help="JSON settings file")
    parser.add_argument("--mappings", metavar="DIR", help="Directory of device mapping files")
    parser.add_argument("--log-level", metavar="LEVEL", help="Log level (debug, info, warning, error)")
    parser.add_argument("--debug", action="store_true", help="Debug logging and periodic stats")
    parser.add_argument("--list-devices", action="store_true", help="List MIDI ports and HID controllers, then exit")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def apply_arguments(settings: ServerSettings, args: argparse.Namespace) -> ServerSettings:
    """Command line flags override file and environment settings."""
    update = {}
    if args.mappings:
        update["mappings_path"] = args.mappings
    if args.log_level:
        update["log_level"] = args.log_level
    if args.debug:
        update["debug"] = True
    if not update:
        return settings
    return ServerSettings.model_validate({**settings.model_dump(), **update})


def list_devices(console: Optional[Console] = None) -> None:
    """Print the MIDI ports and HID controllers visible to the bridge."""
    console = console or Console()

    midi = MIDIManager(lambda event: None).scan_devices()
    table = Table(title="MIDI ports")
    table.add_column("Direction")
    table.add_column("Name")
    for name in midi["inputs"]:
        table.add_row("input", name)
    for name in midi["outputs"]:
        table.add_row("output", name)
    console.print(table)

    table = Table(title="HID controllers")
    table.add_column("Vendor:Product")
    table.add_column("Manufacturer")
    table.add_column("Product")
    table.add_column("Path")
    try:
        for info in HIDManager(lambda event: None).scan_devices():
            path = info.get("path")
            table.add_row(
                f"0x{info.get('vendor_id') or 0:04x}:0x{info.get('product_id') or 0:04x}",
                info.get("manufacturer_string") or "",
                info.get("product_string") or "",
                path.decode(errors="replace") if isinstance(path, bytes) else str(path),
            )
    except DeviceError as e:
        console.print(f"[red]{e}[/red]")
    console.print(table)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = apply_arguments(load_settings(args.config), args)
    except (ConfigurationError, ValueError) as e:
        setup_logging()
        logger.error(f"Configuration error: {e}")
        return 2

    setup_logging(level=settings.effective_log_level)

    if args.list_devices:
        list_devices()
        return 0

    shutdown = threading.Event()

    def request_shutdown(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        shutdown.set()

    signal.signal(signal.SIGINT, request_shutdown)
    signal.signal(signal.SIGTERM, request_shutdown)

    with ControllerServer(settings):
        # Short waits keep the main thread responsive to signals
        while not shutdown.wait(0.5):
            pass

    return 0


if __name__ == "__main__":
    sys.exit(main())
