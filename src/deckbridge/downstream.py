"""
WebSocket client for the downstream peers (audio engine, app server, UI).

Each client runs its connection on a private asyncio event loop in a
background thread. ``send`` is thread safe and fire-and-forget: it returns
False immediately while disconnected, and otherwise schedules the frame on
the client's loop. Lost connections are retried with exponential backoff.
"""

import asyncio
import concurrent.futures
import json
import threading
import time
from typing import TYPE_CHECKING, Any, Callable, Optional

from deckbridge.logging_config import get_logger

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

logger = get_logger(__name__)

SUBSCRIBE_EVENTS = ["playback", "position", "vuMeter", "sync", "effects", "tempo"]
DEFAULT_RECONNECT_INTERVAL = 5.0
MAX_RECONNECT_INTERVAL = 60.0


def backoff_delay(
    attempt: int,
    base: float = DEFAULT_RECONNECT_INTERVAL,
    cap: float = MAX_RECONNECT_INTERVAL,
) -> float:
    """
    Delay before reconnect attempt number ``attempt`` (1-based).

    Example:
        >>> [backoff_delay(n) for n in (1, 2, 3)]
        [5.0, 7.5, 11.25]
    """
    return min(base * 1.5 ** (max(attempt, 1) - 1), cap)


class DownstreamClient:
    """
    Reconnecting WebSocket client for one downstream peer.
    """

    def __init__(
        self,
        url: str,
        name: str = "audio",
        on_state: Optional[Callable[[dict[str, Any]], None]] = None,
        reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL,
        max_reconnect_interval: float = MAX_RECONNECT_INTERVAL,
    ):
        """
        Args:
            url: ws:// or wss:// URL
            name: Peer name used in log lines
            on_state: Receives each incoming state message
            reconnect_interval: First reconnect delay in seconds
            max_reconnect_interval: Reconnect delay cap in seconds
        """
        self.url = url
        self.name = name
        self._on_state = on_state
        self._reconnect_interval = reconnect_interval
        self._max_reconnect_interval = max_reconnect_interval

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._thread: Optional[threading.Thread] = None
        self._ws: Optional["ClientConnection"] = None
        self._running = False
        self._connected = threading.Event()

        self._reconnect_attempts = 0
        self._messages_sent = 0
        self._messages_received = 0

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def start(self) -> None:
        """Start the connection thread (returns without waiting for a connection)."""
        if self._running:
            logger.warning(f"{self.name} client is already running")
            return

        self._running = True
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name=f"Downstream-{self.name}")
        self._thread.start()

        # Wait for the loop to exist so send() can schedule onto it
        deadline = time.monotonic() + 5.0
        while self._loop is None and time.monotonic() < deadline:
            time.sleep(0.01)

    def stop(self) -> None:
        """Close the connection and stop the thread."""
        if not self._running:
            return
        self._running = False

        if self._loop and self._task:
            self._loop.call_soon_threadsafe(self._task.cancel)
        if self._thread:
            self._thread.join(timeout=2.0)

        self._thread = None
        self._loop = None
        self._task = None
        self._connected.clear()
        logger.info(f"{self.name} client stopped")

    def send(self, message: dict[str, Any]) -> bool:
        """
        Queue a JSON message for sending (thread safe, fire-and-forget).

        Returns:
            False if not connected, True once the frame is scheduled
        """
        loop = self._loop
        if not self.is_connected or loop is None:
            logger.debug(f"Cannot send to {self.name}: not connected")
            return False

        future = asyncio.run_coroutine_threadsafe(self._send_text(json.dumps(message)), loop)
        future.add_done_callback(self._log_send_failure)
        self._messages_sent += 1
        return True

    def _log_send_failure(self, future: "concurrent.futures.Future[None]") -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Send to {self.name} failed: {error!r}")

    def handle_message(self, raw: str) -> None:
        """Parse and dispatch one incoming frame."""
        self._messages_received += 1
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse {self.name} message: {e}")
            return

        if not isinstance(message, dict):
            logger.debug(f"Ignoring non-object {self.name} message: {message!r}")
            return

        message_type = message.get("type")
        if message_type == "state":
            if self._on_state is not None:
                try:
                    self._on_state(message)
                except Exception as e:
                    logger.exception(f"Error handling {self.name} state message: {e}")
        elif message_type == "error":
            logger.error(f"{self.name} error: {message.get('message', message)}")
        else:
            logger.debug(f"Unknown {self.name} message type: {message_type}")

    def get_stats(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "connected": self.is_connected,
            "reconnect_attempts": self._reconnect_attempts,
            "sent": self._messages_sent,
            "received": self._messages_received,
        }

    # Event loop thread

    def _run_loop(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._task = loop.create_task(self._connect_and_listen())
        self._loop = loop
        try:
            loop.run_until_complete(self._task)
        except asyncio.CancelledError:
            pass
        finally:
            loop.close()

    async def _connect_and_listen(self) -> None:
        from websockets.asyncio.client import connect
        from websockets.exceptions import WebSocketException

        while self._running:
            try:
                logger.info(f"Connecting to {self.name} at {self.url}")
                async with connect(self.url, open_timeout=10) as ws:
                    self._ws = ws
                    self._connected.set()
                    self._reconnect_attempts = 0
                    logger.info(f"Connected to {self.name}")

                    await ws.send(json.dumps({"type": "subscribe", "events": SUBSCRIBE_EVENTS}))

                    async for raw in ws:
                        self.handle_message(raw)

                logger.warning(f"Disconnected from {self.name}")

            except asyncio.CancelledError:
                break
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logger.warning(f"{self.name} connection failed: {e}")
            finally:
                self._connected.clear()
                self._ws = None

            if not self._running:
                break

            self._reconnect_attempts += 1
            delay = backoff_delay(self._reconnect_attempts, self._reconnect_interval, self._max_reconnect_interval)
            logger.info(f"Reconnecting to {self.name} in {delay:.1f}s (attempt {self._reconnect_attempts})")
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                break

    async def _send_text(self, text: str) -> None:
        from websockets.exceptions import ConnectionClosed

        ws = self._ws
        if ws is None:
            return
        try:
            await ws.send(text)
        except ConnectionClosed as e:
            logger.debug(f"Send to {self.name} failed, connection closed: {e}")
