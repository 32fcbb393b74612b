import asyncio
import json
import logging
import threading
import time

import pytest

from deckbridge.downstream import DownstreamClient, backoff_delay


def test_backoff_grows_and_caps():
    assert [backoff_delay(n) for n in (1, 2, 3)] == [5.0, 7.5, 11.25]
    assert backoff_delay(20) == 60.0
    assert backoff_delay(0) == 5.0
    assert backoff_delay(3, base=1.0, cap=2.0) == 2.0


class TestHandleMessage:
    @pytest.fixture
    def received(self):
        return []

    @pytest.fixture
    def client(self, received):
        return DownstreamClient("ws://localhost:1", on_state=received.append)

    def test_state_messages_reach_callback(self, client, received):
        message = {"type": "state", "deck": "A", "playback": {"playing": True}}
        client.handle_message(json.dumps(message))
        assert received == [message]
        assert client.get_stats()["received"] == 1

    def test_error_messages_are_logged(self, client, received, caplog):
        with caplog.at_level(logging.ERROR):
            client.handle_message(json.dumps({"type": "error", "message": "deck offline"}))
        assert "deck offline" in caplog.text
        assert received == []

    @pytest.mark.parametrize("raw", ["{not json", "[1, 2]", '"state"', json.dumps({"type": "hello"})])
    def test_other_frames_are_ignored(self, client, received, raw):
        client.handle_message(raw)
        assert received == []

    def test_callback_errors_are_isolated(self):
        def explode(message):
            raise RuntimeError("bad state")

        client = DownstreamClient("ws://localhost:1", on_state=explode)
        client.handle_message(json.dumps({"type": "state"}))
        assert client.get_stats()["received"] == 1


def test_send_while_disconnected():
    client = DownstreamClient("ws://localhost:1", name="app")
    assert not client.send({"type": "library", "command": "browse"})
    assert client.get_stats() == {
        "url": "ws://localhost:1",
        "connected": False,
        "reconnect_attempts": 0,
        "sent": 0,
        "received": 0,
    }


def test_stop_without_start_is_a_no_op():
    client = DownstreamClient("ws://localhost:1")
    client.stop()
    assert not client.is_connected


class FailingSocket:
    async def send(self, text):
        raise RuntimeError("socket buffer full")


def test_failed_send_is_logged(caplog):
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    client = DownstreamClient("ws://localhost:1", name="audio")
    client._loop = loop
    client._ws = FailingSocket()
    client._connected.set()
    try:
        with caplog.at_level(logging.ERROR):
            assert client.send({"type": "transport", "command": "play"})
            deadline = time.monotonic() + 2.0
            while "socket buffer full" not in caplog.text and time.monotonic() < deadline:
                time.sleep(0.01)
        assert "Send to audio failed" in caplog.text
        assert "socket buffer full" in caplog.text
    finally:
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=2.0)
        loop.close()
