"""Unit tests for the Zoom event stream client."""
import asyncio
import json

import pytest

from reelsync.errors import StreamConnectionError
from reelsync.ingest.auth import Credential
from reelsync.ingest.zoom_stream import (
    HEARTBEAT_FRAME,
    ConnectionState,
    FrameKind,
    ReconnectPolicy,
    ZoomStreamClient,
    decode_frame,
)


class FakeConnection:
    """In-memory WebSocket: frames are pushed by the test, None ends the stream."""

    def __init__(self):
        self.frames: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.closed = False

    async def send(self, message):
        self.sent.append(message)

    async def close(self):
        self.closed = True
        self.frames.put_nowait(None)

    def push(self, frame):
        if isinstance(frame, dict):
            frame = json.dumps(frame)
        self.frames.put_nowait(frame)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.frames.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FakeConnector:
    def __init__(self, outcomes=None, default=None):
        self.outcomes = list(outcomes or [])
        self.default = default if default is not None else ConnectionRefusedError("refused")
        self.urls = []
        self.attempts_seen = []
        self.client = None

    async def __call__(self, url):
        self.urls.append(url)
        if self.client is not None:
            self.attempts_seen.append(self.client.policy.attempt)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if callable(outcome) and not isinstance(outcome, FakeConnection):
            outcome = await outcome()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeTokenProvider:
    def __init__(self):
        self.invalidated = 0

    async def get_token(self):
        return Credential(token="tok", expires_at=1e12)

    def invalidate(self):
        self.invalidated += 1


class RecordingSink:
    def __init__(self):
        self.events = []

    async def process(self, event):
        self.events.append(event)


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


async def wait_until(predicate, ticks=500):
    for _ in range(ticks):
        if predicate():
            return True
        await asyncio.sleep(0)
    return predicate()


def make_client(connector, sink=None, sleep=None, max_attempts=10, **kwargs):
    client = ZoomStreamClient(
        token_provider=kwargs.pop("token_provider", FakeTokenProvider()),
        event_sink=sink or RecordingSink(),
        ws_url="wss://ws.test/ws",
        subscription_id="sub",
        heartbeat_interval=kwargs.pop("heartbeat_interval", 30.0),
        policy=ReconnectPolicy(max_attempts=max_attempts, base_delay=5.0, max_delay=60.0),
        connector=connector,
        sleep=sleep or FakeSleep(),
        rand=lambda: 0.5,
        **kwargs,
    )
    connector.client = client
    return client


def event_frame(event_type="recording.completed", **payload):
    return {
        "module": "message",
        "content": json.dumps({"event": event_type, "payload": payload}),
    }


@pytest.mark.unit
class TestDecodeFrame:
    def test_message_module_event(self):
        envelope = decode_frame(json.dumps(event_frame(meeting="1")))
        assert envelope.kind is FrameKind.EVENT
        assert envelope.event["event"] == "recording.completed"

    def test_top_level_event(self):
        envelope = decode_frame(json.dumps({"event": "meeting.started", "payload": {}}))
        assert envelope.kind is FrameKind.EVENT

    def test_heartbeat(self):
        assert decode_frame(HEARTBEAT_FRAME).kind is FrameKind.HEARTBEAT

    def test_failure_notification(self):
        envelope = decode_frame(json.dumps({"module": "message", "success": False, "content": "Invalid token"}))
        assert envelope.kind is FrameKind.FAILURE
        assert "Invalid token" in envelope.detail

    def test_error_status_code_is_failure(self):
        assert decode_frame(json.dumps({"status_code": 401, "reason": "unauthorized"})).kind is FrameKind.FAILURE

    def test_malformed_frames_raise(self):
        with pytest.raises(ValueError):
            decode_frame("not json")
        with pytest.raises(ValueError):
            decode_frame("[1, 2]")

    def test_frame_without_event_type(self):
        assert decode_frame(json.dumps({"module": "other"})).kind is FrameKind.UNKNOWN


@pytest.mark.unit
class TestReconnectPolicy:
    def test_delay_bounds(self):
        policy = ReconnectPolicy(max_attempts=10, base_delay=5.0, max_delay=60.0, jitter_ratio=0.1)
        for attempt in range(1, 15):
            raw = 5.0 * 1.5 ** (attempt - 1)
            for rand in (0.0, 0.25, 0.5, 0.999):
                delay = policy.compute_delay(attempt, rand)
                assert delay >= min(raw, 60.0) * 0.9 - 1e-9
                assert delay <= min(raw, 60.0) * 1.1 + 1e-9

    def test_delay_is_capped(self):
        policy = ReconnectPolicy(base_delay=5.0, max_delay=60.0, jitter_ratio=0.0)
        assert policy.compute_delay(1, 0.5) == 5.0
        assert policy.compute_delay(2, 0.5) == 7.5
        assert policy.compute_delay(20, 0.5) == 60.0


@pytest.mark.unit
@pytest.mark.asyncio
class TestZoomStreamClient:
    """Test connection lifecycle, frame handling and reconnects."""

    async def test_connects_with_token_and_subscription(self):
        connection = FakeConnection()
        connector = FakeConnector([connection])
        client = make_client(connector)

        await client.initialize()

        assert client.is_connected()
        assert client.state is ConnectionState.OPEN
        assert "access_token=tok" in connector.urls[0]
        assert "subscriptionId=sub" in connector.urls[0]
        await client.close()

    async def test_successful_open_resets_attempts(self):
        connection = FakeConnection()
        connector = FakeConnector([OSError("reset"), OSError("reset"), connection])
        sleep = FakeSleep()
        client = make_client(connector, sleep=sleep)

        await client.initialize()
        assert await wait_until(client.is_connected)

        assert client.policy.attempt == 0
        assert len(connector.urls) == 3
        assert sleep.delays == [
            client.policy.compute_delay(1, 0.5),
            client.policy.compute_delay(2, 0.5),
        ]
        await client.close()

    async def test_attempts_monotonic_until_fatal(self):
        fatal_calls = []
        connector = FakeConnector()
        client = make_client(connector, max_attempts=3, on_fatal=fatal_calls.append)

        await client.initialize()
        assert await wait_until(lambda: client.fatal)
        # Give a stray reconnect the chance to show up
        for _ in range(50):
            await asyncio.sleep(0)

        assert connector.attempts_seen == [0, 1, 2, 3]
        assert len(connector.urls) == 4
        assert fatal_calls == [3]
        assert client.state is ConnectionState.CLOSED

    async def test_fatal_reported_once_at_attempt_eleven(self, caplog):
        connector = FakeConnector()
        client = make_client(connector, max_attempts=10)

        with caplog.at_level("CRITICAL"):
            await client.initialize()
            assert await wait_until(lambda: client.fatal, ticks=2000)
            for _ in range(50):
                await asyncio.sleep(0)

        assert len(connector.urls) == 11
        critical = [r for r in caplog.records if r.levelname == "CRITICAL"]
        assert len(critical) == 1

    async def test_manual_initialize_after_fatal_starts_over(self):
        connection = FakeConnection()
        connector = FakeConnector([OSError("down"), OSError("down"), connection])
        client = make_client(connector, max_attempts=1)

        await client.initialize()
        assert await wait_until(lambda: client.fatal)
        assert len(connector.urls) == 2

        await client.initialize()

        assert client.is_connected()
        assert not client.fatal
        assert client.policy.attempt == 0
        await client.close()

    async def test_malformed_and_failure_frames_not_forwarded(self):
        connection = FakeConnection()
        sink = RecordingSink()
        client = make_client(FakeConnector([connection]), sink=sink)
        await client.initialize()

        connection.push("{not json")
        connection.push({"module": "message", "success": False, "content": "Invalid subscription"})
        connection.push({"module": "heartbeat"})
        connection.push(event_frame(meeting="42"))

        assert await wait_until(lambda: len(sink.events) == 1)
        for _ in range(20):
            await asyncio.sleep(0)

        assert len(sink.events) == 1
        assert sink.events[0]["payload"] == {"meeting": "42"}
        assert client.is_connected()
        await client.close()

    async def test_slow_sink_does_not_block_reading(self):
        release = asyncio.Event()
        received = []

        class SlowSink:
            async def process(self, event):
                received.append(event["payload"]["n"])
                if event["payload"]["n"] == 1:
                    await release.wait()

        connection = FakeConnection()
        client = make_client(FakeConnector([connection]), sink=SlowSink())
        await client.initialize()

        connection.push(event_frame(n=1))
        connection.push(event_frame(n=2))

        assert await wait_until(lambda: received == [1, 2])
        release.set()
        await client.close()

    async def test_failing_sink_does_not_crash_client(self):
        class BrokenSink:
            async def process(self, event):
                raise RuntimeError("processor exploded")

        connection = FakeConnection()
        client = make_client(FakeConnector([connection]), sink=BrokenSink())
        await client.initialize()

        connection.push(event_frame())
        for _ in range(20):
            await asyncio.sleep(0)

        assert client.is_connected()
        await client.close()

    async def test_server_close_triggers_reconnect(self):
        first, second = FakeConnection(), FakeConnection()
        connector = FakeConnector([first, second])
        client = make_client(connector)
        await client.initialize()

        first.frames.put_nowait(None)

        assert await wait_until(lambda: len(connector.urls) == 2 and client.is_connected())
        assert first.closed
        await client.close()

    async def test_transport_error_triggers_reconnect(self):
        first, second = FakeConnection(), FakeConnection()
        connector = FakeConnector([first, second])
        client = make_client(connector)
        await client.initialize()

        first.push(ConnectionResetError("reset by peer"))

        assert await wait_until(lambda: len(connector.urls) == 2 and client.is_connected())
        await client.close()

    async def test_cleanup_is_idempotent(self):
        connection = FakeConnection()
        client = make_client(FakeConnector([connection]))
        await client.initialize()

        await client.cleanup()
        await client.cleanup()

        assert client.state is ConnectionState.CLOSED
        assert connection.closed
        assert not client.is_connected()
        await client.close()

    async def test_initialize_is_noop_while_connecting(self):
        gate = asyncio.Event()
        connection = FakeConnection()

        async def slow_handshake():
            await gate.wait()
            return connection

        connector = FakeConnector([slow_handshake])
        client = make_client(connector)

        first = asyncio.create_task(client.initialize())
        assert await wait_until(lambda: client.state is ConnectionState.CONNECTING)
        await client.initialize()
        gate.set()
        await first

        assert len(connector.urls) == 1
        assert client.is_connected()
        await client.close()

    async def test_close_cancels_pending_reconnect(self):
        never = asyncio.Event()

        async def blocking_sleep(delay):
            await never.wait()

        connector = FakeConnector()
        client = make_client(connector, sleep=blocking_sleep)
        await client.initialize()
        assert client._reconnect_task is not None

        await client.close()
        for _ in range(20):
            await asyncio.sleep(0)

        assert len(connector.urls) == 1
        assert client._reconnect_task is None
        assert client.state is ConnectionState.CLOSED

    async def test_unauthorized_handshake_invalidates_token(self):
        class Unauthorized(Exception):
            status_code = 401

        tokens = FakeTokenProvider()
        never = asyncio.Event()

        async def blocking_sleep(delay):
            await never.wait()

        client = make_client(
            FakeConnector([Unauthorized("HTTP 401")]), sleep=blocking_sleep, token_provider=tokens
        )
        await client.initialize()

        assert tokens.invalidated == 1
        assert client.state is ConnectionState.CLOSED
        await client.close()

    async def test_heartbeat_sent_periodically(self):
        connection = FakeConnection()
        client = make_client(FakeConnector([connection]), heartbeat_interval=0.01)
        await client.initialize()

        await asyncio.sleep(0.05)

        assert HEARTBEAT_FRAME in connection.sent
        await client.close()

    async def test_close_during_handshake_then_reinitialize_keeps_one_connection(self):
        gate = asyncio.Event()
        first, second = FakeConnection(), FakeConnection()

        async def slow_handshake():
            await gate.wait()
            return first

        connector = FakeConnector([slow_handshake, second])
        client = make_client(connector)

        pending = asyncio.create_task(client.initialize())
        assert await wait_until(lambda: client.state is ConnectionState.CONNECTING)
        await client.close()
        await client.initialize()
        assert client._ws is second

        gate.set()
        await pending

        assert client._ws is second
        assert client.is_connected()
        assert first.closed
        assert not second.closed
        await client.close()
        assert second.closed

    async def test_close_during_handshake_discards_late_connection(self):
        gate = asyncio.Event()
        connection = FakeConnection()

        async def slow_handshake():
            await gate.wait()
            return connection

        client = make_client(FakeConnector([slow_handshake]))
        pending = asyncio.create_task(client.initialize())
        assert await wait_until(lambda: client.state is ConnectionState.CONNECTING)

        await client.close()
        gate.set()
        await pending

        assert connection.closed
        assert client._ws is None
        assert client.state is ConnectionState.CLOSED

    async def test_handshake_failure_recorded_as_stream_error(self):
        never = asyncio.Event()

        async def blocking_sleep(delay):
            await never.wait()

        client = make_client(FakeConnector([ConnectionRefusedError("refused")]), sleep=blocking_sleep)
        await client.initialize()

        assert isinstance(client.last_error, StreamConnectionError)
        assert "refused" in str(client.last_error)
        assert client.status()["last_error"] == str(client.last_error)
        await client.close()

    async def test_transport_error_recorded_as_stream_error(self):
        never = asyncio.Event()

        async def blocking_sleep(delay):
            await never.wait()

        connection = FakeConnection()
        client = make_client(FakeConnector([connection]), sleep=blocking_sleep)
        await client.initialize()

        connection.push(ConnectionResetError("reset by peer"))

        assert await wait_until(lambda: client.last_error is not None)
        assert isinstance(client.last_error, StreamConnectionError)
        assert "reset by peer" in str(client.last_error)
        await client.close()
