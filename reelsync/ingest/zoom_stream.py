"""
Zoom event stream WebSocket client

Keeps one persistent WebSocket connection to Zoom's event subscription
endpoint and forwards decoded domain events to an event sink.

Lifecycle: IDLE -> CONNECTING -> OPEN -> CLOSING -> CLOSED, and
CLOSED -> CONNECTING when a scheduled reconnect fires. Every failure
(token, handshake, transport) ends in CLOSED plus a reconnect with
exponential backoff and jitter. After `max_attempts` consecutive failures
the client stops and reports a fatal condition once; a manual
`initialize()` starts over.
"""

from __future__ import annotations

import asyncio
import json
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol, Set, Union
from urllib.parse import urlencode

import websockets

from reelsync.config import settings
from reelsync.errors import ReelSyncError, StreamConnectionError
from reelsync.ingest.auth import ZoomTokenProvider
from reelsync.utils.logging import get_logger

logger = get_logger(__name__, category="stream")

HEARTBEAT_FRAME = json.dumps({"module": "heartbeat"})


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class StreamConnection(Protocol):
    """What the client needs from a WebSocket connection."""

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[Union[str, bytes]]: ...


class EventSink(Protocol):
    async def process(self, event: dict) -> Any: ...


Connector = Callable[[str], Awaitable[StreamConnection]]


async def websocket_connect(url: str) -> StreamConnection:
    # Liveness is probed with Zoom's own heartbeat frame, not protocol pings
    return await websockets.connect(url, ping_interval=None, max_size=None)


@dataclass
class ReconnectPolicy:
    max_attempts: int = 10
    base_delay: float = 5.0
    max_delay: float = 60.0
    jitter_ratio: float = 0.1
    attempt: int = 0

    def reset(self) -> None:
        self.attempt = 0

    def next_attempt(self) -> int:
        self.attempt += 1
        return self.attempt

    def compute_delay(self, attempt: int, rand: float) -> float:
        """Backoff for a 1-indexed attempt; `rand` is uniform in [0, 1)."""
        delay = min(self.base_delay * (1.5 ** (attempt - 1)), self.max_delay)
        factor = (1.0 - self.jitter_ratio) + 2.0 * self.jitter_ratio * rand
        return delay * factor


class FrameKind(str, Enum):
    EVENT = "event"
    HEARTBEAT = "heartbeat"
    FAILURE = "failure"
    UNKNOWN = "unknown"


@dataclass
class Envelope:
    kind: FrameKind
    event: Optional[dict] = None
    detail: str = ""


def _is_failure(data: dict) -> bool:
    if data.get("success") is False or data.get("error"):
        return True
    status = data.get("status_code") or data.get("code")
    return isinstance(status, int) and status >= 400


def _has_event_type(data: Any) -> bool:
    return isinstance(data, dict) and bool(data.get("event") or data.get("event_type"))


def decode_frame(raw: Union[str, bytes]) -> Envelope:
    """Classify one inbound frame.

    Raises:
        ValueError: the frame is not a JSON object
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("frame is not a JSON object")

    module = data.get("module")
    if module == "heartbeat" and not _is_failure(data):
        return Envelope(FrameKind.HEARTBEAT)
    if _is_failure(data):
        detail = data.get("content") or data.get("reason") or data.get("error") or ""
        return Envelope(FrameKind.FAILURE, detail=str(detail)[:200])

    if module == "message":
        content = data.get("content")
        if isinstance(content, str):
            content = json.loads(content)
        if _has_event_type(content):
            return Envelope(FrameKind.EVENT, event=content)
        return Envelope(FrameKind.UNKNOWN, detail="message without event type")

    if _has_event_type(data):
        return Envelope(FrameKind.EVENT, event=data)
    return Envelope(FrameKind.UNKNOWN, detail=f"module={module}")


class ZoomStreamClient:
    """Persistent Zoom event subscription connection."""

    def __init__(
        self,
        token_provider: ZoomTokenProvider,
        event_sink: EventSink,
        ws_url: Optional[str] = None,
        subscription_id: Optional[str] = None,
        heartbeat_interval: Optional[float] = None,
        policy: Optional[ReconnectPolicy] = None,
        connector: Connector = websocket_connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
        on_fatal: Optional[Callable[[int], None]] = None,
    ):
        self.token_provider = token_provider
        self.event_sink = event_sink
        self.ws_url = ws_url or settings.zoom_ws_url
        self.subscription_id = subscription_id or settings.zoom_subscription_id
        self.heartbeat_interval = heartbeat_interval or settings.stream_heartbeat_interval
        self.policy = policy or ReconnectPolicy(
            max_attempts=settings.stream_max_reconnect_attempts,
            base_delay=settings.stream_reconnect_base_delay,
            max_delay=settings.stream_max_reconnect_delay,
            jitter_ratio=settings.stream_reconnect_jitter,
        )
        self._connector = connector
        self._sleep = sleep
        self._rand = rand
        self._on_fatal = on_fatal

        if not self.subscription_id:
            logger.warning("ZOOM_SUBSCRIPTION_ID not set - check environment variable")

        self.state = ConnectionState.IDLE
        self._ws: Optional[StreamConnection] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._event_tasks: Set[asyncio.Task] = set()
        self._stopped = False
        # Bumped by initialize() and close(); a handshake finishing under an
        # older generation belongs to an abandoned session
        self._generation = 0
        self.fatal = False
        self._fatal_reported = False
        self.last_error: Optional[ReelSyncError] = None

    def is_connected(self) -> bool:
        return self.state is ConnectionState.OPEN

    def status(self) -> dict:
        return {
            "connected": self.is_connected(),
            "state": self.state.value,
            "reconnect_attempt": self.policy.attempt,
            "fatal": self.fatal,
            "last_error": str(self.last_error) if self.last_error else None,
        }

    def _build_url(self, token: str) -> str:
        query = urlencode({"subscriptionId": self.subscription_id or "", "access_token": token})
        separator = "&" if "?" in self.ws_url else "?"
        return f"{self.ws_url}{separator}{query}"

    async def initialize(self) -> None:
        """Open the connection. Never raises; failures schedule a reconnect."""
        if self.state is ConnectionState.CONNECTING:
            logger.info("WebSocket connection attempt already in progress")
            return
        if self.fatal:
            logger.info("Manual restart after giving up, resetting reconnect attempts")
            self.fatal = False
            self._fatal_reported = False
            self.policy.reset()
        self._stopped = False
        self._generation += 1
        pending, self._reconnect_task = self._reconnect_task, None
        if pending and not pending.done() and pending is not asyncio.current_task():
            pending.cancel()
        await self._connect_once()

    async def _open(self, token: str) -> StreamConnection:
        try:
            return await self._connector(self._build_url(token))
        except Exception as exc:  # noqa: BLE001
            if _status_code_of(exc) == 401:
                self.token_provider.invalidate()
            raise StreamConnectionError(f"Handshake failed: {exc}") from exc

    async def _connect_once(self) -> None:
        if self.state is ConnectionState.CONNECTING:
            return
        if self._ws is not None:
            await self.cleanup()

        generation = self._generation
        self.state = ConnectionState.CONNECTING
        try:
            credential = await self.token_provider.get_token()
            logger.info("Connecting to Zoom WebSocket at %s", self.ws_url)
            ws = await self._open(credential.token)
        except Exception as exc:  # noqa: BLE001
            if generation != self._generation:
                return
            self.state = ConnectionState.CLOSED
            self.last_error = exc if isinstance(exc, ReelSyncError) else StreamConnectionError(str(exc))
            logger.error("Failed to initialize Zoom WebSocket: %s", exc)
            self._schedule_reconnect()
            return

        if generation != self._generation:
            # close() arrived while the handshake was in flight
            logger.info("Discarding connection from an abandoned session")
            await _close_quietly(ws)
            if self._stopped:
                self.state = ConnectionState.CLOSED
            return

        self._ws = ws
        self.state = ConnectionState.OPEN
        self.policy.reset()
        logger.info("Connected to Zoom WebSocket")
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))
        self._reader_task = asyncio.create_task(self._read_loop(ws))

    async def _heartbeat_loop(self, ws: StreamConnection) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if self._ws is not ws or self.state is not ConnectionState.OPEN:
                return
            try:
                await ws.send(HEARTBEAT_FRAME)
                logger.debug("Sent heartbeat to Zoom WebSocket")
            except Exception as exc:  # noqa: BLE001
                # Best effort; a dead socket is reported by the reader
                logger.warning("Heartbeat send failed: %s", exc)

    async def _read_loop(self, ws: StreamConnection) -> None:
        error = StreamConnectionError("connection closed by server")
        try:
            async for raw in ws:
                self._handle_frame(raw)
        except Exception as exc:  # noqa: BLE001
            error = StreamConnectionError(str(exc) or exc.__class__.__name__)

        if self._ws is ws:
            self.last_error = error
            logger.warning("Zoom WebSocket connection closed: %s", error)
            await self.cleanup()
            self._schedule_reconnect()

    def _handle_frame(self, raw: Union[str, bytes]) -> None:
        try:
            envelope = decode_frame(raw)
        except (ValueError, UnicodeDecodeError) as exc:
            logger.error("Dropping malformed WebSocket frame: %s", exc)
            return

        if envelope.kind is FrameKind.EVENT:
            event_type = envelope.event.get("event") or envelope.event.get("event_type")
            logger.info("Received Zoom event: %s", event_type)
            task = asyncio.create_task(self._deliver(envelope.event))
            self._event_tasks.add(task)
            task.add_done_callback(self._event_tasks.discard)
        elif envelope.kind is FrameKind.FAILURE:
            logger.error("Zoom WebSocket reported a failure: %s", envelope.detail)
        elif envelope.kind is FrameKind.HEARTBEAT:
            logger.debug("Received heartbeat response from Zoom WebSocket")
        else:
            logger.debug("Ignoring WebSocket frame (%s)", envelope.detail)

    async def _deliver(self, event: dict) -> None:
        try:
            await self.event_sink.process(event)
        except Exception as exc:  # noqa: BLE001
            logger.error("Error processing Zoom event: %s", exc, exc_info=True)

    async def cleanup(self) -> None:
        """Release heartbeat and socket. Safe to call any number of times."""
        if self.state is ConnectionState.OPEN:
            self.state = ConnectionState.CLOSING
        current = asyncio.current_task()

        heartbeat, self._heartbeat_task = self._heartbeat_task, None
        if heartbeat and not heartbeat.done() and heartbeat is not current:
            heartbeat.cancel()

        ws, self._ws = self._ws, None
        reader, self._reader_task = self._reader_task, None
        if ws is not None:
            await _close_quietly(ws)
        if reader and not reader.done() and reader is not current:
            reader.cancel()

        self.state = ConnectionState.CLOSED

    def _schedule_reconnect(self) -> None:
        if self._stopped:
            return

        existing, self._reconnect_task = self._reconnect_task, None
        if existing and not existing.done() and existing is not asyncio.current_task():
            existing.cancel()

        attempt = self.policy.next_attempt()
        if attempt > self.policy.max_attempts:
            self.fatal = True
            if not self._fatal_reported:
                self._fatal_reported = True
                logger.critical(
                    "Maximum reconnection attempts (%s) reached. Giving up.",
                    self.policy.max_attempts,
                )
                if self._on_fatal:
                    try:
                        self._on_fatal(self.policy.max_attempts)
                    except Exception as exc:  # noqa: BLE001
                        logger.error("Fatal-status callback failed: %s", exc)
            return

        delay = self.policy.compute_delay(attempt, self._rand())
        logger.info("Scheduling reconnection attempt %s in %.2fs", attempt, delay)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay, attempt))

    async def _reconnect_after(self, delay: float, attempt: int) -> None:
        await self._sleep(delay)
        if self._stopped or self.state is ConnectionState.OPEN:
            return
        logger.info("Attempting to reconnect (attempt %s)", attempt)
        await self._connect_once()

    async def close(self) -> None:
        """Stop for good: cancel any pending reconnect and release resources."""
        logger.info("Closing Zoom WebSocket connection")
        self._stopped = True
        self._generation += 1

        pending, self._reconnect_task = self._reconnect_task, None
        if pending and not pending.done() and pending is not asyncio.current_task():
            pending.cancel()
            try:
                await pending
            except asyncio.CancelledError:
                pass

        await self.cleanup()


def _status_code_of(exc: BaseException) -> Optional[int]:
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None) or getattr(exc, "status_code", None)
    return status if isinstance(status, int) else None


async def _close_quietly(ws: StreamConnection) -> None:
    try:
        await ws.close()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Error closing WebSocket: %s", exc)
