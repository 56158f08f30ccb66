"""
ReelSync Service - FastAPI Application

This service:
- Keeps a WebSocket subscription to Zoom events open
- Turns completed meeting recordings into character/task facts
- Pushes those facts to ClickUp through a rate-limited queue

Run with:
    uvicorn reelsync.main:app --port 8000
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException

from reelsync.config import settings
from reelsync.dispatch.clickup import ClickUpClient
from reelsync.dispatch.rate_limit import RateLimitedDispatcher
from reelsync.ingest.auth import ZoomTokenProvider
from reelsync.ingest.event_processor import RecordingEventProcessor
from reelsync.ingest.media import MediaFetcher
from reelsync.ingest.zoom_api import ZoomRecordingsClient
from reelsync.ingest.zoom_stream import ZoomStreamClient
from reelsync.reason.extraction import build_default_chain
from reelsync.schemas.processing import ProcessingSummary
from reelsync.utils.logging import get_logger
from schemas.messages import (
    HealthResponse,
    ReconnectResponse,
    RecordingEventRequest,
    StreamStatus,
)

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = get_logger(__name__, category="system")
stream_logger = get_logger(f"{__name__}.stream", category="stream")
events_logger = get_logger(f"{__name__}.events", category="events")

app = FastAPI(
    title="ReelSync",
    description="Zoom recordings to ClickUp character tasks",
    version="0.1.0",
)

# ============================================================================
# SINGLETONS
# ============================================================================

token_provider = ZoomTokenProvider()
recordings_client = ZoomRecordingsClient(token_provider)
media_fetcher = MediaFetcher()
dispatcher = RateLimitedDispatcher()
# Every ClickUp request is paced by the dispatcher
clickup_client = ClickUpClient(dispatcher=dispatcher)

# Initialize extraction chain (local Whisper is optional)
try:
    extraction_chain = build_default_chain(recordings_client=recordings_client)
    logger.info(
        "Extraction chain initialized: %s",
        ", ".join(s.name for s in extraction_chain.strategies),
    )
except ImportError as exc:
    logger.warning("Local Whisper unavailable, continuing without it: %s", exc)
    extraction_chain = build_default_chain(
        recordings_client=recordings_client, local_whisper_enabled=False
    )

event_processor = RecordingEventProcessor(
    media_fetcher=media_fetcher,
    extraction_chain=extraction_chain,
    clickup=clickup_client,
    token_provider=token_provider,
    recordings_client=recordings_client,
)

# Initialize Zoom event stream client
stream_client: Optional[ZoomStreamClient] = None
if settings.stream_enabled:
    stream_client = ZoomStreamClient(token_provider=token_provider, event_sink=event_processor)
    logger.info("Zoom stream client initialized")


def _stream_status() -> StreamStatus:
    if stream_client is None:
        return StreamStatus(enabled=False)
    return StreamStatus(enabled=True, **stream_client.status())


# ============================================================================
# ENDPOINTS
# ============================================================================


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Service status plus the state of the Zoom stream and the dispatch queue.
    """
    return HealthResponse(
        timestamp=datetime.now(timezone.utc).isoformat(),
        stream=_stream_status(),
        dispatch_queue_depth=dispatcher.queue_depth,
    )


@app.post("/recordings/process", response_model=ProcessingSummary)
async def process_recording(request: RecordingEventRequest):
    """
    Run the recording pipeline on demand for a posted Zoom event.

    Failures come back as a summary with status "failed", never as a
    stack trace.
    """
    events_logger.info("On-demand processing requested for %s event", request.event)
    return await event_processor.process(request.model_dump())


@app.post("/stream/reconnect", response_model=ReconnectResponse)
async def reconnect_stream():
    """Manually restart the Zoom stream, e.g. after reconnects were exhausted."""
    if stream_client is None:
        raise HTTPException(status_code=409, detail="Zoom stream is disabled (STREAM_ENABLED=false)")

    stream_logger.info("Manual stream reconnect requested")
    await stream_client.initialize()
    return ReconnectResponse(status="reconnecting", stream=_stream_status())


# ============================================================================
# STARTUP/SHUTDOWN
# ============================================================================


@app.on_event("startup")
async def startup_event():
    """Start the Zoom stream connection."""
    logger.info(f"ReelSync service starting on {settings.host}:{settings.port}")

    if stream_client:
        # initialize() never raises; failures turn into scheduled reconnects
        await stream_client.initialize()
        stream_logger.info("Zoom stream connection started")
    else:
        stream_logger.info("Zoom stream disabled, only on-demand processing is available")


@app.on_event("shutdown")
async def shutdown_event():
    """Close the stream, stop the dispatcher and release HTTP clients."""
    logger.info("ReelSync service shutting down")

    if stream_client:
        try:
            await stream_client.close()
            stream_logger.info("Zoom stream connection closed")
        except Exception as exc:
            stream_logger.error(f"Error closing Zoom stream: {exc}")

    try:
        await dispatcher.close()
    except Exception as exc:
        logger.error(f"Error stopping dispatcher: {exc}")

    for client in (clickup_client, recordings_client, media_fetcher, token_provider):
        try:
            await client.close()
        except Exception as exc:
            logger.error(f"Error closing {type(client).__name__}: {exc}")
