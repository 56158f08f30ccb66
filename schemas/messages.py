"""
HTTP Message Schemas

Request/response models for the service's FastAPI endpoints. The pipeline's
own data models live in reelsync.schemas.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class StreamStatus(BaseModel):
    """State of the Zoom event stream connection."""

    enabled: bool = Field(..., description="Whether the stream client is configured to run")
    connected: bool = False
    state: str = Field(default="idle", description="idle, connecting, open, closing or closed")
    reconnect_attempt: int = 0
    fatal: bool = Field(
        default=False, description="True once reconnects were exhausted; needs a manual restart"
    )
    last_error: Optional[str] = Field(default=None, description="Most recent handshake or transport failure")


class HealthResponse(BaseModel):
    status: str = "healthy"
    service: str = "reelsync"
    timestamp: str
    stream: StreamStatus
    dispatch_queue_depth: int = 0


class RecordingEventRequest(BaseModel):
    """
    A Zoom event posted for on-demand processing.

    Same shape as the events delivered on the stream.
    """

    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "event": "recording.completed",
                "payload": {
                    "account_id": "abc123",
                    "object": {
                        "id": "81234567890",
                        "topic": "Weekly dailies",
                        "recording_files": [
                            {
                                "id": "f1",
                                "file_type": "M4A",
                                "recording_type": "audio_only",
                                "download_url": "https://zoom.us/rec/download/f1",
                            }
                        ],
                    },
                },
            }
        },
    )

    event: str = Field(..., description="Event type, e.g. recording.completed")
    event_ts: Optional[int] = None
    payload: dict = Field(default_factory=dict)


class ReconnectResponse(BaseModel):
    status: str = Field(..., description="'reconnecting' or 'disabled'")
    stream: StreamStatus
