"""
Zoom Event Schemas

Pydantic models for the Zoom events we act on. Only the fields the pipeline
reads are declared; everything else in the payload is kept as extra data.
"""

from __future__ import annotations

from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


RECORDING_COMPLETED = "recording.completed"
URL_VALIDATION = "endpoint.url_validation"

# File types that carry an audio track we can transcribe, best first
AUDIO_FILE_TYPES = ("M4A", "MP4")


class RecordingFile(BaseModel):
    """One file of a cloud recording."""

    model_config = ConfigDict(extra="allow")

    id: str
    file_type: str = ""
    recording_type: Optional[str] = None
    download_url: str = ""

    @property
    def is_audio(self) -> bool:
        return (
            self.file_type.upper() in AUDIO_FILE_TYPES
            or self.recording_type == "audio_only"
        )


class ZoomMeeting(BaseModel):
    """Meeting object carried by recording.completed."""

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: str
    topic: str = Field(default="")
    host_email: Optional[str] = None
    download_token: Optional[str] = None
    recording_files: List[RecordingFile] = Field(default_factory=list)

    def find_audio_recording(self) -> Optional[RecordingFile]:
        """Pick the file to transcribe: audio-only first, then M4A, then MP4."""
        candidates = [f for f in self.recording_files if f.is_audio and f.download_url]
        if not candidates:
            return None

        def rank(item: RecordingFile) -> int:
            if item.recording_type == "audio_only":
                return 0
            if item.file_type.upper() == "M4A":
                return 1
            return 2

        return sorted(candidates, key=rank)[0]


class RecordingCompletedPayload(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    account_id: Optional[str] = None
    object: ZoomMeeting


class ZoomEvent(BaseModel):
    """Generic envelope of a decoded Zoom domain event."""

    model_config = ConfigDict(extra="allow")

    event: str = Field(description="Event type, e.g. recording.completed")
    event_ts: Optional[int] = None
    payload: dict = Field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: dict) -> "ZoomEvent":
        # Some deliveries use event_type instead of event
        data = dict(raw)
        if "event" not in data and "event_type" in data:
            data["event"] = data["event_type"]
        return cls.model_validate(data)
