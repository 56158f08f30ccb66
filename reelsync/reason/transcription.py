"""
Transcription

Speech-to-text backends used by the extraction chain. Each transcriber
turns an acquired recording into plain text or raises TranscriptionError:

- ZoomCloudTranscriber: Zoom's own cloud transcript for the recording
- OpenAIWhisperTranscriber: OpenAI audio transcription API
- LocalWhisperTranscriber: faster-whisper running in-process
"""

from __future__ import annotations

import asyncio
import os
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

from openai import OpenAI

try:
    from faster_whisper import WhisperModel
except ImportError:
    WhisperModel = None

from reelsync.config import settings
from reelsync.errors import TranscriptionError
from reelsync.ingest.zoom_api import ZoomRecordingsClient
from reelsync.schemas.extraction import MediaArtifact
from reelsync.utils.logging import get_logger

logger = get_logger(__name__, category="extraction")


class Transcriber(ABC):
    """Turns a media artifact into transcript text."""

    name: str = "transcriber"

    @abstractmethod
    async def transcribe(self, media: MediaArtifact) -> str:
        """Return non-empty transcript text or raise TranscriptionError."""


class ZoomCloudTranscriber(Transcriber):
    name = "zoom-cloud"

    def __init__(self, recordings_client: ZoomRecordingsClient):
        self.recordings_client = recordings_client

    async def transcribe(self, media: MediaArtifact) -> str:
        if not media.recording_id:
            raise TranscriptionError("No recording id available for a Zoom transcript")
        text = await self.recordings_client.get_transcript(media.recording_id)
        if not text.strip():
            raise TranscriptionError("Zoom transcript is empty")
        return text


class OpenAIWhisperTranscriber(Transcriber):
    """OpenAI audio transcription (whisper-1 by default)."""

    name = "openai-whisper"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        language: Optional[str] = None,
        max_upload_mb: Optional[float] = None,
        client: Optional[Any] = None,
    ):
        self.api_key = api_key or settings.openai_api_key
        self.model = model or settings.openai_transcription_model
        self.language = language or settings.transcription_language
        self.max_upload_bytes = int(
            (max_upload_mb or settings.openai_max_upload_mb) * 1024 * 1024
        )
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            if not self.api_key:
                raise TranscriptionError("OPENAI_API_KEY is required for transcription")
            self._client = OpenAI(api_key=self.api_key, max_retries=0)
        return self._client

    def _transcribe_sync(self, path: str) -> str:
        client = self._get_client()
        with open(path, "rb") as audio_file:
            result = client.audio.transcriptions.create(
                model=self.model,
                file=audio_file,
                language=self.language,
                response_format="text",
            )
        # response_format="text" yields a str; older clients wrap it
        return result if isinstance(result, str) else str(getattr(result, "text", ""))

    async def transcribe(self, media: MediaArtifact) -> str:
        if not os.path.exists(media.path):
            raise TranscriptionError(f"Audio file not found: {media.path}")

        size = os.path.getsize(media.path)
        if size > self.max_upload_bytes:
            raise TranscriptionError(
                f"File size ({size / (1024 * 1024):.2f} MB) exceeds the "
                f"{self.max_upload_bytes // (1024 * 1024)} MB upload limit"
            )

        logger.info(
            "Transcribing %s with OpenAI %s (%.2f MB)", media.path, self.model, size / (1024 * 1024)
        )
        try:
            text = await asyncio.to_thread(self._transcribe_sync, media.path)
        except TranscriptionError:
            raise
        except Exception as exc:
            raise TranscriptionError(f"OpenAI transcription failed: {exc}") from exc

        text = text.strip()
        if not text:
            raise TranscriptionError("OpenAI transcription returned no text")
        logger.info("OpenAI transcription completed (%s chars)", len(text))
        return text


class LocalWhisperTranscriber(Transcriber):
    """Transcribes with faster-whisper; the model is loaded on first use."""

    name = "local-whisper"

    _model: Optional[Any] = None

    def __init__(
        self,
        model_name: Optional[str] = None,
        language: Optional[str] = None,
        device: Optional[str] = None,
        compute_type: Optional[str] = None,
        use_gpu: Optional[bool] = None,
    ):
        if WhisperModel is None:
            raise ImportError(
                "faster-whisper is not installed. Install with: pip install faster-whisper"
            )

        self.model_name = model_name or settings.whisper_model
        self.language = language or settings.transcription_language
        self.use_gpu = use_gpu if use_gpu is not None else settings.use_gpu
        self.device = device or ("cuda" if self.use_gpu else "cpu")
        # float16 is faster on GPU, int8 on CPU
        self.compute_type = compute_type or ("float16" if self.device == "cuda" else "int8")
        self._model_loaded = False

    def load_model(self) -> None:
        """Load Whisper model (lazy loading on first use)."""
        if self._model_loaded and LocalWhisperTranscriber._model is not None:
            return

        logger.info(
            "Loading Whisper model: %s (device=%s, compute_type=%s)",
            self.model_name,
            self.device,
            self.compute_type,
        )
        LocalWhisperTranscriber._model = WhisperModel(
            self.model_name,
            device=self.device,
            compute_type=self.compute_type,
        )
        self._model_loaded = True
        logger.info("Whisper model loaded successfully")

    def transcribe_file(self, path: str) -> str:
        if not self._model_loaded:
            self.load_model()

        start_time = time.monotonic()
        segments, info = LocalWhisperTranscriber._model.transcribe(
            path,
            language=self.language,
            beam_size=5,
            vad_filter=False,
        )
        text = " ".join(segment.text.strip() for segment in segments).strip()

        processing_time_ms = int((time.monotonic() - start_time) * 1000)
        duration = getattr(info, "duration", 0.0) or 0.0
        logger.info(
            "Transcribed %.2fs audio in %sms (language=%s, words=%s)",
            duration,
            processing_time_ms,
            getattr(info, "language", self.language),
            len(text.split()),
        )
        return text

    async def transcribe(self, media: MediaArtifact) -> str:
        if not os.path.exists(media.path):
            raise TranscriptionError(f"Audio file not found: {media.path}")
        try:
            text = await asyncio.to_thread(self.transcribe_file, media.path)
        except Exception as exc:
            raise TranscriptionError(f"Local transcription failed: {exc}") from exc
        if not text:
            raise TranscriptionError("Local transcription returned no text")
        return text
