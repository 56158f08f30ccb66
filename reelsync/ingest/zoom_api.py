"""
Zoom recordings API

Requests and fetches Zoom's own cloud transcript for a recording.
"""

from __future__ import annotations

from typing import Optional

import httpx

from reelsync.config import settings
from reelsync.errors import TranscriptionError
from reelsync.ingest.auth import ZoomTokenProvider
from reelsync.utils.logging import get_logger

logger = get_logger(__name__, category="events")


class ZoomRecordingsClient:
    """Cloud-recording endpoints of the Zoom REST API."""

    def __init__(
        self,
        token_provider: ZoomTokenProvider,
        api_base: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.token_provider = token_provider
        self.api_base = (api_base or settings.zoom_api_base).rstrip("/")
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.http_timeout_seconds, connect=10.0)
        )

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    async def _headers(self) -> dict:
        credential = await self.token_provider.get_token()
        return {"Authorization": f"Bearer {credential.token}"}

    async def request_transcript(self, meeting_id: str, recording_id: str) -> None:
        """Ask Zoom to generate a cloud transcript for a recording."""
        logger.info(
            "Requesting Zoom transcript for meeting %s, recording %s",
            meeting_id,
            recording_id,
        )
        response = await self.http_client.put(
            f"{self.api_base}/meetings/{meeting_id}/recordings/{recording_id}/status",
            json={"action": "transcript"},
            headers=await self._headers(),
        )
        response.raise_for_status()

    async def get_transcript(self, recording_id: str) -> str:
        """Return the completed transcript as text, one line per speaker turn.

        Raises:
            TranscriptionError: the transcript is missing or not completed yet
        """
        try:
            response = await self.http_client.get(
                f"{self.api_base}/meetings/recordings/{recording_id}/transcript",
                headers=await self._headers(),
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise TranscriptionError(
                f"Failed to retrieve Zoom transcription: HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise TranscriptionError(f"Failed to retrieve Zoom transcription: {exc}") from exc

        if data.get("status") != "completed":
            raise TranscriptionError(
                f"Transcription not available for recording ID: {recording_id}"
            )

        lines = []
        current_speaker = None
        for part in data.get("transcript_parts") or []:
            text = str(part.get("text", "")).strip()
            if not text:
                continue
            speaker = part.get("speaker")
            if speaker and speaker != current_speaker:
                current_speaker = speaker
                lines.append(f"{speaker}: {text}")
            elif lines:
                lines[-1] = f"{lines[-1]} {text}"
            else:
                lines.append(text)

        transcript = "\n".join(lines).strip()
        logger.info(
            "Retrieved Zoom transcription for recording %s (%s chars)",
            recording_id,
            len(transcript),
        )
        return transcript
