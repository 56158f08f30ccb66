"""
Media acquisition

Downloads a recording, converts it to a small mono mp3 with ffmpeg and
removes every temporary file afterwards.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Iterable, List, Optional

import httpx

from reelsync.config import settings
from reelsync.errors import MediaError
from reelsync.schemas.extraction import MediaArtifact
from reelsync.utils.logging import get_logger

logger = get_logger(__name__, category="media")


class MediaFetcher:
    """Download/convert/cleanup helpers for recording files."""

    def __init__(
        self,
        temp_dir: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        ffmpeg_binary: str = "ffmpeg",
    ):
        self.temp_dir = Path(temp_dir or settings.media_temp_dir)
        self.ffmpeg_binary = ffmpeg_binary
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(300.0, connect=10.0), follow_redirects=True
        )

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    def _temp_path(self, prefix: str, suffix: str) -> Path:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        return self.temp_dir / f"{prefix}_{uuid.uuid4().hex}{suffix}"

    async def fetch(self, url: str, token: Optional[str] = None) -> str:
        """Stream `url` to a temporary file and return its path."""
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        path = self._temp_path("download", ".mp4")
        logger.info("Downloading recording from %s", url)
        try:
            async with self.http_client.stream("GET", url, headers=headers) as response:
                response.raise_for_status()
                with open(path, "wb") as handle:
                    async for chunk in response.aiter_bytes():
                        handle.write(chunk)
        except (httpx.HTTPError, OSError) as exc:
            # Leave no partial file behind
            await self.cleanup([str(path)])
            raise MediaError(f"Failed to download file: {exc}") from exc
        except asyncio.CancelledError:
            logger.info("Download of %s cancelled", url)
            await self.cleanup([str(path)])
            raise

        size = path.stat().st_size
        if size == 0:
            await self.cleanup([str(path)])
            raise MediaError("No data received from download URL")
        logger.info("File downloaded to %s (%s KB)", path, size // 1024)
        return str(path)

    async def convert(self, input_path: str) -> str:
        """Convert to 16 kHz mono mp3 for transcription."""
        if not os.path.exists(input_path):
            raise MediaError(f"Input file does not exist: {input_path}")

        output_path = self._temp_path("audio", ".mp3")
        logger.info("Converting %s to MP3", input_path)
        try:
            process = await asyncio.create_subprocess_exec(
                self.ffmpeg_binary,
                "-y",
                "-i",
                input_path,
                "-vn",
                "-ar",
                "16000",
                "-ac",
                "1",
                "-b:a",
                "32k",
                str(output_path),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise MediaError(f"FFmpeg error: {exc}") from exc

        try:
            _, stderr = await process.communicate()
        except asyncio.CancelledError:
            logger.info("Conversion of %s cancelled, stopping FFmpeg", input_path)
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
            await self.cleanup([str(output_path)])
            raise
        if process.returncode != 0:
            await self.cleanup([str(output_path)])
            logger.debug("FFmpeg output: %s", stderr.decode("utf-8", "replace")[-500:])
            raise MediaError(f"FFmpeg process exited with code {process.returncode}")
        if not output_path.exists():
            raise MediaError(f"FFmpeg completed but output file not found: {output_path}")

        logger.info(
            "File converted to %s (%s KB)", output_path, output_path.stat().st_size // 1024
        )
        return str(output_path)

    async def cleanup(self, paths: Iterable[str]) -> None:
        """Best-effort removal of temporary files."""
        for path in paths:
            try:
                os.unlink(path)
                logger.info("Cleaned up file: %s", path)
            except FileNotFoundError:
                logger.debug("File already gone: %s", path)
            except OSError as exc:
                logger.warning("Could not remove %s: %s", path, exc)

    @asynccontextmanager
    async def acquire(
        self,
        url: str,
        token: Optional[str] = None,
        recording_id: Optional[str] = None,
        meeting_id: Optional[str] = None,
        topic: Optional[str] = None,
    ) -> AsyncIterator[MediaArtifact]:
        """Download + convert, and always remove what was created."""
        created: List[str] = []
        try:
            downloaded = await self.fetch(url, token)
            created.append(downloaded)
            converted = await self.convert(downloaded)
            created.append(converted)
            yield MediaArtifact(
                path=converted,
                recording_id=recording_id,
                meeting_id=meeting_id,
                topic=topic,
                files=list(created),
            )
        finally:
            if created:
                logger.info("Cleaning up %s temporary file(s)", len(created))
                await self.cleanup(created)
