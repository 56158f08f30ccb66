"""
Recording Event Processor

Consumes decoded Zoom events. A recording.completed event drives the whole
pipeline: pick the audio file, download and convert it, run the extraction
chain, then push every fact to ClickUp. The ClickUp client queues each of
its HTTP requests on the shared rate-limited dispatcher.
Holds no state between events, so several events may be processed at once.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from reelsync.config import settings
from reelsync.dispatch.clickup import ClickUpClient
from reelsync.errors import ReelSyncError, ValidationError
from reelsync.ingest.auth import ZoomTokenProvider
from reelsync.ingest.media import MediaFetcher
from reelsync.ingest.zoom_api import ZoomRecordingsClient
from reelsync.reason.extraction import ExtractionChain
from reelsync.schemas.events import (
    RECORDING_COMPLETED,
    URL_VALIDATION,
    RecordingCompletedPayload,
    ZoomEvent,
)
from reelsync.schemas.extraction import ExtractedFact
from reelsync.schemas.processing import DispatchOutcome, ProcessingSummary
from reelsync.utils.logging import get_logger

logger = get_logger(__name__, category="events")


def group_by_character(facts: List[ExtractedFact]) -> "OrderedDict[str, List[ExtractedFact]]":
    """Group facts per character, keeping first-appearance order."""
    groups: "OrderedDict[str, List[ExtractedFact]]" = OrderedDict()
    for fact in facts:
        groups.setdefault(fact.character, []).append(fact)
    return groups


class RecordingEventProcessor:
    """Turns recording events into ClickUp updates."""

    def __init__(
        self,
        media_fetcher: MediaFetcher,
        extraction_chain: ExtractionChain,
        clickup: ClickUpClient,
        token_provider: Optional[ZoomTokenProvider] = None,
        recordings_client: Optional[ZoomRecordingsClient] = None,
        item_delay: Optional[float] = None,
        group_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the event processor.

        Args:
            media_fetcher: Download/convert/cleanup helper
            extraction_chain: Ordered fallback chain of extraction strategies
            clickup: ClickUp client that applies a fact to its task, pacing
                its requests through the shared dispatcher
            token_provider: Zoom credentials, used for recording downloads
            recordings_client: Zoom API client, used to request cloud transcripts
            item_delay: Pause between facts of the same character
            group_delay: Pause between characters
            sleep: Awaitable sleep, injectable for tests
        """
        self.media_fetcher = media_fetcher
        self.extraction_chain = extraction_chain
        self.clickup = clickup
        self.token_provider = token_provider
        self.recordings_client = recordings_client
        self.item_delay = settings.dispatch_item_delay if item_delay is None else item_delay
        self.group_delay = settings.dispatch_group_delay if group_delay is None else group_delay
        self._sleep = sleep

    async def process(self, event: dict) -> ProcessingSummary:
        """
        Handle one decoded event. Never raises.

        Args:
            event: Raw event dict as delivered by the stream

        Returns:
            ProcessingSummary describing what happened
        """
        event_type = str(event.get("event") or event.get("event_type") or "unknown")
        try:
            parsed = ZoomEvent.from_raw(event)
            if parsed.event == RECORDING_COMPLETED:
                return await self.handle_recording_completed(parsed)
            if parsed.event == URL_VALIDATION:
                logger.info("Received endpoint URL validation event")
            else:
                logger.info("Ignoring event type %s", parsed.event)
            return ProcessingSummary(event_type=parsed.event, status="ignored")
        except PydanticValidationError as exc:
            logger.error("Malformed %s event: %s", event_type, exc)
            return ProcessingSummary(event_type=event_type, status="failed", error=str(exc))
        except ReelSyncError as exc:
            logger.error("Processing %s event failed: %s", event_type, exc)
            return ProcessingSummary(event_type=event_type, status="failed", error=str(exc))
        except Exception as exc:
            logger.exception("Unexpected error processing %s event", event_type)
            return ProcessingSummary(
                event_type=event_type, status="failed", error=f"Unexpected error: {exc}"
            )

    async def handle_recording_completed(self, event: ZoomEvent) -> ProcessingSummary:
        """
        Run fetch -> extract -> dispatch for a completed recording.

        Raises:
            ValidationError: the payload has no meeting or no audio file
            MediaError: the recording could not be downloaded or converted
            ExtractionError: every extraction strategy failed
        """
        try:
            payload = RecordingCompletedPayload.model_validate(event.payload)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid recording.completed payload: {exc}") from exc

        meeting = payload.object
        audio = meeting.find_audio_recording()
        if audio is None:
            raise ValidationError(f"No audio recording found for meeting {meeting.id}")

        logger.info(
            "Processing recording for meeting %s (%s), file %s", meeting.id, meeting.topic, audio.id
        )
        await self._request_cloud_transcript(meeting.id, audio.id)

        download_token = meeting.download_token
        if not download_token and self.token_provider is not None:
            download_token = (await self.token_provider.get_token()).token

        async with self.media_fetcher.acquire(
            audio.download_url,
            download_token,
            recording_id=audio.id,
            meeting_id=meeting.id,
            topic=meeting.topic,
        ) as media:
            facts = await self.extraction_chain.extract(media)

        summary = ProcessingSummary(
            event_type=event.event,
            status="no_facts",
            meeting_id=meeting.id,
            topic=meeting.topic,
            facts_extracted=len(facts),
        )
        if not facts:
            logger.info("No character/task information found in meeting %s", meeting.id)
            return summary

        summary.outcomes = await self.dispatch_facts(facts)
        summary.dispatched = sum(1 for o in summary.outcomes if o.success)
        summary.failed = len(summary.outcomes) - summary.dispatched
        summary.status = "failed" if summary.dispatched == 0 else "completed"
        logger.info(
            "Meeting %s processed: %s fact(s), %s dispatched, %s failed",
            meeting.id,
            len(facts),
            summary.dispatched,
            summary.failed,
        )
        return summary

    async def _request_cloud_transcript(self, meeting_id: str, recording_id: str) -> None:
        if self.recordings_client is None:
            return
        try:
            await self.recordings_client.request_transcript(meeting_id, recording_id)
        except Exception as exc:
            # Best effort, the chain falls back to other transcribers
            logger.warning("Could not request Zoom transcript for %s: %s", meeting_id, exc)

    async def dispatch_facts(self, facts: List[ExtractedFact]) -> List[DispatchOutcome]:
        """Submit facts grouped by character, pausing between items and groups."""
        outcomes: List[DispatchOutcome] = []
        groups: Dict[str, List[ExtractedFact]] = group_by_character(facts)

        for group_index, (character, group) in enumerate(groups.items()):
            if group_index > 0 and self.group_delay > 0:
                await self._sleep(self.group_delay)
            logger.info("Updating ClickUp for %s (%s task(s))", character, len(group))

            for item_index, fact in enumerate(group):
                if item_index > 0 and self.item_delay > 0:
                    await self._sleep(self.item_delay)
                outcomes.append(await self._dispatch_one(fact))
        return outcomes

    async def _dispatch_one(self, fact: ExtractedFact) -> DispatchOutcome:
        try:
            task_id = await self.clickup.apply_fact(fact)
        except Exception as exc:
            logger.error("Failed to update ClickUp for %s/%s: %s", fact.character, fact.task, exc)
            return DispatchOutcome(
                character=fact.character, task=fact.task, success=False, error=str(exc)
            )
        return DispatchOutcome(
            character=fact.character, task=fact.task, success=True, task_id=task_id
        )
