"""
Extraction fallback chain

Strategies are tried in priority order. The first one that produces a
non-empty list of facts wins and later strategies are never invoked.
A strategy that raises hands over to the next one; an empty list is a
valid "nothing to do" answer, not a failure. ExtractionError is raised
only when every strategy raised.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Union

from reelsync.config import settings
from reelsync.errors import ExtractionError
from reelsync.ingest.zoom_api import ZoomRecordingsClient
from reelsync.reason.interpreters import Interpreter, LLMInterpreter, PatternInterpreter
from reelsync.reason.transcription import (
    LocalWhisperTranscriber,
    OpenAIWhisperTranscriber,
    Transcriber,
    ZoomCloudTranscriber,
)
from reelsync.schemas.extraction import ExtractedFact, MediaArtifact
from reelsync.utils.logging import get_logger

logger = get_logger(__name__, category="extraction")

# Transcriber name -> transcript text, or the error it raised
Transcripts = Dict[str, Union[str, Exception]]


class ExtractionStrategy(ABC):
    name: str = "strategy"

    @abstractmethod
    async def run(
        self, media: MediaArtifact, transcripts: Transcripts
    ) -> List[ExtractedFact]:
        """Facts for `media`.

        `transcripts` is shared by all strategies of one chain run, keyed by
        transcriber name, so each transcriber runs at most once per chain run.
        """


class TranscribeInterpretStrategy(ExtractionStrategy):
    """Transcribe with one backend, then interpret the text."""

    def __init__(
        self,
        transcriber: Transcriber,
        interpreter: Interpreter,
        name: Optional[str] = None,
    ):
        self.transcriber = transcriber
        self.interpreter = interpreter
        self.name = name or f"{transcriber.name}+{interpreter.name}"

    async def run(
        self, media: MediaArtifact, transcripts: Transcripts
    ) -> List[ExtractedFact]:
        key = self.transcriber.name
        if key not in transcripts:
            try:
                transcripts[key] = await self.transcriber.transcribe(media)
            except Exception as exc:
                transcripts[key] = exc
                raise
        transcript = transcripts[key]
        if isinstance(transcript, Exception):
            raise transcript
        return await self.interpreter.interpret(transcript)


class ExtractionChain:
    def __init__(self, strategies: Sequence[ExtractionStrategy]):
        if not strategies:
            raise ValueError("ExtractionChain needs at least one strategy")
        self.strategies = list(strategies)

    async def extract(self, media: MediaArtifact) -> List[ExtractedFact]:
        transcripts: Transcripts = {}
        errors: List[Exception] = []

        for strategy in self.strategies:
            logger.info("Trying extraction strategy %s", strategy.name)
            try:
                facts = await strategy.run(media, transcripts)
            except Exception as exc:
                logger.warning("Extraction strategy %s failed: %s", strategy.name, exc)
                errors.append(exc)
                continue

            if facts:
                logger.info(
                    "Extraction strategy %s produced %s fact(s)", strategy.name, len(facts)
                )
                return facts
            logger.info("Extraction strategy %s found nothing", strategy.name)

        if len(errors) == len(self.strategies):
            last = errors[-1]
            if isinstance(last, ExtractionError):
                raise last
            raise ExtractionError(f"All extraction strategies failed: {last}") from last

        logger.info("No facts extracted by any strategy")
        return []


def build_default_chain(
    recordings_client: Optional[ZoomRecordingsClient] = None,
    local_whisper_enabled: Optional[bool] = None,
) -> ExtractionChain:
    """Zoom transcript first, then OpenAI Whisper, then local Whisper.

    LLM interpretation is tried for every transcript before falling back to
    pattern matching.
    """
    if local_whisper_enabled is None:
        local_whisper_enabled = settings.local_whisper_enabled

    llm = LLMInterpreter()
    pattern = PatternInterpreter()
    openai_whisper = OpenAIWhisperTranscriber()
    local_whisper = LocalWhisperTranscriber() if local_whisper_enabled else None

    strategies: List[ExtractionStrategy] = []
    if recordings_client is not None:
        strategies.append(
            TranscribeInterpretStrategy(ZoomCloudTranscriber(recordings_client), llm)
        )
    strategies.append(TranscribeInterpretStrategy(openai_whisper, llm))
    if local_whisper:
        strategies.append(TranscribeInterpretStrategy(local_whisper, llm))
    strategies.append(TranscribeInterpretStrategy(openai_whisper, pattern))
    if local_whisper:
        strategies.append(TranscribeInterpretStrategy(local_whisper, pattern))
    return ExtractionChain(strategies)
