"""
Extraction Schemas

ExtractedFact is the unit of work that flows from the extraction chain to
the ClickUp dispatcher. MediaArtifact describes the local audio handed to
the chain.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from pydantic import BaseModel, Field


class ExtractedFact(BaseModel):
    """One (character, task) pair found in a recording."""

    project: str = Field(..., description="Owning project, default applies when unspecified")
    character: str = Field(..., min_length=1)
    task: str = Field(..., min_length=1)
    context: str = Field(default="", description="Best-effort sentence explaining the task")
    confidence: float = Field(..., ge=0.0, le=1.0)


@dataclass
class MediaArtifact:
    """A downloaded (and converted) recording ready for transcription."""

    path: str
    recording_id: Optional[str] = None
    meeting_id: Optional[str] = None
    topic: Optional[str] = None
    # Every local file created while acquiring this artifact
    files: List[str] = field(default_factory=list)
