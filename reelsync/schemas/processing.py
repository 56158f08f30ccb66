"""
Processing result schemas returned by the event processor.
"""

from __future__ import annotations

from typing import List, Optional
from pydantic import BaseModel, Field


class DispatchOutcome(BaseModel):
    """Result of pushing one fact to ClickUp."""

    character: str
    task: str
    success: bool
    task_id: Optional[str] = Field(default=None, description="ClickUp task that was updated")
    error: Optional[str] = None


class ProcessingSummary(BaseModel):
    """Structured success/failure summary of one recording event."""

    event_type: str
    status: str = Field(description="'completed', 'no_facts', 'failed' or 'ignored'")
    meeting_id: Optional[str] = None
    topic: Optional[str] = None
    facts_extracted: int = 0
    dispatched: int = 0
    failed: int = 0
    outcomes: List[DispatchOutcome] = Field(default_factory=list)
    error: Optional[str] = None
