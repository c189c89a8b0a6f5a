"""Classified Message — what the external classifier hands to the kernel."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RequestType(str, Enum):
    INITIAL = "initial"
    CONFIRMATION = "confirmation"
    RESCHEDULING = "rescheduling"
    CLARIFICATION = "clarification"


class TimeRange(BaseModel):
    """A candidate meeting slot extracted from the message body."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @property
    def duration_seconds(self) -> float:
        return (self.end - self.start).total_seconds()


class ClassifiedMessage(BaseModel):
    """
    One inbound scheduling message, already classified.

    Absent classifier outputs are explicit: ``intent_confidence=None`` and
    ``time_candidates=None`` mean the classifier could not produce them, which
    is different from "no times were proposed" (an empty list).
    """

    model_config = ConfigDict(frozen=True)

    thread_id: str
    message_id: str
    user_id: str                                     # Mailbox owner
    sender: str
    body: str = ""
    subject: Optional[str] = None
    intent_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    time_candidates: Optional[List[TimeRange]] = None
    extraction_quality: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    request_type: RequestType = RequestType.INITIAL
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("sender")
    @classmethod
    def _normalize_sender(cls, value: str) -> str:
        return value.strip().lower()
