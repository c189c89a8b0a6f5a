"""Audit Entry — the immutable record of one decision."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from scheduling_kernel.models.confidence import ConfidenceAssessment


class DecisionOutcome(str, Enum):
    AUTO_RESPOND = "auto_respond"
    REQUEST_APPROVAL = "request_approval"
    DECLINE = "decline"

    @property
    def is_low_confidence(self) -> bool:
        return self is not DecisionOutcome.AUTO_RESPOND


class OverrideKind(str, Enum):
    APPROVED = "approved"
    RETRACTED = "retracted"
    MARKED_INCORRECT = "marked_incorrect"


class UserOverride(BaseModel):
    """A later human correction. Appended beside the entry, never written into it."""

    model_config = ConfigDict(frozen=True)

    kind: OverrideKind
    reason: Optional[str] = None
    overridden_at: datetime


class AuditEntry(BaseModel):
    """
    The System of Record entry for one decision.
    Every field answers: what was decided, on what evidence, and what the user later said.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    thread_id: str
    message_id: str
    sender: str

    # WHAT WAS DECIDED
    action: DecisionOutcome
    confidence_score: float
    assessment: Optional[ConfidenceAssessment] = None   # Absent when scoring was skipped
    rationale: List[str] = []

    # WHAT WAS OBSERVED
    conversation_snapshot: dict = {}
    breaker_snapshot: dict = {}
    calendar_snapshot: dict = {}

    # NOTIFICATION
    user_notified: bool = False
    notified_at: Optional[datetime] = None

    created_at: datetime

    # USER FEEDBACK (populated at read time from the override table)
    override: Optional[UserOverride] = None
    override_history: List[UserOverride] = []

    # INTEGRITY
    signature: str = ""
    prior_record_hash: Optional[str] = None


class AuditQuery(BaseModel):
    """Filters for ``AuditLog.query``. Every field is optional."""

    user_id: Optional[str] = None
    thread_id: Optional[str] = None
    sender: Optional[str] = None
    action: Optional[DecisionOutcome] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    min_confidence: Optional[float] = None
    max_confidence: Optional[float] = None
    limit: int = 50
    offset: int = 0


class AuditStatistics(BaseModel):
    user_id: str
    days: int
    total_actions: int = 0
    auto_responded: int = 0
    escalated: int = 0
    declined: int = 0
    average_confidence: float = 0.0
    override_rate: float = 0.0


class SenderHistory(BaseModel):
    """Aggregate of a sender's past decisions for one user."""

    sender: str
    total_messages: int = 0
    auto_responses: int = 0
    successful_auto_responses: int = 0
    last_interaction: Optional[datetime] = None
