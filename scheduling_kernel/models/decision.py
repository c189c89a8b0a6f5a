"""Decision result and collaborator payloads exchanged with the orchestrator."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from scheduling_kernel.models.audit import DecisionOutcome
from scheduling_kernel.models.breaker import CircuitBreakerState
from scheduling_kernel.models.confidence import ConfidenceAssessment
from scheduling_kernel.models.conversation import ConversationState
from scheduling_kernel.models.message import TimeRange


class AvailabilityResult(BaseModel):
    """What the calendar collaborator reports for the proposed ranges."""

    requested: List[TimeRange] = []
    available: List[TimeRange] = []
    conflicts: List[dict] = []
    suggested: List[TimeRange] = []

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)


class DecisionResult(BaseModel):
    """Returned to the caller, who performs the side effects (send, notify)."""

    outcome: DecisionOutcome
    audit_entry_id: str
    conversation: ConversationState
    assessment: Optional[ConfidenceAssessment] = None
    breaker_state: CircuitBreakerState
    rationale: List[str] = []
    actionable: bool = False
    availability: Optional[AvailabilityResult] = None
    review_id: Optional[str] = None
    decided_at: datetime


class ProcessResult(BaseModel):
    """Outcome of ``process``: the decision plus what happened to the reply."""

    decision: DecisionResult
    reply_sent: bool = False
    reply_id: Optional[str] = None
    send_skipped_reason: Optional[str] = None
