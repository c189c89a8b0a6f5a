"""Conversation State — lifecycle of one email thread."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class ConversationStatus(str, Enum):
    INITIAL = "initial"
    AVAILABILITY_SENT = "availability_sent"
    NEGOTIATING = "negotiating"
    CONFIRMED = "confirmed"
    SCHEDULED = "scheduled"
    CLOSED = "closed"


TERMINAL_STATUSES = frozenset({ConversationStatus.SCHEDULED, ConversationStatus.CLOSED})


class ConversationState(BaseModel):
    """Tracked state for a thread. Exactly one live record per thread."""

    id: str
    thread_id: str
    user_id: str
    state: ConversationStatus = ConversationStatus.INITIAL
    turn_count: int = Field(ge=0, default=0)
    current_request_id: Optional[str] = None
    previous_request_ids: List[str] = []     # Oldest first, bounded
    context: dict = {}                       # last_proposed_slots, confirmation_pending, ...
    last_activity: datetime
    expires_at: Optional[datetime] = None
    closed_reason: Optional[str] = None      # "explicit" | "expired" | "scheduled" | "superseded"
    created_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATUSES
