"""Circuit breaker configuration and per-user state."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class BreakerStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class BreakerEventKind(str, Enum):
    OPENED = "opened"
    HALF_OPENED = "half_opened"
    CLOSED = "closed"
    REOPENED = "reopened"
    MANUAL_RESET = "manual_reset"


class BreakerTuning(BaseModel):
    """Per-user breaker knobs, carried inside the user's preferences."""

    max_consecutive_low: int = Field(ge=1, le=100, default=5)
    cooldown_minutes: int = Field(ge=1, le=24 * 60, default=60)
    half_open_success_threshold: int = Field(ge=1, le=100, default=3)


class CircuitBreakerState(BaseModel):
    """Automation health for one user, independent of any thread."""

    user_id: str
    state: BreakerStatus = BreakerStatus.CLOSED
    consecutive_low_confidence: int = 0
    half_open_successes: int = 0
    last_low_confidence_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    closes_at: Optional[datetime] = None
    manual_override: bool = False
    updated_at: datetime


class BreakerEvent(BaseModel):
    """A state change of a user's breaker. Kept so users can see why autonomy paused."""

    user_id: str
    kind: BreakerEventKind
    reason: str
    occurred_at: datetime
