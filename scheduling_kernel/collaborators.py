"""
Collaborator protocols — the boundary to everything outside the decision core.

Implementations live outside the kernel (calendar and mail wrappers, trust
services). Every method may block or fail; the orchestrator wraps each call
in a bounded timeout.
"""

from datetime import datetime
from typing import List, Optional, Protocol

from scheduling_kernel.models.decision import AvailabilityResult, DecisionResult
from scheduling_kernel.models.message import ClassifiedMessage, TimeRange


class SenderTrustLookup(Protocol):
    """
    Returns a trust score in [0, 1], or None when the sender is unknown.
    ``now`` is the decision time; time-dependent factors are measured from it.
    """

    async def lookup(self, user_id: str, sender: str, now: datetime) -> Optional[float]: ...


class CalendarAvailability(Protocol):
    """Reports availability and conflicts for the proposed ranges."""

    async def check(self, user_id: str, ranges: List[TimeRange]) -> AvailabilityResult: ...


class ReplySender(Protocol):
    """Sends the availability reply for an actionable decision. Returns the sent message id."""

    async def send(self, message: ClassifiedMessage, decision: DecisionResult) -> str: ...

