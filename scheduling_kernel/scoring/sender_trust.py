"""
History-based sender trust — derives trust from the audit trail.

This closes the feedback loop: auto responses that the user later retracted
or marked incorrect stop counting as successes, which lowers the sender's
trust on the next decision.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

from scheduling_kernel.audit.store import AuditLog
from scheduling_kernel.models.audit import SenderHistory

BASE_KNOWN_TRUST = 0.6
RECENT_INTERACTION = timedelta(days=30)


def trust_from_history(history: SenderHistory, now: Optional[datetime] = None) -> Optional[float]:
    """Trust score for a sender's history, or None if the sender has never written."""
    if history.total_messages == 0:
        return None

    now = now or datetime.now(timezone.utc)
    trust = BASE_KNOWN_TRUST

    if history.auto_responses > 0:
        success_rate = history.successful_auto_responses / history.auto_responses
        trust += success_rate * 0.3

    if history.total_messages > 10:
        trust += 0.1

    if history.last_interaction and now - history.last_interaction < RECENT_INTERACTION:
        trust += 0.1

    return max(0.0, min(1.0, trust))


class HistoryTrustLookup:
    """SenderTrustLookup backed by the audit log."""

    def __init__(self, audit_log: AuditLog):
        self.audit_log = audit_log

    async def lookup(
        self, user_id: str, sender: str, now: Optional[datetime] = None
    ) -> Optional[float]:
        history = await asyncio.to_thread(self.audit_log.sender_history, user_id, sender)
        return trust_from_history(history, now)
