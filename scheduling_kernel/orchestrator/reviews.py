"""Review queue — escalated and declined decisions awaiting the user."""

from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import uuid4

from scheduling_kernel.models.audit import AuditEntry


class ReviewQueue:
    """Pending human reviews, one per non-automatic decision."""

    def __init__(self):
        self._reviews: Dict[str, dict] = {}

    @property
    def pending(self) -> List[dict]:
        return list(self._reviews.values())

    def pending_for(self, user_id: str) -> List[dict]:
        return [r for r in self.pending if r["user_id"] == user_id]

    def enqueue(self, entry: AuditEntry) -> str:
        review = {
            "id": f"rev_{uuid4().hex[:12]}",
            "audit_entry_id": entry.id,
            "user_id": entry.user_id,
            "thread_id": entry.thread_id,
            "message_id": entry.message_id,
            "sender": entry.sender,
            "outcome": entry.action.value,
            "confidence": entry.confidence_score,
            "rationale": list(entry.rationale),
            "status": "pending",
            "created_at": entry.created_at.isoformat(),
        }
        self._reviews[review["id"]] = review
        return review["id"]

    def resolve(self, review_id: str, resolution: str, resolver: str) -> Optional[dict]:
        """
        Resolve a pending review and drop it from the queue.
        The audit entry, not this queue, is the lasting record.
        """
        review = self._reviews.pop(review_id, None)
        if review is None:
            return None
        review["status"] = "resolved"
        review["resolution"] = resolution
        review["resolved_by"] = resolver
        review["resolved_at"] = datetime.now(timezone.utc).isoformat()
        return review
