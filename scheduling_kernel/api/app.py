"""
Scheduling Kernel API — FastAPI endpoints.

Exposes the kernel's functionality via a REST API for:
- Decisions on classified messages
- User automation settings (threshold, VIP list, blacklist)
- Audit trail queries, statistics and user overrides
- Circuit breaker inspection and manual reset
- Conversation state inspection and expiry
- Review (escalation) handling
"""

from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from scheduling_kernel.config import Settings, get_settings
from scheduling_kernel.conversation.sweeper import ExpirySweeper
from scheduling_kernel.errors import (
    AuditEntryNotFound,
    AuditStorageError,
    DecisionNotRecorded,
    InvalidPreferences,
    OverrideWindowExpired,
)
from scheduling_kernel.models.audit import AuditQuery, DecisionOutcome, OverrideKind
from scheduling_kernel.models.message import ClassifiedMessage
from scheduling_kernel.models.preferences import PreferencesUpdate
from scheduling_kernel.observability.logging import get_logger, setup_logging
from scheduling_kernel.orchestrator.decision import DecisionOrchestrator

logger = get_logger(__name__)


# --- Request/Response Models ---

class AddressRequest(BaseModel):
    address: str


class OverrideRequest(BaseModel):
    kind: OverrideKind
    reason: Optional[str] = None


class ReviewResolveRequest(BaseModel):
    resolution: str
    resolver: str


class CloseConversationRequest(BaseModel):
    reason: str = "explicit"


# --- Application Factory ---

def create_app(
    orchestrator: Optional[DecisionOrchestrator] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or get_settings()
    setup_logging(settings.log_level)

    app = FastAPI(
        title="Scheduling Kernel API",
        description="Autonomous scheduling decision core",
        version="0.1.0",
    )

    # Initialize components
    orch = orchestrator or DecisionOrchestrator(settings=settings)
    tracker = orch.tracker
    breaker = orch.breaker
    audit = orch.audit_log
    prefs = orch.preferences
    reviews = orch.reviews
    sweeper = ExpirySweeper(orch.sweep_expired, settings.sweep_schedule)

    # Store components on app state for access in endpoints
    app.state.orchestrator = orch
    app.state.sweeper = sweeper
    app.state.settings = settings

    @app.exception_handler(AuditStorageError)
    async def audit_unavailable(request: Request, exc: AuditStorageError):
        logger.error("Audit store unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=503, content={"detail": "Audit store unavailable"})

    @app.exception_handler(DecisionNotRecorded)
    async def decision_not_recorded(request: Request, exc: DecisionNotRecorded):
        return JSONResponse(
            status_code=503,
            content={"detail": str(exc), "message_id": exc.message_id},
        )

    # === STATUS ===

    @app.get("/status")
    def kernel_status():
        """Current kernel status."""
        return {
            "environment": settings.environment,
            "sweeper": sweeper.status,
            "next_sweep": sweeper.next_run().isoformat(),
            "live_conversations": tracker.store.live_count(),
            "pending_reviews": len(reviews.pending),
            "audit_entries": audit.count(),
        }

    # === DECISIONS ===

    @app.post("/decisions")
    async def create_decision(message: ClassifiedMessage):
        """Decide for a classified message. Nothing is sent from here."""
        result = await orch.decide(message, prefs.get(message.user_id))
        return result.model_dump(mode="json")

    # === SETTINGS ===

    @app.get("/users/{user_id}/settings")
    async def get_user_settings(user_id: str):
        """Current automation preferences."""
        return prefs.get(user_id).model_dump(mode="json")

    @app.put("/users/{user_id}/settings")
    async def update_user_settings(user_id: str, update: PreferencesUpdate):
        """Partial settings update. Threshold must lie in [0.70, 0.95]."""
        try:
            updated = prefs.update(user_id, update)
        except InvalidPreferences as e:
            raise HTTPException(422, str(e))
        return updated.model_dump(mode="json")

    @app.post("/users/{user_id}/vip")
    async def add_vip(user_id: str, req: AddressRequest):
        return prefs.add_vip(user_id, req.address).model_dump(mode="json")

    @app.delete("/users/{user_id}/vip")
    async def remove_vip(user_id: str, address: str):
        return prefs.remove_vip(user_id, address).model_dump(mode="json")

    @app.post("/users/{user_id}/blacklist")
    async def add_to_blacklist(user_id: str, req: AddressRequest):
        return prefs.add_to_blacklist(user_id, req.address).model_dump(mode="json")

    @app.delete("/users/{user_id}/blacklist")
    async def remove_from_blacklist(user_id: str, address: str):
        return prefs.remove_from_blacklist(user_id, address).model_dump(mode="json")

    # === AUDIT ===

    @app.get("/users/{user_id}/audit")
    def get_user_audit(
        user_id: str,
        thread_id: Optional[str] = None,
        sender: Optional[str] = None,
        action: Optional[DecisionOutcome] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        min_confidence: Optional[float] = None,
        max_confidence: Optional[float] = None,
        limit: int = 50,
        offset: int = 0,
    ):
        """A user's audit trail, most recent first."""
        entries = audit.query(AuditQuery(
            user_id=user_id,
            thread_id=thread_id,
            sender=sender,
            action=action,
            start=start,
            end=end,
            min_confidence=min_confidence,
            max_confidence=max_confidence,
            limit=limit,
            offset=offset,
        ))
        return [e.model_dump(mode="json") for e in entries]

    @app.get("/users/{user_id}/audit/stats")
    def get_user_audit_stats(user_id: str, days: int = 7):
        """Aggregate decision statistics."""
        return audit.statistics(user_id, days).model_dump(mode="json")

    @app.get("/audit/verify")
    def verify_audit():
        """Verify chain integrity."""
        return {
            "integrity_valid": audit.verify_chain_integrity(),
            "total_records": audit.count(),
        }

    @app.get("/audit/{entry_id}")
    def get_audit_entry(entry_id: str):
        entry = audit.get(entry_id)
        if not entry:
            raise HTTPException(404, "Audit entry not found")
        return entry.model_dump(mode="json")

    @app.post("/audit/{entry_id}/override")
    def override_audit_entry(entry_id: str, req: OverrideRequest):
        """User approves, retracts or marks a decision incorrect."""
        try:
            entry = audit.override(entry_id, req.kind, req.reason)
        except AuditEntryNotFound:
            raise HTTPException(404, "Audit entry not found")
        except OverrideWindowExpired as e:
            raise HTTPException(409, str(e))
        return entry.model_dump(mode="json")

    # === CIRCUIT BREAKER ===

    @app.get("/users/{user_id}/breaker")
    async def get_breaker(user_id: str):
        state = await orch.breaker_state(user_id)
        return state.model_dump(mode="json")

    @app.post("/users/{user_id}/breaker/reset")
    async def reset_breaker(user_id: str):
        """User forces the breaker closed."""
        state = await orch.reset_breaker(user_id)
        return state.model_dump(mode="json")

    @app.get("/users/{user_id}/breaker/events")
    async def get_breaker_events(user_id: str):
        """Why automation paused and resumed."""
        return [e.model_dump(mode="json") for e in breaker.events(user_id)]

    # === CONVERSATIONS ===

    @app.post("/conversations/sweep")
    async def sweep_conversations():
        """Close every expired conversation now."""
        return {"closed": await sweeper.run_once()}

    @app.get("/conversations/{thread_id}")
    async def get_conversation(thread_id: str):
        state = await orch.conversation(thread_id)
        if not state:
            raise HTTPException(404, "No live conversation for thread")
        return state.model_dump(mode="json")

    @app.get("/conversations/{thread_id}/history")
    async def get_conversation_history(thread_id: str):
        """Every conversation ever held on the thread, oldest first."""
        return [s.model_dump(mode="json") for s in tracker.history(thread_id)]

    @app.post("/conversations/{thread_id}/close")
    async def close_conversation(thread_id: str, req: Optional[CloseConversationRequest] = None):
        reason = req.reason if req else "explicit"
        state = await orch.close_conversation(thread_id, reason)
        if not state:
            raise HTTPException(404, "No live conversation for thread")
        return state.model_dump(mode="json")

    @app.post("/conversations/{thread_id}/scheduled")
    async def mark_conversation_scheduled(thread_id: str):
        """The meeting was booked."""
        state = await orch.mark_scheduled(thread_id)
        if not state:
            raise HTTPException(404, "No confirmed conversation for thread")
        return state.model_dump(mode="json")

    # === REVIEWS ===

    @app.get("/escalations/pending")
    async def get_pending_escalations(user_id: Optional[str] = None):
        """Decisions awaiting the user."""
        if user_id:
            return reviews.pending_for(user_id)
        return reviews.pending

    @app.post("/escalations/{review_id}/resolve")
    async def resolve_escalation(review_id: str, req: ReviewResolveRequest):
        """User resolves a pending review."""
        result = reviews.resolve(review_id, req.resolution, req.resolver)
        if not result:
            raise HTTPException(404, "Review not found or already resolved")
        return result

    return app


# Default application instance
app = create_app()
