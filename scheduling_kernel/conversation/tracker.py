"""
Conversation State Tracker — per-thread state machine.

States:
  INITIAL → AVAILABILITY_SENT → CONFIRMED → SCHEDULED → CLOSED
  AVAILABILITY_SENT → NEGOTIATING → AVAILABILITY_SENT   (counter-proposals)

Behavioral Contract:
- Transitions are looked up in TRANSITIONS, keyed by (state, request type)
- A missing entry never raises: the old record is archived untouched and a
  fresh conversation is started, with a warning recorded
- Terminal records (scheduled, closed) are never mutated or resurrected
- Records idle longer than the expiry window are closed lazily on access
  and by the expiry sweep (``expired`` + ``close_if_expired``)
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, NamedTuple, Optional, Tuple
from uuid import uuid4

from scheduling_kernel.conversation.store import ConversationStore
from scheduling_kernel.models.audit import DecisionOutcome
from scheduling_kernel.models.conversation import ConversationState, ConversationStatus
from scheduling_kernel.models.message import RequestType, TimeRange
from scheduling_kernel.observability.logging import get_logger

logger = get_logger(__name__)

S = ConversationStatus
R = RequestType


class Transition(NamedTuple):
    on_reply: ConversationStatus    # Target when the kernel auto-responded
    on_hold: ConversationStatus     # Target when the message was escalated or declined


TRANSITIONS: Dict[Tuple[ConversationStatus, RequestType], Transition] = {
    (S.INITIAL, R.INITIAL): Transition(S.AVAILABILITY_SENT, S.INITIAL),
    (S.INITIAL, R.CLARIFICATION): Transition(S.AVAILABILITY_SENT, S.INITIAL),
    (S.INITIAL, R.RESCHEDULING): Transition(S.AVAILABILITY_SENT, S.INITIAL),
    (S.AVAILABILITY_SENT, R.CONFIRMATION): Transition(S.CONFIRMED, S.CONFIRMED),
    (S.AVAILABILITY_SENT, R.RESCHEDULING): Transition(S.AVAILABILITY_SENT, S.NEGOTIATING),
    (S.AVAILABILITY_SENT, R.CLARIFICATION): Transition(S.AVAILABILITY_SENT, S.AVAILABILITY_SENT),
    (S.NEGOTIATING, R.INITIAL): Transition(S.AVAILABILITY_SENT, S.NEGOTIATING),
    (S.NEGOTIATING, R.RESCHEDULING): Transition(S.AVAILABILITY_SENT, S.NEGOTIATING),
    (S.NEGOTIATING, R.CLARIFICATION): Transition(S.AVAILABILITY_SENT, S.NEGOTIATING),
    (S.NEGOTIATING, R.CONFIRMATION): Transition(S.CONFIRMED, S.CONFIRMED),
    (S.CONFIRMED, R.CONFIRMATION): Transition(S.CONFIRMED, S.CONFIRMED),
    (S.CONFIRMED, R.CLARIFICATION): Transition(S.CONFIRMED, S.CONFIRMED),
    (S.CONFIRMED, R.RESCHEDULING): Transition(S.AVAILABILITY_SENT, S.NEGOTIATING),
}


def lookup_transition(
    state: ConversationStatus, request_type: RequestType
) -> Optional[Transition]:
    """The table entry for (state, request type), or None meaning 'start new'."""
    return TRANSITIONS.get((state, request_type))


class ConversationTracker:
    """Owns conversation lifecycles. Callers serialize access per thread."""

    def __init__(
        self,
        store: Optional[ConversationStore] = None,
        expiry_days: int = 14,
        max_previous_requests: int = 20,
    ):
        self.store = store or ConversationStore()
        self.expiry = timedelta(days=expiry_days)
        self.max_previous_requests = max_previous_requests

    # --- Lookup ---

    def get(self, thread_id: str, now: Optional[datetime] = None) -> Optional[ConversationState]:
        """Live state for a thread, closing it first if it has expired."""
        now = now or datetime.now(timezone.utc)
        state = self.store.get_live(thread_id)
        if state is not None and self._is_expired(state, now):
            self._close(state, "expired", now)
            return None
        return state

    def get_or_create(
        self, thread_id: str, user_id: str, now: Optional[datetime] = None
    ) -> ConversationState:
        now = now or datetime.now(timezone.utc)
        state = self.get(thread_id, now)
        if state is None:
            state = self._start(thread_id, user_id, now)
        return state

    def history(self, thread_id: str) -> List[ConversationState]:
        """Archived conversations for a thread, oldest first, plus the live one."""
        records = self.store.archived(thread_id)
        live = self.store.get_live(thread_id)
        if live is not None:
            records.append(live)
        return records

    # --- Transitions ---

    def advance(
        self,
        thread_id: str,
        user_id: str,
        request_type: RequestType,
        request_id: str,
        outcome: DecisionOutcome = DecisionOutcome.AUTO_RESPOND,
        proposed_slots: Optional[List[TimeRange]] = None,
        now: Optional[datetime] = None,
    ) -> ConversationState:
        """Apply one inbound message to the thread's state machine."""
        now = now or datetime.now(timezone.utc)
        current = self.get_or_create(thread_id, user_id, now)
        warnings: List[str] = []

        transition = lookup_transition(current.state, request_type)
        if transition is None:
            warning = (
                f"no transition from {current.state.value} on {request_type.value}; "
                f"starting a new conversation"
            )
            logger.warning(
                "Invalid conversation transition",
                thread_id=thread_id,
                state=current.state.value,
                request_type=request_type.value,
            )
            warnings.append(warning)
            if current.turn_count > 0:
                self._close(current, "superseded", now)
                current = self._start(thread_id, user_id, now)
            # A fresh conversation still answers the request in front of it
            transition = lookup_transition(S.INITIAL, request_type)

        replied = outcome == DecisionOutcome.AUTO_RESPOND
        if transition is None:
            target = current.state
        else:
            target = transition.on_reply if replied else transition.on_hold

        updated = self._record_turn(
            current, target, request_id, outcome, proposed_slots, warnings, now
        )
        logger.info(
            "Conversation advanced",
            thread_id=thread_id,
            old_state=current.state.value,
            new_state=updated.state.value,
            turn_count=updated.turn_count,
        )
        return updated

    def mark_scheduled(self, thread_id: str, now: Optional[datetime] = None) -> Optional[ConversationState]:
        """The meeting was booked: a confirmed thread becomes scheduled, and leaves the live set."""
        now = now or datetime.now(timezone.utc)
        state = self.get(thread_id, now)
        if state is None or state.state != S.CONFIRMED:
            return None
        scheduled = state.model_copy(
            update={"state": S.SCHEDULED, "last_activity": now, "closed_reason": "scheduled"}
        )
        self.store.put_live(scheduled)
        self.store.archive(thread_id)
        logger.info("Conversation scheduled", thread_id=thread_id)
        return scheduled

    def close(
        self, thread_id: str, reason: str = "explicit", now: Optional[datetime] = None
    ) -> Optional[ConversationState]:
        """Explicitly close a live conversation."""
        now = now or datetime.now(timezone.utc)
        state = self.store.get_live(thread_id)
        if state is None:
            return None
        return self._close(state, reason, now)

    def expired(self, now: Optional[datetime] = None) -> List[ConversationState]:
        """Live conversations idle past the expiry window."""
        now = now or datetime.now(timezone.utc)
        return [s for s in self.store.live_states() if self._is_expired(s, now)]

    def close_if_expired(self, thread_id: str, now: Optional[datetime] = None) -> bool:
        """Close the thread's live conversation if it is still expired."""
        now = now or datetime.now(timezone.utc)
        state = self.store.get_live(thread_id)
        if state is None or not self._is_expired(state, now):
            return False
        self._close(state, "expired", now)
        return True

    # --- Internals ---

    def _is_expired(self, state: ConversationState, now: datetime) -> bool:
        return now - state.last_activity > self.expiry

    def _start(self, thread_id: str, user_id: str, now: datetime) -> ConversationState:
        state = ConversationState(
            id=f"conv_{uuid4().hex[:12]}",
            thread_id=thread_id,
            user_id=user_id,
            last_activity=now,
            expires_at=now + self.expiry,
            created_at=now,
        )
        self.store.put_live(state)
        logger.info("Created conversation state", thread_id=thread_id, id=state.id)
        return state

    def _close(self, state: ConversationState, reason: str, now: datetime) -> ConversationState:
        closed = state.model_copy(
            update={"state": S.CLOSED, "closed_reason": reason, "last_activity": now}
        )
        self.store.put_live(closed)
        self.store.archive(state.thread_id)
        logger.info("Closed conversation", thread_id=state.thread_id, reason=reason)
        return closed

    def _record_turn(
        self,
        current: ConversationState,
        target: ConversationStatus,
        request_id: str,
        outcome: DecisionOutcome,
        proposed_slots: Optional[List[TimeRange]],
        warnings: List[str],
        now: datetime,
    ) -> ConversationState:
        previous = list(current.previous_request_ids)
        if current.current_request_id:
            previous.append(current.current_request_id)
        previous = previous[-self.max_previous_requests:]

        context = dict(current.context)
        context["last_outcome"] = outcome.value
        context["confirmation_pending"] = target == S.AVAILABILITY_SENT
        if proposed_slots:
            context["last_proposed_slots"] = [s.model_dump(mode="json") for s in proposed_slots]
        if warnings:
            context["warnings"] = list(context.get("warnings", [])) + warnings

        updated = current.model_copy(
            update={
                "state": target,
                "turn_count": current.turn_count + 1,
                "current_request_id": request_id,
                "previous_request_ids": previous,
                "context": context,
                "last_activity": now,
                "expires_at": now + self.expiry,
            }
        )
        self.store.put_live(updated)
        return updated
