"""
Circuit Breaker — per-user safety net against runaway automation.

States:
  CLOSED ──(max consecutive low outcomes)──▶ OPEN
  OPEN ──(cooldown elapsed)──▶ HALF_OPEN
  HALF_OPEN ──(one low outcome)──▶ OPEN
  HALF_OPEN ──(N consecutive auto responses)──▶ CLOSED

Behavioral Contract:
- ``evaluate`` is called exactly once per completed decision, including
  decisions that were forced by the breaker itself
- While OPEN every decision is forced to request_approval
- ``manual_reset`` (user only) forces CLOSED and sets ``manual_override``,
  which is cleared on the next natural state change
- Every state change is kept as a BreakerEvent so users can see why autonomy paused
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from scheduling_kernel.models.audit import DecisionOutcome
from scheduling_kernel.models.breaker import (
    BreakerEvent,
    BreakerEventKind,
    BreakerStatus,
    BreakerTuning,
    CircuitBreakerState,
)
from scheduling_kernel.observability.logging import get_logger

logger = get_logger(__name__)


class CircuitBreaker:
    """
    In-memory breaker registry keyed by user id.
    Callers serialize all reads and writes for a given user.
    """

    def __init__(self):
        self._states: Dict[str, CircuitBreakerState] = {}
        self._events: Dict[str, List[BreakerEvent]] = {}

    # --- Reads ---

    def get_state(self, user_id: str, now: Optional[datetime] = None) -> CircuitBreakerState:
        """Current state, initializing a closed breaker for unseen users."""
        state = self._states.get(user_id)
        if state is None:
            state = CircuitBreakerState(
                user_id=user_id,
                updated_at=now or datetime.now(timezone.utc),
            )
            self._states[user_id] = state
            logger.info("Initialized circuit breaker", user_id=user_id)
        return state

    def check(self, user_id: str, now: Optional[datetime] = None) -> CircuitBreakerState:
        """
        State to apply to the next decision. An open breaker whose cooldown
        has elapsed moves to half_open here.
        """
        now = now or datetime.now(timezone.utc)
        state = self.get_state(user_id, now)
        if (
            state.state == BreakerStatus.OPEN
            and state.closes_at is not None
            and now >= state.closes_at
        ):
            state = self._transition(
                state,
                BreakerStatus.HALF_OPEN,
                BreakerEventKind.HALF_OPENED,
                "cooldown elapsed",
                now,
                consecutive_low_confidence=0,
                half_open_successes=0,
            )
        return state

    def is_open(self, user_id: str, now: Optional[datetime] = None) -> bool:
        return self.check(user_id, now).state == BreakerStatus.OPEN

    def events(self, user_id: str) -> List[BreakerEvent]:
        return list(self._events.get(user_id, []))

    # --- Writes ---

    def evaluate(
        self,
        user_id: str,
        outcome: DecisionOutcome,
        tuning: Optional[BreakerTuning] = None,
        now: Optional[datetime] = None,
    ) -> CircuitBreakerState:
        """Feed one decision outcome into the breaker."""
        tuning = tuning or BreakerTuning()
        now = now or datetime.now(timezone.utc)
        state = self.check(user_id, now)

        if state.state == BreakerStatus.CLOSED:
            return self._evaluate_closed(state, outcome, tuning, now)
        if state.state == BreakerStatus.HALF_OPEN:
            return self._evaluate_half_open(state, outcome, tuning, now)
        return self._evaluate_open(state, outcome, now)

    def manual_reset(self, user_id: str, now: Optional[datetime] = None) -> CircuitBreakerState:
        """User forces the breaker closed."""
        now = now or datetime.now(timezone.utc)
        state = self.get_state(user_id, now)
        state = self._transition(
            state,
            BreakerStatus.CLOSED,
            BreakerEventKind.MANUAL_RESET,
            "reset by user",
            now,
            consecutive_low_confidence=0,
            half_open_successes=0,
            opened_at=None,
            closes_at=None,
            manual_override=True,
        )
        logger.info("Circuit breaker manually CLOSED by user", user_id=user_id)
        return state

    # --- Per-state evaluation ---

    def _evaluate_closed(
        self,
        state: CircuitBreakerState,
        outcome: DecisionOutcome,
        tuning: BreakerTuning,
        now: datetime,
    ) -> CircuitBreakerState:
        if not outcome.is_low_confidence:
            return self._save(state, consecutive_low_confidence=0, updated_at=now)

        count = state.consecutive_low_confidence + 1
        state = self._save(
            state,
            consecutive_low_confidence=count,
            last_low_confidence_at=now,
            updated_at=now,
        )
        if count >= tuning.max_consecutive_low:
            state = self._open(
                state,
                BreakerEventKind.OPENED,
                f"{count} consecutive low-confidence decisions",
                tuning,
                now,
            )
            logger.warning(
                "Circuit breaker OPENED due to consecutive low-confidence decisions",
                user_id=state.user_id,
                consecutive_count=count,
                closes_at=state.closes_at.isoformat(),
            )
        return state

    def _evaluate_half_open(
        self,
        state: CircuitBreakerState,
        outcome: DecisionOutcome,
        tuning: BreakerTuning,
        now: datetime,
    ) -> CircuitBreakerState:
        if outcome.is_low_confidence:
            state = self._save(
                state,
                consecutive_low_confidence=state.consecutive_low_confidence + 1,
                last_low_confidence_at=now,
            )
            state = self._open(
                state,
                BreakerEventKind.REOPENED,
                "low-confidence decision while half-open",
                tuning,
                now,
            )
            logger.warning("Circuit breaker REOPENED", user_id=state.user_id)
            return state

        successes = state.half_open_successes + 1
        if successes >= tuning.half_open_success_threshold:
            state = self._transition(
                state,
                BreakerStatus.CLOSED,
                BreakerEventKind.CLOSED,
                f"{successes} consecutive auto responses while half-open",
                now,
                consecutive_low_confidence=0,
                half_open_successes=0,
                opened_at=None,
                closes_at=None,
            )
            logger.info("Circuit breaker CLOSED (automation resumed)", user_id=state.user_id)
            return state
        return self._save(state, half_open_successes=successes, updated_at=now)

    def _evaluate_open(
        self,
        state: CircuitBreakerState,
        outcome: DecisionOutcome,
        now: datetime,
    ) -> CircuitBreakerState:
        # Forced decisions still count; the cooldown timer is not extended
        if outcome.is_low_confidence:
            return self._save(
                state,
                consecutive_low_confidence=state.consecutive_low_confidence + 1,
                last_low_confidence_at=now,
                updated_at=now,
            )
        return self._save(state, updated_at=now)

    # --- Helpers ---

    def _open(
        self,
        state: CircuitBreakerState,
        kind: BreakerEventKind,
        reason: str,
        tuning: BreakerTuning,
        now: datetime,
    ) -> CircuitBreakerState:
        return self._transition(
            state,
            BreakerStatus.OPEN,
            kind,
            reason,
            now,
            half_open_successes=0,
            opened_at=now,
            closes_at=now + timedelta(minutes=tuning.cooldown_minutes),
        )

    def _transition(
        self,
        state: CircuitBreakerState,
        new_status: BreakerStatus,
        kind: BreakerEventKind,
        reason: str,
        now: datetime,
        **updates,
    ) -> CircuitBreakerState:
        # A natural transition clears the user's manual override
        updates.setdefault("manual_override", False)
        state = self._save(state, state=new_status, updated_at=now, **updates)
        self._events.setdefault(state.user_id, []).append(
            BreakerEvent(user_id=state.user_id, kind=kind, reason=reason, occurred_at=now)
        )
        return state

    def _save(self, current: CircuitBreakerState, **updates) -> CircuitBreakerState:
        new_state = current.model_copy(update=updates)
        self._states[current.user_id] = new_state
        return new_state
