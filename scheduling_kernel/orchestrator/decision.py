"""
Decision Orchestrator — one inbound message in, one audited decision out.

Pipeline (per user, serialized):
  conversation → policy (blacklist / VIP) → confidence → breaker →
  caps (degraded, collaborator failure, automation off, calendar) →
  AUDIT → conversation advance → breaker evaluate → review queue

Behavioral Contract:
- Exactly one AuditEntry per ``decide`` call, written before any state is
  advanced. If the write fails, DecisionNotRecorded is raised and nothing
  else changes.
- Every collaborator call is bounded by a timeout. A timeout or error is a
  failure, never "no data", and caps the outcome at request_approval.
- The orchestrator never sends anything itself from ``decide``; ``process``
  sends only actionable, audited decisions, and re-reads preferences first.
"""

import asyncio
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from uuid import uuid4

from scheduling_kernel.audit.store import AuditLog
from scheduling_kernel.breaker.circuit import CircuitBreaker
from scheduling_kernel.collaborators import CalendarAvailability, ReplySender, SenderTrustLookup
from scheduling_kernel.config import Settings, get_settings
from scheduling_kernel.conversation.tracker import ConversationTracker
from scheduling_kernel.errors import AuditStorageError, CollaboratorFailure, DecisionNotRecorded
from scheduling_kernel.models.audit import AuditEntry, DecisionOutcome
from scheduling_kernel.models.breaker import BreakerStatus, CircuitBreakerState
from scheduling_kernel.models.confidence import ConfidenceAssessment
from scheduling_kernel.models.conversation import ConversationState
from scheduling_kernel.models.decision import AvailabilityResult, DecisionResult, ProcessResult
from scheduling_kernel.models.message import ClassifiedMessage
from scheduling_kernel.models.preferences import UserAutomationPreferences
from scheduling_kernel.observability.logging import get_logger
from scheduling_kernel.orchestrator.locks import KeyedLocks
from scheduling_kernel.orchestrator.reviews import ReviewQueue
from scheduling_kernel.preferences.store import PreferencesStore
from scheduling_kernel.scoring.scorer import ConfidenceScorer
from scheduling_kernel.scoring.sender_trust import HistoryTrustLookup

logger = get_logger(__name__)


class DecisionOrchestrator:
    """Coordinates the scorer, tracker, breaker and audit log for each message."""

    def __init__(
        self,
        scorer: Optional[ConfidenceScorer] = None,
        tracker: Optional[ConversationTracker] = None,
        breaker: Optional[CircuitBreaker] = None,
        audit_log: Optional[AuditLog] = None,
        preferences: Optional[PreferencesStore] = None,
        trust_lookup: Optional[SenderTrustLookup] = None,
        calendar: Optional[CalendarAvailability] = None,
        reply_sender: Optional[ReplySender] = None,
        reviews: Optional[ReviewQueue] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.scorer = scorer or ConfidenceScorer(self.settings.scoring_weights())
        self.tracker = tracker or ConversationTracker(
            expiry_days=self.settings.conversation_expiry_days,
            max_previous_requests=self.settings.max_previous_requests,
        )
        self.breaker = breaker or CircuitBreaker()
        self.audit_log = audit_log or AuditLog(
            self.settings.audit_db_path,
            self.settings.override_window_hours,
            busy_timeout_seconds=self.settings.audit_write_timeout_seconds,
        )
        self.preferences = preferences or PreferencesStore()
        self.trust_lookup = trust_lookup or HistoryTrustLookup(self.audit_log)
        self.calendar = calendar
        self.reply_sender = reply_sender
        self.reviews = reviews or ReviewQueue()
        self._locks = KeyedLocks()

    async def decide(
        self,
        message: ClassifiedMessage,
        preferences: Optional[UserAutomationPreferences] = None,
        now: Optional[datetime] = None,
    ) -> DecisionResult:
        """
        Decide what to do with one classified message.
        Raises DecisionNotRecorded if the audit entry could not be written.
        """
        prefs = preferences or self.preferences.get(message.user_id)
        async with self._locks.hold(message.user_id):
            return await self._decide_locked(message, prefs, now or datetime.now(timezone.utc))

    async def _decide_locked(
        self,
        message: ClassifiedMessage,
        prefs: UserAutomationPreferences,
        now: datetime,
    ) -> DecisionResult:
        conversation = self.tracker.get_or_create(message.thread_id, message.user_id, now)
        breaker_state = self.breaker.check(message.user_id, now)

        rationale: List[str] = []
        caps: List[str] = []
        assessment: Optional[ConfidenceAssessment] = None
        availability: Optional[AvailabilityResult] = None
        calendar_snapshot: dict = {}

        if prefs.is_blacklisted(message.sender):
            outcome = DecisionOutcome.DECLINE
            rationale.append("sender is blacklisted; scoring skipped")
        elif prefs.is_vip(message.sender):
            outcome = DecisionOutcome.REQUEST_APPROVAL
            rationale.append("sender is on the VIP list; VIP messages always need approval")
        else:
            trust, trust_failure = await self._lookup_trust(message, now)
            if trust_failure:
                caps.append(str(trust_failure))

            assessment = self.scorer.assess(
                message, conversation, trust, prefs.confidence_threshold
            )
            outcome = DecisionOutcome(assessment.recommendation.value)
            rationale.append(
                f"confidence {assessment.overall:.2f} against threshold "
                f"{assessment.threshold:.2f}: {assessment.recommendation.value}"
            )

            if breaker_state.state == BreakerStatus.OPEN:
                outcome = DecisionOutcome.REQUEST_APPROVAL
                rationale.append(
                    f"circuit breaker open until {breaker_state.closes_at.isoformat()}"
                )
            if assessment.degraded:
                caps.append(
                    "degraded inputs: " + ", ".join(assessment.factors["degraded_inputs"])
                )
            if not prefs.automation_enabled:
                caps.append("automation is disabled for this user")

        if not prefs.is_blacklisted(message.sender) and message.time_candidates:
            availability, calendar_failure = await self._check_calendar(message)
            if calendar_failure:
                caps.append(str(calendar_failure))
                calendar_snapshot = {"error": str(calendar_failure)}
            elif availability is not None:
                calendar_snapshot = availability.model_dump(mode="json")
                if availability.has_conflicts:
                    caps.append(f"calendar reports {len(availability.conflicts)} conflict(s)")

        rationale.extend(caps)
        if caps and outcome == DecisionOutcome.AUTO_RESPOND:
            outcome = DecisionOutcome.REQUEST_APPROVAL
            rationale.append("auto response capped at request_approval")

        notified = outcome != DecisionOutcome.AUTO_RESPOND
        entry = AuditEntry(
            id=f"aud_{uuid4().hex[:12]}",
            user_id=message.user_id,
            thread_id=message.thread_id,
            message_id=message.message_id,
            sender=message.sender,
            action=outcome,
            confidence_score=assessment.overall if assessment else 0.0,
            assessment=assessment,
            rationale=rationale,
            conversation_snapshot=conversation.model_dump(mode="json"),
            breaker_snapshot=breaker_state.model_dump(mode="json"),
            calendar_snapshot=calendar_snapshot,
            user_notified=notified,
            notified_at=now if notified else None,
            created_at=now,
        )
        await self._record(entry)

        conversation = self.tracker.advance(
            message.thread_id,
            message.user_id,
            message.request_type,
            message.message_id,
            outcome=outcome,
            proposed_slots=message.time_candidates,
            now=now,
        )
        breaker_state = self.breaker.evaluate(message.user_id, outcome, prefs.breaker, now)

        review_id = None
        if notified:
            review_id = self.reviews.enqueue(entry)

        logger.info(
            "Decision made",
            user_id=message.user_id,
            thread_id=message.thread_id,
            message_id=message.message_id,
            outcome=outcome.value,
            confidence=round(entry.confidence_score, 2),
            breaker_state=breaker_state.state.value,
            conversation_state=conversation.state.value,
        )

        return DecisionResult(
            outcome=outcome,
            audit_entry_id=entry.id,
            conversation=conversation,
            assessment=assessment,
            breaker_state=breaker_state,
            rationale=rationale,
            actionable=outcome == DecisionOutcome.AUTO_RESPOND and prefs.automation_enabled,
            availability=availability,
            review_id=review_id,
            decided_at=now,
        )

    async def process(
        self, message: ClassifiedMessage, now: Optional[datetime] = None
    ) -> ProcessResult:
        """Decide, then send the availability reply if the decision allows it."""
        decision = await self.decide(message, self.preferences.get(message.user_id), now)
        if not decision.actionable:
            return ProcessResult(
                decision=decision, send_skipped_reason=f"outcome is {decision.outcome.value}"
            )

        # The user may have paused automation while the decision was running
        if not self.preferences.get(message.user_id).automation_enabled:
            logger.info(
                "Reply withheld, automation disabled during decision",
                user_id=message.user_id,
                message_id=message.message_id,
            )
            return ProcessResult(
                decision=decision, send_skipped_reason="automation disabled before send"
            )

        if self.reply_sender is None:
            return ProcessResult(decision=decision, send_skipped_reason="no reply sender")

        timeout = self.settings.send_timeout_seconds
        try:
            reply_id = await asyncio.wait_for(
                self.reply_sender.send(message, decision), timeout=timeout
            )
        except asyncio.TimeoutError:
            failure = CollaboratorFailure("reply sender", f"timed out after {timeout:g}s")
        except Exception as e:
            failure = CollaboratorFailure("reply sender", str(e))
        else:
            logger.info("Reply sent", message_id=message.message_id, reply_id=reply_id)
            return ProcessResult(decision=decision, reply_sent=True, reply_id=reply_id)

        logger.warning(
            "Reply send failed",
            message_id=message.message_id,
            audit_entry_id=decision.audit_entry_id,
            error=failure.cause,
        )
        return ProcessResult(decision=decision, send_skipped_reason=str(failure))

    # --- Serialized state changes ---
    # Breaker and conversation changes from outside ``decide`` take the same
    # per-user lock, so they land before or after a decision, never inside one.

    async def breaker_state(
        self, user_id: str, now: Optional[datetime] = None
    ) -> CircuitBreakerState:
        """Current breaker state. An elapsed cooldown moves it to half_open."""
        async with self._locks.hold(user_id):
            return self.breaker.check(user_id, now)

    async def reset_breaker(
        self, user_id: str, now: Optional[datetime] = None
    ) -> CircuitBreakerState:
        async with self._locks.hold(user_id):
            return self.breaker.manual_reset(user_id, now)

    async def conversation(
        self, thread_id: str, now: Optional[datetime] = None
    ) -> Optional[ConversationState]:
        """Live conversation for a thread, or None. Expired records are closed first."""
        user_id = self._thread_owner(thread_id)
        if user_id is None:
            return None
        async with self._locks.hold(user_id):
            return self.tracker.get(thread_id, now)

    async def close_conversation(
        self, thread_id: str, reason: str = "explicit", now: Optional[datetime] = None
    ) -> Optional[ConversationState]:
        user_id = self._thread_owner(thread_id)
        if user_id is None:
            return None
        async with self._locks.hold(user_id):
            return self.tracker.close(thread_id, reason, now)

    async def mark_scheduled(
        self, thread_id: str, now: Optional[datetime] = None
    ) -> Optional[ConversationState]:
        """The meeting was booked. None unless the thread is confirmed."""
        user_id = self._thread_owner(thread_id)
        if user_id is None:
            return None
        async with self._locks.hold(user_id):
            return self.tracker.mark_scheduled(thread_id, now)

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Close every expired conversation, one user lock at a time."""
        now = now or datetime.now(timezone.utc)
        closed = 0
        for state in self.tracker.expired(now):
            async with self._locks.hold(state.user_id):
                # A decision may have revived the thread while we waited
                if self.tracker.close_if_expired(state.thread_id, now):
                    closed += 1
        if closed:
            logger.info("Closed expired conversations", count=closed)
        return closed

    def _thread_owner(self, thread_id: str) -> Optional[str]:
        state = self.tracker.store.get_live(thread_id)
        return state.user_id if state else None

    # --- Collaborators ---

    async def _lookup_trust(
        self, message: ClassifiedMessage, now: datetime
    ) -> Tuple[Optional[float], Optional[CollaboratorFailure]]:
        timeout = self.settings.trust_lookup_timeout_seconds
        try:
            trust = await asyncio.wait_for(
                self.trust_lookup.lookup(message.user_id, message.sender, now), timeout=timeout
            )
            return trust, None
        except asyncio.TimeoutError:
            failure = CollaboratorFailure("sender trust lookup", f"timed out after {timeout:g}s")
        except Exception as e:
            failure = CollaboratorFailure("sender trust lookup", str(e))

        logger.warning(
            "Sender trust lookup failed",
            user_id=message.user_id,
            sender=message.sender,
            error=failure.cause,
        )
        return None, failure

    async def _check_calendar(
        self, message: ClassifiedMessage
    ) -> Tuple[Optional[AvailabilityResult], Optional[CollaboratorFailure]]:
        if self.calendar is None:
            return None, None

        timeout = self.settings.calendar_timeout_seconds
        try:
            result = await asyncio.wait_for(
                self.calendar.check(message.user_id, list(message.time_candidates)),
                timeout=timeout,
            )
            return result, None
        except asyncio.TimeoutError:
            failure = CollaboratorFailure("calendar", f"timed out after {timeout:g}s")
        except Exception as e:
            failure = CollaboratorFailure("calendar", str(e))

        logger.warning(
            "Calendar availability check failed",
            user_id=message.user_id,
            message_id=message.message_id,
            error=failure.cause,
        )
        return None, failure

    async def _record(self, entry: AuditEntry) -> None:
        # The store enforces the deadline, so a failure here means nothing was committed
        timeout = self.settings.audit_write_timeout_seconds
        try:
            await asyncio.to_thread(self.audit_log.record, entry, timeout)
        except AuditStorageError as e:
            logger.error(
                "Decision not recorded", entry_id=entry.id, user_id=entry.user_id, error=str(e)
            )
            raise DecisionNotRecorded(entry.message_id, str(e)) from e
