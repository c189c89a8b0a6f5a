"""Tests for the Decision Orchestrator."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from scheduling_kernel.audit.store import AuditLog
from scheduling_kernel.config import Settings
from scheduling_kernel.errors import DecisionNotRecorded
from scheduling_kernel.models.audit import AuditQuery, DecisionOutcome
from scheduling_kernel.models.breaker import BreakerStatus
from scheduling_kernel.models.conversation import ConversationStatus
from scheduling_kernel.models.decision import AvailabilityResult
from scheduling_kernel.models.message import ClassifiedMessage, RequestType, TimeRange
from scheduling_kernel.models.preferences import PreferencesUpdate, UserAutomationPreferences
from scheduling_kernel.orchestrator.decision import DecisionOrchestrator

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeTrust:
    def __init__(self, trust=1.0):
        self.trust = trust
        self.calls = 0

    async def lookup(self, user_id, sender, now):
        self.calls += 1
        return self.trust


class FailingTrust:
    async def lookup(self, user_id, sender, now):
        raise ConnectionError("trust service down")


class SlowTrust:
    async def lookup(self, user_id, sender, now):
        await asyncio.sleep(1)
        return 1.0


class FakeCalendar:
    def __init__(self, conflicts=None, error=None):
        self.conflicts = conflicts or []
        self.error = error

    async def check(self, user_id, ranges):
        if self.error:
            raise self.error
        return AvailabilityResult(requested=ranges, available=ranges, conflicts=self.conflicts)


class SlowCalendar:
    def __init__(self, delay=0.02):
        self.delay = delay
        self.entered = asyncio.Event()

    async def check(self, user_id, ranges):
        self.entered.set()
        await asyncio.sleep(self.delay)
        return AvailabilityResult(requested=ranges, available=ranges)


class RecordingSender:
    def __init__(self, error=None):
        self.sent = []
        self.error = error

    async def send(self, message, decision):
        if self.error:
            raise self.error
        self.sent.append((message.message_id, decision.audit_entry_id))
        return f"reply_{message.message_id}"


def _make_settings() -> Settings:
    return Settings(
        trust_lookup_timeout_seconds=0.05,
        calendar_timeout_seconds=0.05,
        send_timeout_seconds=0.05,
    )


def _make_orchestrator(**overrides) -> DecisionOrchestrator:
    components = dict(
        audit_log=AuditLog(db_path=":memory:"),
        trust_lookup=FakeTrust(1.0),
        settings=_make_settings(),
    )
    components.update(overrides)
    return DecisionOrchestrator(**components)


def _make_slots():
    start = NOW + timedelta(days=1)
    return [
        TimeRange(start=start, end=start + timedelta(hours=1)),
        TimeRange(start=start + timedelta(hours=3), end=start + timedelta(hours=4)),
    ]


def _make_message(message_id="msg_1", thread_id="thread_1", **overrides) -> ClassifiedMessage:
    fields = dict(
        thread_id=thread_id,
        message_id=message_id,
        user_id="user_1",
        sender="alice@example.com",
        body="Are you free tomorrow at 10 or 1?",
        intent_confidence=0.95,
        time_candidates=_make_slots(),
        extraction_quality=0.9,
        request_type=RequestType.INITIAL,
        received_at=NOW,
    )
    fields.update(overrides)
    return ClassifiedMessage(**fields)


def _make_low_message(message_id, thread_id=None) -> ClassifiedMessage:
    return _make_message(
        message_id=message_id,
        thread_id=thread_id or f"thread_{message_id}",
        intent_confidence=0.3,
        extraction_quality=0.3,
    )


class TestDecide:
    def setup_method(self):
        self.orchestrator = _make_orchestrator()

    @pytest.mark.asyncio
    async def test_confident_message_auto_responds(self):
        result = await self.orchestrator.decide(_make_message(), now=NOW)

        assert result.outcome == DecisionOutcome.AUTO_RESPOND
        assert result.actionable is True
        assert result.assessment.overall == pytest.approx(0.93)
        assert result.conversation.state == ConversationStatus.AVAILABILITY_SENT
        assert result.breaker_state.state == BreakerStatus.CLOSED
        assert result.review_id is None

        entry = self.orchestrator.audit_log.get(result.audit_entry_id)
        assert entry.action == DecisionOutcome.AUTO_RESPOND
        assert entry.user_notified is False
        assert entry.conversation_snapshot["state"] == "initial"

    @pytest.mark.asyncio
    async def test_low_confidence_declines_and_queues_review(self):
        result = await self.orchestrator.decide(_make_low_message("msg_1"), now=NOW)

        assert result.outcome == DecisionOutcome.DECLINE
        assert result.actionable is False
        assert result.review_id is not None
        assert self.orchestrator.reviews.pending[0]["audit_entry_id"] == result.audit_entry_id
        assert self.orchestrator.audit_log.get(result.audit_entry_id).user_notified is True

    @pytest.mark.asyncio
    async def test_blacklisted_sender_declined_without_scoring(self):
        trust = FakeTrust(1.0)
        orchestrator = _make_orchestrator(trust_lookup=trust)
        prefs = UserAutomationPreferences(user_id="user_1", blacklist=["Alice@example.com"])

        result = await orchestrator.decide(_make_message(), prefs, now=NOW)

        assert result.outcome == DecisionOutcome.DECLINE
        assert result.assessment is None
        assert trust.calls == 0
        entry = orchestrator.audit_log.get(result.audit_entry_id)
        assert entry.confidence_score == 0.0
        assert "blacklisted" in entry.rationale[0]

    @pytest.mark.asyncio
    async def test_vip_sender_always_needs_approval(self):
        prefs = UserAutomationPreferences(user_id="user_1", vip_list=["alice@example.com"])
        result = await self.orchestrator.decide(_make_message(), prefs, now=NOW)

        assert result.outcome == DecisionOutcome.REQUEST_APPROVAL
        assert result.actionable is False
        assert result.conversation.state == ConversationStatus.INITIAL

    @pytest.mark.asyncio
    async def test_degraded_assessment_capped(self):
        prefs = UserAutomationPreferences(user_id="user_1", confidence_threshold=0.8)
        message = _make_message(time_candidates=None, extraction_quality=None, intent_confidence=1.0)

        result = await self.orchestrator.decide(message, prefs, now=NOW)

        assert result.assessment.recommendation.value == "auto_respond"
        assert result.assessment.degraded is True
        assert result.outcome == DecisionOutcome.REQUEST_APPROVAL
        assert any("degraded inputs: time_candidates" in r for r in result.rationale)

    @pytest.mark.asyncio
    async def test_automation_disabled_capped(self):
        prefs = UserAutomationPreferences(user_id="user_1", automation_enabled=False)
        result = await self.orchestrator.decide(_make_message(), prefs, now=NOW)

        assert result.outcome == DecisionOutcome.REQUEST_APPROVAL
        assert result.actionable is False

    @pytest.mark.asyncio
    async def test_trust_lookup_failure(self):
        orchestrator = _make_orchestrator(trust_lookup=FailingTrust())
        result = await orchestrator.decide(_make_message(), now=NOW)

        assert result.outcome == DecisionOutcome.REQUEST_APPROVAL
        assert any("sender trust lookup failed" in r for r in result.rationale)

    @pytest.mark.asyncio
    async def test_trust_lookup_timeout(self):
        orchestrator = _make_orchestrator(trust_lookup=SlowTrust())
        result = await orchestrator.decide(_make_message(), now=NOW)

        assert result.outcome == DecisionOutcome.REQUEST_APPROVAL
        assert any("timed out" in r for r in result.rationale)

    @pytest.mark.asyncio
    async def test_calendar_conflict_downgrades(self):
        calendar = FakeCalendar(conflicts=[{"title": "Standup"}])
        orchestrator = _make_orchestrator(calendar=calendar)
        result = await orchestrator.decide(_make_message(), now=NOW)

        assert result.outcome == DecisionOutcome.REQUEST_APPROVAL
        entry = orchestrator.audit_log.get(result.audit_entry_id)
        assert entry.calendar_snapshot["conflicts"] == [{"title": "Standup"}]

    @pytest.mark.asyncio
    async def test_calendar_clear_keeps_auto_response(self):
        orchestrator = _make_orchestrator(calendar=FakeCalendar())
        result = await orchestrator.decide(_make_message(), now=NOW)

        assert result.outcome == DecisionOutcome.AUTO_RESPOND
        assert result.availability.has_conflicts is False

    @pytest.mark.asyncio
    async def test_calendar_failure_downgrades(self):
        orchestrator = _make_orchestrator(calendar=FakeCalendar(error=RuntimeError("401")))
        result = await orchestrator.decide(_make_message(), now=NOW)

        assert result.outcome == DecisionOutcome.REQUEST_APPROVAL
        entry = orchestrator.audit_log.get(result.audit_entry_id)
        assert "calendar failed" in entry.calendar_snapshot["error"]


class TestBreakerIntegration:
    def setup_method(self):
        self.orchestrator = _make_orchestrator()

    @pytest.mark.asyncio
    async def test_five_lows_force_next_decision(self):
        for i in range(5):
            result = await self.orchestrator.decide(_make_low_message(f"msg_{i}"), now=NOW)
        assert result.breaker_state.state == BreakerStatus.OPEN

        result = await self.orchestrator.decide(
            _make_message("msg_confident", thread_id="thread_other"), now=NOW
        )
        assert result.assessment.recommendation.value == "auto_respond"
        assert result.outcome == DecisionOutcome.REQUEST_APPROVAL
        assert any("circuit breaker open" in r for r in result.rationale)
        assert self.orchestrator.audit_log.count() == 6

    @pytest.mark.asyncio
    async def test_recovery_after_cooldown(self):
        for i in range(5):
            await self.orchestrator.decide(_make_low_message(f"msg_{i}"), now=NOW)

        later = NOW + timedelta(minutes=61)
        for i in range(3):
            result = await self.orchestrator.decide(
                _make_message(f"msg_ok_{i}", thread_id=f"thread_ok_{i}"), now=later
            )
            assert result.outcome == DecisionOutcome.AUTO_RESPOND
        assert result.breaker_state.state == BreakerStatus.CLOSED

    @pytest.mark.asyncio
    async def test_user_tuning_applies(self):
        self.orchestrator.preferences.update(
            "user_1",
            PreferencesUpdate(breaker={"max_consecutive_low": 2, "cooldown_minutes": 10}),
        )
        for i in range(2):
            result = await self.orchestrator.decide(_make_low_message(f"msg_{i}"), now=NOW)
        assert result.breaker_state.state == BreakerStatus.OPEN
        assert result.breaker_state.closes_at == NOW + timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_opening_decision_is_fully_applied(self):
        for i in range(5):
            result = await self.orchestrator.decide(_make_low_message(f"msg_{i}"), now=NOW)

        assert result.outcome == DecisionOutcome.DECLINE
        assert self.orchestrator.tracker.get("thread_msg_4", NOW).turn_count == 1
        assert self.orchestrator.audit_log.count() == 5
        kinds = [e.kind.value for e in self.orchestrator.breaker.events("user_1")]
        assert kinds == ["opened"]

    @pytest.mark.asyncio
    async def test_manual_reset_resumes_automation(self):
        for i in range(5):
            await self.orchestrator.decide(_make_low_message(f"msg_{i}"), now=NOW)
        state = await self.orchestrator.breaker_state("user_1", NOW)
        assert state.state == BreakerStatus.OPEN

        reset = await self.orchestrator.reset_breaker("user_1", NOW + timedelta(minutes=1))
        assert reset.state == BreakerStatus.CLOSED
        assert reset.manual_override is True

        result = await self.orchestrator.decide(
            _make_message("msg_ok", thread_id="thread_ok"), now=NOW + timedelta(minutes=2)
        )
        assert result.outcome == DecisionOutcome.AUTO_RESPOND

    @pytest.mark.asyncio
    async def test_breaker_state_applies_elapsed_cooldown(self):
        for i in range(5):
            await self.orchestrator.decide(_make_low_message(f"msg_{i}"), now=NOW)
        state = await self.orchestrator.breaker_state("user_1", NOW + timedelta(minutes=61))
        assert state.state == BreakerStatus.HALF_OPEN


class TestAuditGuarantees:
    def setup_method(self):
        self.orchestrator = _make_orchestrator()

    @pytest.mark.asyncio
    async def test_one_entry_per_decision(self):
        vip = UserAutomationPreferences(user_id="user_1", vip_list=["alice@example.com"])
        blocked = UserAutomationPreferences(user_id="user_1", blacklist=["alice@example.com"])

        await self.orchestrator.decide(_make_message("msg_1"), now=NOW)
        await self.orchestrator.decide(_make_message("msg_2", thread_id="t2"), vip, now=NOW)
        await self.orchestrator.decide(_make_message("msg_3", thread_id="t3"), blocked, now=NOW)
        await self.orchestrator.decide(_make_low_message("msg_4"), now=NOW)

        entries = self.orchestrator.audit_log.query(AuditQuery(user_id="user_1"))
        assert sorted(e.message_id for e in entries) == ["msg_1", "msg_2", "msg_3", "msg_4"]
        assert self.orchestrator.audit_log.verify_chain_integrity()

    @pytest.mark.asyncio
    async def test_audit_failure_means_no_decision(self):
        self.orchestrator.audit_log.close()

        with pytest.raises(DecisionNotRecorded) as exc_info:
            await self.orchestrator.decide(_make_low_message("msg_1", thread_id="thread_1"), now=NOW)

        assert exc_info.value.message_id == "msg_1"
        conversation = self.orchestrator.tracker.get("thread_1", NOW)
        assert conversation.turn_count == 0
        breaker = self.orchestrator.breaker.check("user_1", NOW)
        assert breaker.consecutive_low_confidence == 0
        assert self.orchestrator.reviews.pending == []

    @pytest.mark.asyncio
    async def test_timed_out_audit_write_leaves_no_entry(self):
        orchestrator = _make_orchestrator(
            settings=Settings(
                trust_lookup_timeout_seconds=0.05,
                calendar_timeout_seconds=0.05,
                audit_write_timeout_seconds=0.05,
            )
        )
        audit_log = orchestrator.audit_log

        # A stalled writer holds the store past the deadline
        audit_log._lock.acquire()
        try:
            with pytest.raises(DecisionNotRecorded) as exc_info:
                await orchestrator.decide(_make_message(), now=NOW)
        finally:
            audit_log._lock.release()
        await asyncio.sleep(0.1)

        assert exc_info.value.message_id == "msg_1"
        assert audit_log.count() == 0
        history = audit_log.sender_history("user_1", "alice@example.com")
        assert history.successful_auto_responses == 0
        assert orchestrator.tracker.get("thread_1", NOW).turn_count == 0
        assert orchestrator.breaker.events("user_1") == []

    @pytest.mark.asyncio
    async def test_replay_on_closed_thread_starts_new_conversation(self):
        first = await self.orchestrator.decide(_make_message(), now=NOW)
        closed = self.orchestrator.tracker.close("thread_1", "explicit", NOW)

        replay = await self.orchestrator.decide(_make_message(), now=NOW + timedelta(minutes=1))
        again = await self.orchestrator.decide(_make_message(), now=NOW + timedelta(minutes=2))

        assert replay.conversation.id != first.conversation.id
        assert again.conversation.id not in (first.conversation.id, replay.conversation.id)
        history = self.orchestrator.tracker.history("thread_1")
        assert history[0] == closed
        assert history[0].state == ConversationStatus.CLOSED
        assert self.orchestrator.audit_log.count() == 3

    @pytest.mark.asyncio
    async def test_concurrent_messages_for_one_user_are_serialized(self):
        messages = [
            _make_message(f"msg_{i}", request_type=RequestType.CLARIFICATION if i else RequestType.INITIAL)
            for i in range(4)
        ]
        results = await asyncio.gather(
            *(self.orchestrator.decide(m, now=NOW) for m in messages)
        )

        assert [r.conversation.turn_count for r in results] == [1, 2, 3, 4]
        assert self.orchestrator.audit_log.count() == 4
        assert self.orchestrator._locks.active_keys() == 0


class TestSerializedStateChanges:
    @pytest.mark.asyncio
    async def test_close_waits_for_in_flight_decision(self):
        calendar = SlowCalendar()
        orchestrator = _make_orchestrator(calendar=calendar)
        await orchestrator.decide(_make_message(), now=NOW)
        calendar.entered.clear()

        confirmation = asyncio.create_task(orchestrator.decide(
            _make_message("msg_2", request_type=RequestType.CONFIRMATION),
            now=NOW + timedelta(minutes=1),
        ))
        await calendar.entered.wait()
        closed = await orchestrator.close_conversation(
            "thread_1", "user archived", NOW + timedelta(minutes=2)
        )
        result = await confirmation

        entry = orchestrator.audit_log.get(result.audit_entry_id)
        assert entry.conversation_snapshot["id"] == result.conversation.id
        assert result.conversation.state == ConversationStatus.CONFIRMED
        assert "warnings" not in result.conversation.context
        assert closed.id == result.conversation.id
        assert closed.state == ConversationStatus.CLOSED
        assert closed.closed_reason == "user archived"

    @pytest.mark.asyncio
    async def test_reset_waits_for_in_flight_decision(self):
        calendar = SlowCalendar()
        orchestrator = _make_orchestrator(calendar=calendar)
        for i in range(4):
            await orchestrator.decide(_make_low_message(f"msg_{i}"), now=NOW)
        calendar.entered.clear()

        fifth = asyncio.create_task(orchestrator.decide(_make_low_message("msg_4"), now=NOW))
        await calendar.entered.wait()
        reset = await orchestrator.reset_breaker("user_1", NOW)
        result = await fifth

        # The decision opened the breaker first; the reset then closed it
        assert result.breaker_state.state == BreakerStatus.OPEN
        assert reset.state == BreakerStatus.CLOSED
        kinds = [e.kind.value for e in orchestrator.breaker.events("user_1")]
        assert kinds == ["opened", "manual_reset"]

    @pytest.mark.asyncio
    async def test_mark_scheduled(self):
        orchestrator = _make_orchestrator()
        await orchestrator.decide(_make_message(), now=NOW)
        assert await orchestrator.mark_scheduled("thread_1", NOW) is None

        await orchestrator.decide(
            _make_message("msg_2", request_type=RequestType.CONFIRMATION), now=NOW
        )
        scheduled = await orchestrator.mark_scheduled("thread_1", NOW)
        assert scheduled.state == ConversationStatus.SCHEDULED
        assert await orchestrator.conversation("thread_1", NOW) is None

    @pytest.mark.asyncio
    async def test_unknown_thread(self):
        orchestrator = _make_orchestrator()
        assert await orchestrator.conversation("missing") is None
        assert await orchestrator.close_conversation("missing") is None
        assert await orchestrator.mark_scheduled("missing") is None

    @pytest.mark.asyncio
    async def test_sweep_expired(self):
        orchestrator = _make_orchestrator()
        await orchestrator.decide(_make_message(), now=NOW)
        await orchestrator.decide(
            _make_message("msg_2", thread_id="thread_2"), now=NOW + timedelta(days=10)
        )
        later = NOW + timedelta(days=15)

        assert await orchestrator.sweep_expired(later) == 1
        assert await orchestrator.conversation("thread_1", later) is None
        assert await orchestrator.conversation("thread_2", later) is not None
        assert orchestrator.tracker.history("thread_1")[0].closed_reason == "expired"
        assert orchestrator._locks.active_keys() == 0


class TestProcess:
    @pytest.mark.asyncio
    async def test_sends_actionable_decision(self):
        sender = RecordingSender()
        orchestrator = _make_orchestrator(reply_sender=sender)

        result = await orchestrator.process(_make_message(), now=NOW)

        assert result.reply_sent is True
        assert result.reply_id == "reply_msg_1"
        assert sender.sent == [("msg_1", result.decision.audit_entry_id)]

    @pytest.mark.asyncio
    async def test_does_not_send_escalations(self):
        sender = RecordingSender()
        orchestrator = _make_orchestrator(reply_sender=sender)

        result = await orchestrator.process(_make_low_message("msg_1"), now=NOW)

        assert result.reply_sent is False
        assert result.send_skipped_reason == "outcome is decline"
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_automation_disabled_during_decision(self):
        sender = RecordingSender()
        orchestrator = _make_orchestrator(reply_sender=sender)

        class DisablingTrust:
            async def lookup(self, user_id, sender, now):
                orchestrator.preferences.set_automation_enabled(user_id, False)
                return 1.0

        orchestrator.trust_lookup = DisablingTrust()
        result = await orchestrator.process(_make_message(), now=NOW)

        assert result.decision.outcome == DecisionOutcome.AUTO_RESPOND
        assert result.reply_sent is False
        assert result.send_skipped_reason == "automation disabled before send"
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_send_failure_reported(self):
        orchestrator = _make_orchestrator(reply_sender=RecordingSender(error=OSError("smtp down")))
        result = await orchestrator.process(_make_message(), now=NOW)

        assert result.reply_sent is False
        assert "reply sender failed" in result.send_skipped_reason
        assert orchestrator.audit_log.count() == 1

    @pytest.mark.asyncio
    async def test_no_sender_configured(self):
        orchestrator = _make_orchestrator()
        result = await orchestrator.process(_make_message(), now=NOW)
        assert result.send_skipped_reason == "no reply sender"
