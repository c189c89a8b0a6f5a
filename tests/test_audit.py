"""Tests for the Audit Log."""

from datetime import datetime, timedelta, timezone

import pytest

from scheduling_kernel.audit.store import AuditLog
from scheduling_kernel.errors import AuditEntryNotFound, AuditStorageError, OverrideWindowExpired
from scheduling_kernel.models.audit import (
    AuditEntry,
    AuditQuery,
    DecisionOutcome,
    OverrideKind,
    SenderHistory,
)
from scheduling_kernel.scoring.sender_trust import HistoryTrustLookup, trust_from_history

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _make_entry(
    entry_id: str = "aud_1",
    action: DecisionOutcome = DecisionOutcome.AUTO_RESPOND,
    confidence: float = 0.9,
    created_at: datetime = NOW,
    user_id: str = "user_1",
    thread_id: str = "thread_1",
    sender: str = "alice@example.com",
) -> AuditEntry:
    return AuditEntry(
        id=entry_id,
        user_id=user_id,
        thread_id=thread_id,
        message_id=f"msg_{entry_id}",
        sender=sender,
        action=action,
        confidence_score=confidence,
        rationale=[f"confidence {confidence:.2f}"],
        conversation_snapshot={"state": "initial"},
        breaker_snapshot={"state": "closed"},
        user_notified=action != DecisionOutcome.AUTO_RESPOND,
        created_at=created_at,
    )


class TestAuditLog:
    def setup_method(self):
        self.audit = AuditLog(db_path=":memory:")

    def teardown_method(self):
        self.audit.close()

    def test_record_and_get(self):
        entry_id = self.audit.record(_make_entry())
        stored = self.audit.get(entry_id)

        assert stored.id == "aud_1"
        assert stored.action == DecisionOutcome.AUTO_RESPOND
        assert stored.rationale == ["confidence 0.90"]
        assert stored.signature
        assert stored.prior_record_hash is None

    def test_get_unknown(self):
        assert self.audit.get("missing") is None

    def test_hash_chain(self):
        self.audit.record(_make_entry("aud_1"))
        self.audit.record(_make_entry("aud_2"))
        first, second = self.audit.get("aud_1"), self.audit.get("aud_2")

        assert second.prior_record_hash == first.signature
        assert self.audit.verify_chain_integrity()
        assert self.audit.count() == 2

    def test_tampering_detected(self):
        self.audit.record(_make_entry("aud_1"))
        self.audit.record(_make_entry("aud_2"))
        self.audit._conn.execute(
            "UPDATE audit_log SET record_json = replace(record_json, 'auto_respond', 'decline') "
            "WHERE id = 'aud_1'"
        )
        assert not self.audit.verify_chain_integrity()

    def test_duplicate_id_is_a_storage_error(self):
        self.audit.record(_make_entry("aud_1"))
        with pytest.raises(AuditStorageError):
            self.audit.record(_make_entry("aud_1"))
        assert self.audit.count() == 1

    def test_write_after_close_fails(self):
        self.audit.close()
        with pytest.raises(AuditStorageError):
            self.audit.record(_make_entry())
        self.audit = AuditLog(db_path=":memory:")

    def test_reads_after_close_fail(self):
        self.audit.close()
        with pytest.raises(AuditStorageError):
            self.audit.statistics("user_1", now=NOW)
        with pytest.raises(AuditStorageError):
            self.audit.sender_history("user_1", "alice@example.com")
        with pytest.raises(AuditStorageError):
            self.audit.count()
        self.audit = AuditLog(db_path=":memory:")

    def test_write_past_deadline_is_never_committed(self):
        # Another writer holds the store for longer than the deadline
        self.audit._lock.acquire()
        try:
            with pytest.raises(AuditStorageError):
                self.audit.record(_make_entry(), timeout=0.05)
        finally:
            self.audit._lock.release()

        assert self.audit.count() == 0
        assert self.audit.get("aud_1") is None

    def test_write_within_deadline(self):
        self.audit.record(_make_entry(), timeout=1.0)
        assert self.audit.count() == 1


class TestAuditQuery:
    def setup_method(self):
        self.audit = AuditLog(db_path=":memory:")
        self.audit.record(_make_entry("aud_1", confidence=0.95, created_at=NOW - timedelta(days=3)))
        self.audit.record(_make_entry(
            "aud_2", DecisionOutcome.REQUEST_APPROVAL, 0.75, NOW - timedelta(days=2),
            sender="bob@example.com",
        ))
        self.audit.record(_make_entry(
            "aud_3", DecisionOutcome.DECLINE, 0.4, NOW - timedelta(days=1), thread_id="thread_2",
        ))
        self.audit.record(_make_entry("aud_4", user_id="user_2"))

    def _ids(self, **filters):
        return [e.id for e in self.audit.query(AuditQuery(**filters))]

    def test_most_recent_first(self):
        assert self._ids(user_id="user_1") == ["aud_3", "aud_2", "aud_1"]

    def test_filter_by_action(self):
        assert self._ids(user_id="user_1", action=DecisionOutcome.DECLINE) == ["aud_3"]

    def test_filter_by_date_range(self):
        ids = self._ids(
            user_id="user_1", start=NOW - timedelta(days=2, hours=1), end=NOW - timedelta(hours=12)
        )
        assert ids == ["aud_3", "aud_2"]

    def test_filter_by_confidence_range(self):
        assert self._ids(user_id="user_1", min_confidence=0.7, max_confidence=0.9) == ["aud_2"]

    def test_filter_by_thread_and_sender(self):
        assert self._ids(thread_id="thread_2") == ["aud_3"]
        assert self._ids(sender="Bob@Example.com") == ["aud_2"]

    def test_pagination(self):
        assert self._ids(user_id="user_1", limit=1, offset=1) == ["aud_2"]

    def test_statistics(self):
        stats = self.audit.statistics("user_1", days=7, now=NOW)
        assert stats.total_actions == 3
        assert stats.auto_responded == 1
        assert stats.escalated == 1
        assert stats.declined == 1
        assert stats.average_confidence == pytest.approx(0.7, abs=1e-4)
        assert stats.override_rate == 0.0

    def test_statistics_window(self):
        stats = self.audit.statistics("user_1", days=1, now=NOW)
        assert stats.total_actions == 1
        assert stats.declined == 1
        assert self.audit.statistics("nobody", now=NOW).total_actions == 0


class TestOverrides:
    def setup_method(self):
        self.audit = AuditLog(db_path=":memory:", override_window_hours=24)
        self.audit.record(_make_entry("aud_1", created_at=NOW))

    def test_override_within_window(self):
        entry = self.audit.override(
            "aud_1", OverrideKind.RETRACTED, "wrong slot", NOW + timedelta(hours=23)
        )
        assert entry.override.kind == OverrideKind.RETRACTED
        assert entry.override.reason == "wrong slot"

        queried = self.audit.query(AuditQuery(user_id="user_1"))[0]
        assert queried.override.kind == OverrideKind.RETRACTED

    def test_override_outside_window_rejected(self):
        with pytest.raises(OverrideWindowExpired):
            self.audit.override("aud_1", OverrideKind.APPROVED, now=NOW + timedelta(hours=25))
        assert self.audit.get("aud_1").override is None

    def test_override_unknown_entry(self):
        with pytest.raises(AuditEntryNotFound):
            self.audit.override("missing", OverrideKind.APPROVED, now=NOW)

    def test_override_history_kept(self):
        self.audit.override("aud_1", OverrideKind.APPROVED, now=NOW + timedelta(hours=1))
        entry = self.audit.override(
            "aud_1", OverrideKind.MARKED_INCORRECT, now=NOW + timedelta(hours=2)
        )
        assert entry.override.kind == OverrideKind.MARKED_INCORRECT
        assert [o.kind for o in entry.override_history] == [
            OverrideKind.APPROVED, OverrideKind.MARKED_INCORRECT,
        ]

    def test_override_does_not_break_chain(self):
        self.audit.override("aud_1", OverrideKind.RETRACTED, now=NOW + timedelta(hours=1))
        self.audit.record(_make_entry("aud_2", created_at=NOW + timedelta(hours=2)))
        assert self.audit.verify_chain_integrity()

    def test_override_counts_in_statistics(self):
        self.audit.override("aud_1", OverrideKind.RETRACTED, now=NOW + timedelta(hours=1))
        stats = self.audit.statistics("user_1", now=NOW + timedelta(hours=2))
        assert stats.override_rate == 1.0


class TestSenderTrust:
    def setup_method(self):
        self.audit = AuditLog(db_path=":memory:")

    def test_unknown_sender(self):
        history = self.audit.sender_history("user_1", "new@example.com")
        assert history.total_messages == 0
        assert trust_from_history(history, NOW) is None

    def test_retracted_auto_responses_lower_trust(self):
        self.audit.record(_make_entry("aud_1", created_at=NOW))
        self.audit.record(_make_entry("aud_2", created_at=NOW))
        before = trust_from_history(self.audit.sender_history("user_1", "alice@example.com"), NOW)

        self.audit.override("aud_2", OverrideKind.RETRACTED, now=NOW)
        history = self.audit.sender_history("user_1", "Alice@Example.com")
        after = trust_from_history(history, NOW)

        assert history.auto_responses == 2
        assert history.successful_auto_responses == 1
        assert after < before

    def test_trust_formula(self):
        history = SenderHistory(
            sender="alice@example.com",
            total_messages=12,
            auto_responses=10,
            successful_auto_responses=10,
            last_interaction=NOW - timedelta(days=2),
        )
        # 0.6 + 0.3 + 0.1 + 0.1, clamped
        assert trust_from_history(history, NOW) == 1.0

    def test_stale_sender_loses_recency_bonus(self):
        history = SenderHistory(
            sender="alice@example.com",
            total_messages=1,
            last_interaction=NOW - timedelta(days=45),
        )
        assert trust_from_history(history, NOW) == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_history_lookup_uses_decision_time(self):
        lookup = HistoryTrustLookup(self.audit)
        assert await lookup.lookup("user_1", "alice@example.com", NOW) is None

        self.audit.record(_make_entry("aud_1", created_at=NOW))
        assert await lookup.lookup("user_1", "alice@example.com", NOW) == pytest.approx(1.0)

        # Same history, replayed 45 days later: no recency bonus
        later = NOW + timedelta(days=45)
        assert await lookup.lookup("user_1", "alice@example.com", later) == pytest.approx(0.9)
