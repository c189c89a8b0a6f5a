"""
Audit Log — append-only, cryptographically chained decision record.

Every call to the orchestrator's ``decide`` produces exactly one AuditEntry.

Behavioral Contract:
- Append-only. No entry row is ever updated or deleted.
- Each entry is hashed and chained to the previous entry (tamper-evident ledger).
- Overrides are appended to a separate table and merged in at read time;
  the only way to correct history is an override record.
- A failed write raises AuditStorageError; the caller must treat the
  decision as not taken.
- Queryable by user, thread, sender, action, date range and confidence range,
  most recent first.
"""

import hashlib
import json
import sqlite3
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from scheduling_kernel.errors import (
    AuditEntryNotFound,
    AuditStorageError,
    OverrideWindowExpired,
)
from scheduling_kernel.models.audit import (
    AuditEntry,
    AuditQuery,
    AuditStatistics,
    DecisionOutcome,
    OverrideKind,
    SenderHistory,
    UserOverride,
)
from scheduling_kernel.observability.logging import get_logger

logger = get_logger(__name__)

_UNSUCCESSFUL_OVERRIDES = (OverrideKind.RETRACTED.value, OverrideKind.MARKED_INCORRECT.value)


def _to_utc_iso(value: datetime) -> str:
    """Fixed-width UTC timestamp so stored values sort lexically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _compute_signature(entry: AuditEntry) -> str:
    record_dict = entry.model_dump(mode="json", exclude={"override", "override_history"})
    # Zero out signature before hashing (it's what we're computing)
    record_dict["signature"] = ""
    record_bytes = json.dumps(record_dict, sort_keys=True, default=str).encode()
    return hashlib.sha256(record_bytes).hexdigest()


class AuditLog:
    """
    Append-only audit store.
    Reference backend: SQLite. Any store honoring the same contract may replace it.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        override_window_hours: float = 24.0,
        busy_timeout_seconds: float = 5.0,
    ):
        self.db_path = db_path
        self.override_window = timedelta(hours=override_window_hours)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(
                db_path, timeout=busy_timeout_seconds, check_same_thread=False
            )
            self._conn.row_factory = sqlite3.Row
            self._init_schema()
        except sqlite3.Error as e:
            raise AuditStorageError(f"Cannot open audit store at {db_path}: {e}") from e

    def _init_schema(self) -> None:
        """Create the audit tables if they don't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_log (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                message_id TEXT NOT NULL,
                sender TEXT NOT NULL,
                action TEXT NOT NULL,
                confidence_score REAL NOT NULL,
                user_notified INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                signature TEXT NOT NULL,
                prior_record_hash TEXT,
                record_json TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_overrides (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                entry_id TEXT NOT NULL REFERENCES audit_log(id),
                kind TEXT NOT NULL,
                reason TEXT,
                overridden_at TEXT NOT NULL
            )
        """)
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_audit_user_created ON audit_log(user_id, created_at)"
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_audit_user_sender ON audit_log(user_id, sender)"
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_overrides_entry ON audit_overrides(entry_id)"
        )
        self._conn.commit()

    # --- Writes ---

    def record(self, entry: AuditEntry, timeout: Optional[float] = None) -> str:
        """
        Append an entry, chaining it to the previous one. Returns the entry id.
        Raises AuditStorageError if the entry could not be stored.

        With a ``timeout`` the store owns the deadline: an entry that cannot
        be inserted before it passes is rejected, never written late.
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        if not self._lock.acquire(timeout=-1 if timeout is None else timeout):
            logger.error("Audit write timed out waiting for the store", entry_id=entry.id)
            raise AuditStorageError(
                f"Timed out after {timeout:g}s waiting to write audit entry {entry.id}"
            )
        try:
            try:
                prior_hash = self._get_latest_hash()
                chained = entry.model_copy(
                    update={
                        "prior_record_hash": prior_hash,
                        "signature": "",
                        "override": None,
                        "override_history": [],
                    }
                )
                chained = chained.model_copy(update={"signature": _compute_signature(chained)})
                full_json = json.dumps(
                    chained.model_dump(mode="json", exclude={"override", "override_history"}),
                    default=str,
                )

                if deadline is not None and time.monotonic() > deadline:
                    logger.error("Audit write deadline passed before insert", entry_id=entry.id)
                    raise AuditStorageError(
                        f"Deadline of {timeout:g}s passed before audit entry {entry.id} was written"
                    )

                self._conn.execute(
                    """
                    INSERT INTO audit_log (
                        id, user_id, thread_id, message_id, sender, action,
                        confidence_score, user_notified, created_at,
                        signature, prior_record_hash, record_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chained.id,
                        chained.user_id,
                        chained.thread_id,
                        chained.message_id,
                        chained.sender,
                        chained.action.value,
                        chained.confidence_score,
                        int(chained.user_notified),
                        _to_utc_iso(chained.created_at),
                        chained.signature,
                        chained.prior_record_hash,
                        full_json,
                    ),
                )
                self._conn.commit()
            except sqlite3.Error as e:
                logger.error(
                    "Failed to write audit entry",
                    error=str(e),
                    error_type=type(e).__name__,
                    entry_id=entry.id,
                    user_id=entry.user_id,
                    action=entry.action.value,
                )
                raise AuditStorageError(f"Failed to write audit entry {entry.id}: {e}") from e
        finally:
            self._lock.release()

        logger.info(
            "Audit entry recorded",
            entry_id=chained.id,
            user_id=chained.user_id,
            action=chained.action.value,
            confidence=round(chained.confidence_score, 2),
        )
        return chained.id

    def override(
        self,
        entry_id: str,
        kind: OverrideKind,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AuditEntry:
        """
        Append a user override to an entry.
        Raises AuditEntryNotFound for unknown ids and OverrideWindowExpired
        for entries older than the override window.
        """
        now = now or datetime.now(timezone.utc)
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT created_at FROM audit_log WHERE id = ?", (entry_id,)
                ).fetchone()
                if row is None:
                    raise AuditEntryNotFound(entry_id)

                created_at = _from_iso(row["created_at"])
                if _from_iso(_to_utc_iso(now)) - created_at > self.override_window:
                    logger.warning(
                        "Rejected stale override",
                        entry_id=entry_id,
                        kind=kind.value,
                        created_at=row["created_at"],
                    )
                    raise OverrideWindowExpired(
                        entry_id, self.override_window.total_seconds() / 3600
                    )

                self._conn.execute(
                    "INSERT INTO audit_overrides (entry_id, kind, reason, overridden_at) "
                    "VALUES (?, ?, ?, ?)",
                    (entry_id, kind.value, reason, _to_utc_iso(now)),
                )
                self._conn.commit()
            except sqlite3.Error as e:
                raise AuditStorageError(f"Failed to record override on {entry_id}: {e}") from e

        logger.info("User override recorded", entry_id=entry_id, kind=kind.value)
        return self.get(entry_id)

    # --- Reads ---

    def _get_latest_hash(self) -> Optional[str]:
        """Get the signature of the most recent entry."""
        row = self._conn.execute(
            "SELECT signature FROM audit_log ORDER BY rowid DESC LIMIT 1"
        ).fetchone()
        return row["signature"] if row else None

    def _overrides_for(self, entry_id: str) -> List[UserOverride]:
        rows = self._conn.execute(
            "SELECT kind, reason, overridden_at FROM audit_overrides "
            "WHERE entry_id = ? ORDER BY seq",
            (entry_id,),
        ).fetchall()
        return [
            UserOverride(
                kind=OverrideKind(r["kind"]),
                reason=r["reason"],
                overridden_at=_from_iso(r["overridden_at"]),
            )
            for r in rows
        ]

    def _deserialize(self, row: sqlite3.Row) -> AuditEntry:
        """Deserialize a row and attach its override history."""
        entry = AuditEntry.model_validate_json(row["record_json"])
        history = self._overrides_for(entry.id)
        if not history:
            return entry
        return entry.model_copy(update={"override": history[-1], "override_history": history})

    def get(self, entry_id: str) -> Optional[AuditEntry]:
        """Get a specific audit entry by ID."""
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT record_json FROM audit_log WHERE id = ?", (entry_id,)
                ).fetchone()
                return self._deserialize(row) if row else None
            except sqlite3.Error as e:
                raise AuditStorageError(f"Failed to read audit entry {entry_id}: {e}") from e

    def query(self, filters: Optional[AuditQuery] = None) -> List[AuditEntry]:
        """Entries matching every given filter, most recent first."""
        filters = filters or AuditQuery()
        conditions = []
        params: list = []

        if filters.user_id is not None:
            conditions.append("user_id = ?")
            params.append(filters.user_id)
        if filters.thread_id is not None:
            conditions.append("thread_id = ?")
            params.append(filters.thread_id)
        if filters.sender is not None:
            conditions.append("sender = ?")
            params.append(filters.sender.strip().lower())
        if filters.action is not None:
            conditions.append("action = ?")
            params.append(filters.action.value)
        if filters.start is not None:
            conditions.append("created_at >= ?")
            params.append(_to_utc_iso(filters.start))
        if filters.end is not None:
            conditions.append("created_at <= ?")
            params.append(_to_utc_iso(filters.end))
        if filters.min_confidence is not None:
            conditions.append("confidence_score >= ?")
            params.append(filters.min_confidence)
        if filters.max_confidence is not None:
            conditions.append("confidence_score <= ?")
            params.append(filters.max_confidence)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        sql = (
            f"SELECT record_json FROM audit_log {where} "
            f"ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?"
        )
        params.extend([filters.limit, filters.offset])

        with self._lock:
            try:
                rows = self._conn.execute(sql, params).fetchall()
                return [self._deserialize(r) for r in rows]
            except sqlite3.Error as e:
                raise AuditStorageError(f"Failed to query audit log: {e}") from e

    def statistics(
        self, user_id: str, days: int = 7, now: Optional[datetime] = None
    ) -> AuditStatistics:
        """Aggregate view of a user's recent decisions."""
        now = now or datetime.now(timezone.utc)
        since = _to_utc_iso(now - timedelta(days=days))
        with self._lock:
            try:
                row = self._conn.execute(
                    """
                    SELECT
                        COUNT(*) AS total_actions,
                        SUM(CASE WHEN action = ? THEN 1 ELSE 0 END) AS auto_responded,
                        SUM(CASE WHEN action = ? THEN 1 ELSE 0 END) AS escalated,
                        SUM(CASE WHEN action = ? THEN 1 ELSE 0 END) AS declined,
                        AVG(confidence_score) AS average_confidence,
                        SUM(CASE WHEN EXISTS (
                            SELECT 1 FROM audit_overrides o WHERE o.entry_id = audit_log.id
                        ) THEN 1 ELSE 0 END) AS overridden
                    FROM audit_log
                    WHERE user_id = ? AND created_at >= ?
                    """,
                    (
                        DecisionOutcome.AUTO_RESPOND.value,
                        DecisionOutcome.REQUEST_APPROVAL.value,
                        DecisionOutcome.DECLINE.value,
                        user_id,
                        since,
                    ),
                ).fetchone()
            except sqlite3.Error as e:
                raise AuditStorageError(f"Failed to compute statistics for {user_id}: {e}") from e

        total = row["total_actions"] or 0
        return AuditStatistics(
            user_id=user_id,
            days=days,
            total_actions=total,
            auto_responded=row["auto_responded"] or 0,
            escalated=row["escalated"] or 0,
            declined=row["declined"] or 0,
            average_confidence=round(row["average_confidence"] or 0.0, 4),
            override_rate=(row["overridden"] or 0) / total if total else 0.0,
        )

    def sender_history(self, user_id: str, sender: str) -> SenderHistory:
        """How a sender's past messages to this user were decided and received."""
        sender = sender.strip().lower()
        with self._lock:
            try:
                row = self._conn.execute(
                    """
                    SELECT
                        COUNT(*) AS total_messages,
                        SUM(CASE WHEN action = ? THEN 1 ELSE 0 END) AS auto_responses,
                        SUM(CASE WHEN action = ? AND NOT EXISTS (
                            SELECT 1 FROM audit_overrides o
                            WHERE o.entry_id = audit_log.id AND o.kind IN (?, ?)
                        ) THEN 1 ELSE 0 END) AS successful,
                        MAX(created_at) AS last_interaction
                    FROM audit_log
                    WHERE user_id = ? AND sender = ?
                    """,
                    (
                        DecisionOutcome.AUTO_RESPOND.value,
                        DecisionOutcome.AUTO_RESPOND.value,
                        *_UNSUCCESSFUL_OVERRIDES,
                        user_id,
                        sender,
                    ),
                ).fetchone()
            except sqlite3.Error as e:
                raise AuditStorageError(f"Failed to read history for {sender}: {e}") from e

        return SenderHistory(
            sender=sender,
            total_messages=row["total_messages"] or 0,
            auto_responses=row["auto_responses"] or 0,
            successful_auto_responses=row["successful"] or 0,
            last_interaction=(
                _from_iso(row["last_interaction"]) if row["last_interaction"] else None
            ),
        )

    def verify_chain_integrity(self) -> bool:
        """Verify no entries have been tampered with."""
        with self._lock:
            try:
                rows = self._conn.execute(
                    "SELECT record_json, signature FROM audit_log ORDER BY rowid"
                ).fetchall()
            except sqlite3.Error as e:
                raise AuditStorageError(f"Failed to read audit chain: {e}") from e

        for i, row in enumerate(rows):
            entry = AuditEntry.model_validate_json(row["record_json"])
            if entry.signature != _compute_signature(entry):
                return False
            if i > 0 and entry.prior_record_hash != rows[i - 1]["signature"]:
                return False
        return True

    def count(self) -> int:
        """Total number of audit entries."""
        with self._lock:
            try:
                row = self._conn.execute("SELECT COUNT(*) as cnt FROM audit_log").fetchone()
            except sqlite3.Error as e:
                raise AuditStorageError(f"Failed to count audit entries: {e}") from e
        return row["cnt"]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()
