"""SQLite persistence for profiles, alerts, reviews, attempts and the audit log.

Connections are opened per call. Multi-statement writes go through
``transaction()``, which takes the write lock up front (BEGIN IMMEDIATE) so a
compare-and-swap and its side effects commit together or not at all.
Singleton rules (one open alert, one pending review per user) are enforced
by partial unique indexes.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from vigil.config import settings

from .errors import StoreUnavailable
from .models import (
    AdminReview,
    Alert,
    AlertStatus,
    AttemptStatus,
    AuditEntry,
    NotificationAttempt,
    ReviewStatus,
    UserLivenessProfile,
    to_iso,
)

logger = logging.getLogger(__name__)

_OPEN_ALERT = ("pending", "escalated")

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS profiles (
        user_id            TEXT PRIMARY KEY,
        cadence            TEXT NOT NULL,
        last_checkin       TEXT NOT NULL,
        missed_count       INTEGER NOT NULL DEFAULT 0,
        threshold          INTEGER NOT NULL,
        escalation_enabled INTEGER NOT NULL DEFAULT 1,
        active             INTEGER NOT NULL DEFAULT 1,
        version            INTEGER NOT NULL DEFAULT 1,
        created_at         TEXT NOT NULL,
        updated_at         TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS alerts (
        id         TEXT PRIMARY KEY,
        user_id    TEXT NOT NULL,
        status     TEXT NOT NULL,
        opened_at  TEXT NOT NULL,
        closed_at  TEXT
    );

    CREATE UNIQUE INDEX IF NOT EXISTS ux_alerts_open
        ON alerts (user_id) WHERE status IN ('pending', 'escalated');

    CREATE TABLE IF NOT EXISTS reviews (
        id            TEXT PRIMARY KEY,
        user_id       TEXT NOT NULL,
        status        TEXT NOT NULL,
        reviewer_id   TEXT,
        notes         TEXT,
        created_at    TEXT NOT NULL,
        decided_at    TEXT,
        dispatched_at TEXT
    );

    CREATE UNIQUE INDEX IF NOT EXISTS ux_reviews_pending
        ON reviews (user_id) WHERE status = 'pending';

    CREATE TABLE IF NOT EXISTS attempts (
        review_id     TEXT NOT NULL,
        nominee_id    TEXT NOT NULL,
        attempt_count INTEGER NOT NULL DEFAULT 0,
        status        TEXT NOT NULL,
        last_error    TEXT,
        updated_at    TEXT NOT NULL,
        PRIMARY KEY (review_id, nominee_id)
    );

    CREATE INDEX IF NOT EXISTS idx_attempts_status ON attempts (status);

    CREATE TABLE IF NOT EXISTS audit (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        entity_type TEXT NOT NULL,
        entity_id   TEXT NOT NULL,
        from_state  TEXT,
        to_state    TEXT NOT NULL,
        actor       TEXT NOT NULL,
        timestamp   TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit (entity_type, entity_id, id);

    CREATE TRIGGER IF NOT EXISTS audit_no_update BEFORE UPDATE ON audit
    BEGIN
        SELECT RAISE(ABORT, 'audit log is append-only');
    END;

    CREATE TRIGGER IF NOT EXISTS audit_no_delete BEFORE DELETE ON audit
    BEGIN
        SELECT RAISE(ABORT, 'audit log is append-only');
    END;

    CREATE TABLE IF NOT EXISTS leases (
        name       TEXT PRIMARY KEY,
        holder     TEXT NOT NULL,
        expires_at TEXT NOT NULL
    );
"""


class LivenessStore:
    """SQLite-backed storage for the liveness engine."""

    def __init__(self, db_path: Path | str | None = None, busy_timeout: float | None = None) -> None:
        self._db_path = Path(db_path or settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_timeout = busy_timeout if busy_timeout is not None else settings.sqlite_busy_timeout
        self._init_db()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _conn(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                str(self._db_path),
                timeout=self._busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open {self._db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_db(self) -> None:
        conn = self._conn()
        try:
            conn.executescript(_SCHEMA)
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction holding the database write lock until commit."""
        conn = self._conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.OperationalError as e:
            raise StoreUnavailable(str(e)) from e
        finally:
            conn.close()

    @contextmanager
    def _reader(self, conn: sqlite3.Connection | None = None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        own = self._conn()
        try:
            yield own
        except sqlite3.OperationalError as e:
            raise StoreUnavailable(str(e)) from e
        finally:
            own.close()

    def _one(self, sql: str, params: tuple[Any, ...], conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
        with self._reader(conn) as c:
            row = c.execute(sql, params).fetchone()
        return dict(row) if row else None

    def _all(self, sql: str, params: tuple[Any, ...] = (), conn: sqlite3.Connection | None = None) -> list[dict[str, Any]]:
        with self._reader(conn) as c:
            rows = c.execute(sql, params).fetchall()
        return [dict(r) for r in rows]

    # ── Profiles ──────────────────────────────────────────────────────────

    def insert_profile(self, conn: sqlite3.Connection, profile: UserLivenessProfile, now: datetime) -> bool:
        """Insert a new profile. Returns False if the user already has one."""
        cursor = conn.execute(
            "INSERT OR IGNORE INTO profiles (user_id, cadence, last_checkin, missed_count, threshold, "
            "escalation_enabled, active, version, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                profile.user_id, str(profile.cadence), to_iso(profile.last_checkin),
                profile.missed_count, profile.threshold, int(profile.escalation_enabled),
                int(profile.active), profile.version, to_iso(now), to_iso(now),
            ),
        )
        return cursor.rowcount == 1

    def get_profile_row(self, user_id: str, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
        return self._one("SELECT * FROM profiles WHERE user_id = ?", (user_id,), conn)

    def get_profile(self, user_id: str, conn: sqlite3.Connection | None = None) -> UserLivenessProfile | None:
        row = self.get_profile_row(user_id, conn)
        return UserLivenessProfile.from_row(row) if row else None

    def list_profile_rows(self, active_only: bool = True) -> list[dict[str, Any]]:
        if active_only:
            return self._all("SELECT * FROM profiles WHERE active = 1 ORDER BY user_id")
        return self._all("SELECT * FROM profiles ORDER BY user_id")

    def compare_and_swap_profile(
        self,
        conn: sqlite3.Connection,
        profile: UserLivenessProfile,
        expected_version: int,
        now: datetime,
    ) -> bool:
        """Write ``profile`` only if the stored version still equals ``expected_version``.

        On success the stored version becomes ``expected_version + 1`` and
        ``profile.version`` is updated to match.
        """
        cursor = conn.execute(
            "UPDATE profiles SET cadence = ?, last_checkin = ?, missed_count = ?, threshold = ?, "
            "escalation_enabled = ?, active = ?, version = ?, updated_at = ? "
            "WHERE user_id = ? AND version = ?",
            (
                str(profile.cadence), to_iso(profile.last_checkin), profile.missed_count,
                profile.threshold, int(profile.escalation_enabled), int(profile.active),
                expected_version + 1, to_iso(now), profile.user_id, expected_version,
            ),
        )
        if cursor.rowcount == 1:
            profile.version = expected_version + 1
            return True
        return False

    # ── Alerts ────────────────────────────────────────────────────────────

    def get_open_alert(self, user_id: str, conn: sqlite3.Connection | None = None) -> Alert | None:
        row = self._one(
            "SELECT * FROM alerts WHERE user_id = ? AND status IN (?, ?)",
            (user_id, *_OPEN_ALERT), conn,
        )
        return Alert.from_row(row) if row else None

    def get_latest_alert(self, user_id: str, conn: sqlite3.Connection | None = None) -> Alert | None:
        row = self._one(
            "SELECT * FROM alerts WHERE user_id = ? ORDER BY opened_at DESC, rowid DESC LIMIT 1",
            (user_id,), conn,
        )
        return Alert.from_row(row) if row else None

    def list_alerts(self, user_id: str) -> list[Alert]:
        rows = self._all("SELECT * FROM alerts WHERE user_id = ? ORDER BY opened_at, rowid", (user_id,))
        return [Alert.from_row(r) for r in rows]

    def open_alert(self, conn: sqlite3.Connection, alert: Alert) -> bool:
        """Insert an open alert unless the user already has one."""
        cursor = conn.execute(
            "INSERT OR IGNORE INTO alerts (id, user_id, status, opened_at, closed_at) VALUES (?, ?, ?, ?, ?)",
            (alert.id, alert.user_id, alert.status.value, to_iso(alert.opened_at), to_iso(alert.closed_at)),
        )
        return cursor.rowcount == 1

    def set_alert_status(
        self,
        conn: sqlite3.Connection,
        alert_id: str,
        expected: AlertStatus,
        status: AlertStatus,
        closed_at: datetime | None = None,
    ) -> bool:
        cursor = conn.execute(
            "UPDATE alerts SET status = ?, closed_at = ? WHERE id = ? AND status = ?",
            (status.value, to_iso(closed_at), alert_id, expected.value),
        )
        return cursor.rowcount == 1

    # ── Reviews ───────────────────────────────────────────────────────────

    def create_review(self, conn: sqlite3.Connection, review: AdminReview) -> bool:
        """Insert a pending review unless the user already has one pending."""
        cursor = conn.execute(
            "INSERT OR IGNORE INTO reviews (id, user_id, status, reviewer_id, notes, created_at, "
            "decided_at, dispatched_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                review.id, review.user_id, review.status.value, review.reviewer_id, review.notes,
                to_iso(review.created_at), to_iso(review.decided_at), to_iso(review.dispatched_at),
            ),
        )
        return cursor.rowcount == 1

    def get_review(self, review_id: str, conn: sqlite3.Connection | None = None) -> AdminReview | None:
        row = self._one("SELECT * FROM reviews WHERE id = ?", (review_id,), conn)
        return AdminReview.from_row(row) if row else None

    def get_pending_review(self, user_id: str, conn: sqlite3.Connection | None = None) -> AdminReview | None:
        row = self._one(
            "SELECT * FROM reviews WHERE user_id = ? AND status = ?",
            (user_id, ReviewStatus.PENDING.value), conn,
        )
        return AdminReview.from_row(row) if row else None

    def list_reviews(self, status: ReviewStatus | None = None, user_id: str | None = None) -> list[AdminReview]:
        clauses, params = [], []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._all(f"SELECT * FROM reviews {where} ORDER BY created_at, rowid", tuple(params))
        return [AdminReview.from_row(r) for r in rows]

    def decide_review(
        self,
        conn: sqlite3.Connection,
        review_id: str,
        status: ReviewStatus,
        reviewer_id: str,
        notes: str | None,
        decided_at: datetime,
    ) -> bool:
        """Record a decision. Only succeeds while the review is still pending."""
        cursor = conn.execute(
            "UPDATE reviews SET status = ?, reviewer_id = ?, notes = ?, decided_at = ? "
            "WHERE id = ? AND status = ?",
            (status.value, reviewer_id, notes, to_iso(decided_at), review_id, ReviewStatus.PENDING.value),
        )
        return cursor.rowcount == 1

    def mark_dispatched(self, conn: sqlite3.Connection, review_id: str, when: datetime) -> bool:
        cursor = conn.execute(
            "UPDATE reviews SET dispatched_at = ? WHERE id = ? AND dispatched_at IS NULL",
            (to_iso(when), review_id),
        )
        return cursor.rowcount == 1

    def list_undispatched_approved(self) -> list[AdminReview]:
        rows = self._all(
            "SELECT * FROM reviews WHERE status = ? AND dispatched_at IS NULL ORDER BY decided_at",
            (ReviewStatus.APPROVED.value,),
        )
        return [AdminReview.from_row(r) for r in rows]

    # ── Notification attempts ─────────────────────────────────────────────

    def create_attempt(self, conn: sqlite3.Connection, attempt: NotificationAttempt) -> bool:
        cursor = conn.execute(
            "INSERT OR IGNORE INTO attempts (review_id, nominee_id, attempt_count, status, last_error, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                attempt.review_id, attempt.nominee_id, attempt.attempt_count,
                attempt.status.value, attempt.last_error, to_iso(attempt.updated_at),
            ),
        )
        return cursor.rowcount == 1

    def get_attempt(
        self, review_id: str, nominee_id: str, conn: sqlite3.Connection | None = None,
    ) -> NotificationAttempt | None:
        row = self._one(
            "SELECT * FROM attempts WHERE review_id = ? AND nominee_id = ?",
            (review_id, nominee_id), conn,
        )
        return NotificationAttempt.from_row(row) if row else None

    def list_attempts(self, review_id: str) -> list[NotificationAttempt]:
        rows = self._all("SELECT * FROM attempts WHERE review_id = ? ORDER BY nominee_id", (review_id,))
        return [NotificationAttempt.from_row(r) for r in rows]

    def update_attempt(self, conn: sqlite3.Connection, attempt: NotificationAttempt) -> None:
        conn.execute(
            "UPDATE attempts SET attempt_count = ?, status = ?, last_error = ?, updated_at = ? "
            "WHERE review_id = ? AND nominee_id = ?",
            (
                attempt.attempt_count, attempt.status.value, attempt.last_error,
                to_iso(attempt.updated_at), attempt.review_id, attempt.nominee_id,
            ),
        )

    def list_exhausted(self) -> list[dict[str, Any]]:
        """Exhausted attempts joined with their review, newest first."""
        return self._all(
            "SELECT a.*, r.user_id AS user_id, r.decided_at AS decided_at FROM attempts a "
            "JOIN reviews r ON r.id = a.review_id "
            "WHERE a.status = ? ORDER BY a.updated_at DESC",
            (AttemptStatus.EXHAUSTED.value,),
        )

    # ── Audit log ─────────────────────────────────────────────────────────

    def append_audit(self, conn: sqlite3.Connection, entry: AuditEntry) -> None:
        conn.execute(
            "INSERT INTO audit (entity_type, entity_id, from_state, to_state, actor, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                entry.entity_type, entry.entity_id, entry.from_state,
                entry.to_state, entry.actor, to_iso(entry.timestamp),
            ),
        )

    def list_audit(
        self,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditEntry]:
        """Audit entries in insertion order (oldest first), capped at ``limit``."""
        clauses, params = [], []
        if entity_type:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        if entity_id:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._all(
            f"SELECT * FROM (SELECT * FROM audit {where} ORDER BY id DESC LIMIT ?) ORDER BY id",
            (*params, limit),
        )
        return [AuditEntry.from_row(r) for r in rows]

    # ── Sweep lease ───────────────────────────────────────────────────────

    def acquire_lease(self, name: str, holder: str, ttl_seconds: float, now: datetime) -> bool:
        """Take or renew a named lease. False if another holder's lease is still live."""
        expires = to_iso(now + timedelta(seconds=ttl_seconds))
        with self.transaction() as conn:
            row = conn.execute("SELECT holder, expires_at FROM leases WHERE name = ?", (name,)).fetchone()
            if row and row["holder"] != holder and row["expires_at"] > to_iso(now):
                return False
            conn.execute(
                "INSERT INTO leases (name, holder, expires_at) VALUES (?, ?, ?) "
                "ON CONFLICT(name) DO UPDATE SET holder = excluded.holder, expires_at = excluded.expires_at",
                (name, holder, expires),
            )
        return True

    def release_lease(self, name: str, holder: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM leases WHERE name = ? AND holder = ?", (name, holder))

    # ── Stats ─────────────────────────────────────────────────────────────

    def counts(self) -> dict[str, int]:
        with self._reader() as conn:
            def scalar(sql: str, params: tuple[Any, ...] = ()) -> int:
                return conn.execute(sql, params).fetchone()[0]

            return {
                "total_profiles": scalar("SELECT COUNT(*) FROM profiles"),
                "active_profiles": scalar("SELECT COUNT(*) FROM profiles WHERE active = 1"),
                "open_alerts": scalar(
                    "SELECT COUNT(*) FROM alerts WHERE status IN (?, ?)", _OPEN_ALERT,
                ),
                "escalated_users": scalar(
                    "SELECT COUNT(*) FROM alerts WHERE status = ?", (AlertStatus.ESCALATED.value,),
                ),
                "pending_reviews": scalar(
                    "SELECT COUNT(*) FROM reviews WHERE status = ?", (ReviewStatus.PENDING.value,),
                ),
                "exhausted_attempts": scalar(
                    "SELECT COUNT(*) FROM attempts WHERE status = ?", (AttemptStatus.EXHAUSTED.value,),
                ),
            }

    def close(self) -> None:
        """No-op; connections are created per-call."""
        pass
