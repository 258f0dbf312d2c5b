"""Read access to users' nominees.

Nominee CRUD lives in the main application. The engine only needs the
verified nominees of a user and how to reach them. ``NomineeDirectory`` is
the contract; ``SqliteNomineeDirectory`` reads a ``nominees`` table shaped
like the application's.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from vigil.config import settings
from vigil.liveness.errors import StoreUnavailable
from vigil.liveness.models import new_id

logger = logging.getLogger(__name__)


@dataclass
class Nominee:
    """A trusted contact designated by a user."""

    nominee_id: str
    contact_info: dict[str, str] = field(default_factory=dict)
    full_name: str = ""
    relationship: str = ""


class NomineeDirectory(Protocol):
    def list_verified_nominees(self, user_id: str) -> list[Nominee]: ...


class SqliteNomineeDirectory:
    """SQLite-backed nominee lookup."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        self._db_path = str(db_path or settings.database_path)
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=settings.sqlite_busy_timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS nominees (
                    id            TEXT PRIMARY KEY,
                    user_id       TEXT NOT NULL,
                    full_name     TEXT NOT NULL DEFAULT '',
                    relationship  TEXT NOT NULL DEFAULT '',
                    mobile_number TEXT NOT NULL DEFAULT '',
                    email         TEXT,
                    is_verified   INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_nominees_user
                ON nominees (user_id)
            """)

    def add(
        self,
        user_id: str,
        full_name: str,
        mobile_number: str = "",
        email: str | None = None,
        relationship: str = "",
        verified: bool = False,
        nominee_id: str | None = None,
    ) -> Nominee:
        """Insert a nominee row (used for seeding and local deployments)."""
        nid = nominee_id or new_id()
        with self._conn() as conn:
            conn.execute(
                "INSERT INTO nominees (id, user_id, full_name, relationship, mobile_number, email, is_verified) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (nid, user_id, full_name, relationship, mobile_number, email, int(verified)),
            )
        return self._to_nominee({
            "id": nid, "full_name": full_name, "relationship": relationship,
            "mobile_number": mobile_number, "email": email,
        })

    def list_verified_nominees(self, user_id: str) -> list[Nominee]:
        try:
            with self._conn() as conn:
                rows = conn.execute(
                    "SELECT * FROM nominees WHERE user_id = ? AND is_verified = 1 ORDER BY id",
                    (user_id,),
                ).fetchall()
        except sqlite3.OperationalError as e:
            raise StoreUnavailable(f"Nominee lookup failed: {e}") from e
        return [self._to_nominee(dict(r)) for r in rows]

    @staticmethod
    def _to_nominee(row: dict[str, Any]) -> Nominee:
        contact = {}
        if row.get("mobile_number"):
            contact["mobile"] = row["mobile_number"]
        if row.get("email"):
            contact["email"] = row["email"]
        return Nominee(
            nominee_id=row["id"],
            contact_info=contact,
            full_name=row.get("full_name", ""),
            relationship=row.get("relationship", ""),
        )
