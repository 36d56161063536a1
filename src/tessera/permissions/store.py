"""Grant storage.

Decisions are keyed by ``(subject, capability, pattern)``. Session-scoped
decisions live in memory and vanish with the process; persistent ones are
written to SQLite so they survive restarts.

Schema Design:
- grants: one row per persistent decision, primary key on the full key
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

from tessera.errors import StoreError
from tessera.permissions.models import Grant, GrantSource, Scope, Subject, SubjectKind, Verdict

logger = logging.getLogger(__name__)

GrantKey = tuple[str, str, str, str]


def _key(subject: Subject, capability: str, pattern: str) -> GrantKey:
    return (subject.kind.value, subject.name, capability, pattern)


class BaseGrantStore(ABC):
    """Shared behaviour: an in-memory session layer plus a lock.

    All public methods are atomic with respect to each other, so a
    check-then-write in :meth:`put_if_absent` cannot interleave with another
    writer on the same key.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._session: dict[GrantKey, Grant] = {}

    @abstractmethod
    def _get_persistent(self, key: GrantKey) -> Grant | None: ...

    @abstractmethod
    def _put_persistent(self, grant: Grant) -> None: ...

    @abstractmethod
    def _delete_persistent(self, subject: Subject, capability: str | None) -> int: ...

    @abstractmethod
    def _list_persistent(self, subject: Subject | None) -> list[Grant]: ...

    def get(self, subject: Subject, capability: str, pattern: str) -> Grant | None:
        """Return the decision for a key; session decisions shadow persistent ones."""
        key = _key(subject, capability, pattern)
        with self._lock:
            grant = self._session.get(key)
            if grant is not None:
                return grant
            return self._get_persistent(key)

    def put(self, grant: Grant) -> None:
        with self._lock:
            if grant.scope is Scope.PERSISTENT:
                self._session.pop(grant.key, None)
                self._put_persistent(grant)
            else:
                self._session[grant.key] = grant

    def put_if_absent(self, grant: Grant) -> Grant:
        """Store ``grant`` unless a decision for the same declared set exists.

        Returns:
            The decision now in force, which is the existing one if another
            evaluation got there first
        """
        with self._lock:
            existing = self.get(grant.subject, grant.capability, grant.pattern)
            if existing is not None and existing.capabilities_hash == grant.capabilities_hash:
                return existing
            self.put(grant)
            return grant

    def revoke(self, subject: Subject, capability: str | None = None) -> int:
        """Drop decisions for a subject, optionally only one capability kind.

        Returns:
            Number of decisions removed
        """
        with self._lock:
            doomed = [
                key
                for key in self._session
                if key[:2] == (subject.kind.value, subject.name)
                and (capability is None or key[2] == capability)
            ]
            for key in doomed:
                del self._session[key]
            removed = len(doomed) + self._delete_persistent(subject, capability)
        if removed:
            logger.info(f"Revoked {removed} grant(s) for {subject}")
        return removed

    def list(self, subject: Subject | None = None) -> list[Grant]:
        with self._lock:
            grants = self._list_persistent(subject)
            grants.extend(
                grant for grant in self._session.values() if subject is None or grant.subject == subject
            )
        return sorted(grants, key=lambda g: g.key)

    def clear_session(self) -> None:
        with self._lock:
            self._session.clear()

    def close(self) -> None:
        """Release resources. The base store holds none."""


class MemoryGrantStore(BaseGrantStore):
    """Store that keeps everything in memory, persistent scope included."""

    def __init__(self) -> None:
        super().__init__()
        self._persistent: dict[GrantKey, Grant] = {}

    def _get_persistent(self, key: GrantKey) -> Grant | None:
        return self._persistent.get(key)

    def _put_persistent(self, grant: Grant) -> None:
        self._persistent[grant.key] = grant

    def _delete_persistent(self, subject: Subject, capability: str | None) -> int:
        doomed = [
            key
            for key in self._persistent
            if key[:2] == (subject.kind.value, subject.name)
            and (capability is None or key[2] == capability)
        ]
        for key in doomed:
            del self._persistent[key]
        return len(doomed)

    def _list_persistent(self, subject: Subject | None) -> list[Grant]:
        return [g for g in self._persistent.values() if subject is None or g.subject == subject]


class SqliteGrantStore(BaseGrantStore):
    """SQLite-backed grant store.

    Thread-safe; connections are short-lived and opened per operation.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: str | Path = "~/.tessera/grants.db"):
        """Initialize grant database.

        Args:
            db_path: Path to SQLite database file
        """
        super().__init__()
        self.db_path = Path(db_path).expanduser()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._initialize_schema()
        except (OSError, sqlite3.Error) as e:
            raise StoreError(f"Cannot open grant store at {self.db_path}: {e}") from e

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection with optimized settings."""
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        # Enable WAL mode for better concurrency
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def _initialize_schema(self) -> None:
        """Create database schema if not exists."""
        conn = self._get_connection()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS grants (
                    subject_kind TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    capability TEXT NOT NULL,
                    pattern TEXT NOT NULL,
                    verdict TEXT NOT NULL,
                    capabilities_hash TEXT,
                    source TEXT NOT NULL,
                    decided_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (subject_kind, subject, capability, pattern)
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_grants_subject
                ON grants(subject_kind, subject)
                """
            )
            conn.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _row_to_grant(row: sqlite3.Row) -> Grant:
        return Grant(
            subject=Subject(SubjectKind(row["subject_kind"]), row["subject"]),
            capability=row["capability"],
            pattern=row["pattern"],
            verdict=Verdict(row["verdict"]),
            scope=Scope.PERSISTENT,
            capabilities_hash=row["capabilities_hash"],
            source=GrantSource(row["source"]),
            decided_at=datetime.fromisoformat(row["decided_at"]),
        )

    def _get_persistent(self, key: GrantKey) -> Grant | None:
        try:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    """
                    SELECT * FROM grants
                    WHERE subject_kind = ? AND subject = ? AND capability = ? AND pattern = ?
                    """,
                    key,
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read grant {key}: {e}") from e
        return self._row_to_grant(row) if row is not None else None

    def _put_persistent(self, grant: Grant) -> None:
        try:
            conn = self._get_connection()
            try:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO grants (
                        subject_kind, subject, capability, pattern,
                        verdict, capabilities_hash, source, decided_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        *grant.key,
                        grant.verdict.value,
                        grant.capabilities_hash,
                        grant.source.value,
                        grant.decided_at.isoformat(),
                    ),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to write grant {grant.key}: {e}") from e

    def _delete_persistent(self, subject: Subject, capability: str | None) -> int:
        query = "DELETE FROM grants WHERE subject_kind = ? AND subject = ?"
        params: list[str] = [subject.kind.value, subject.name]
        if capability is not None:
            query += " AND capability = ?"
            params.append(capability)
        try:
            conn = self._get_connection()
            try:
                cursor = conn.execute(query, params)
                conn.commit()
                return cursor.rowcount
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to revoke grants for {subject}: {e}") from e

    def _list_persistent(self, subject: Subject | None) -> list[Grant]:
        query = "SELECT * FROM grants"
        params: list[str] = []
        if subject is not None:
            query += " WHERE subject_kind = ? AND subject = ?"
            params = [subject.kind.value, subject.name]
        try:
            conn = self._get_connection()
            try:
                rows = conn.execute(query, params).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to list grants: {e}") from e
        return [self._row_to_grant(row) for row in rows]
