"""SQLite database management for the PhysCert ledger.

Handles connection lifecycle, schema creation, migrations, and the
serialized transaction every state-changing operation runs inside.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Current schema version
SCHEMA_VERSION = 3

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_V1 = """
-- Simulated coprocessor ciphertext store: handle -> sealed plaintext
CREATE TABLE IF NOT EXISTS ciphertexts (
    handle      TEXT PRIMARY KEY,
    fhe_type    TEXT NOT NULL,
    sealed      TEXT NOT NULL,
    created_at  TEXT NOT NULL DEFAULT (datetime('now'))
);

-- (handle, principal) decrypt permissions; never deleted
CREATE TABLE IF NOT EXISTS acl_grants (
    handle      TEXT NOT NULL,
    principal   TEXT NOT NULL,
    granted_at  TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (handle, principal)
);

-- One row per subject, overwritten wholesale on resubmission
CREATE TABLE IF NOT EXISTS metric_records (
    subject                  TEXT PRIMARY KEY,
    heart_rate               TEXT NOT NULL,
    bmi                      TEXT NOT NULL,
    blood_pressure_systolic  TEXT NOT NULL,
    blood_pressure_diastolic TEXT NOT NULL,
    lung_capacity            TEXT NOT NULL,
    blood_oxygen             TEXT NOT NULL,
    updated_at               TEXT NOT NULL
);

-- One row per subject, overwritten on every evaluation
CREATE TABLE IF NOT EXISTS verdicts (
    subject      TEXT PRIMARY KEY,
    handle       TEXT NOT NULL,
    evaluated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER NOT NULL,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_acl_principal ON acl_grants(principal);
"""

# ---------------------------------------------------------------------------
# V2: Audit log table (access logging + plaintext disclosure tracking)
# ---------------------------------------------------------------------------

_SCHEMA_V2 = """
CREATE TABLE IF NOT EXISTS audit_log (
    id                  TEXT PRIMARY KEY,
    timestamp           TEXT NOT NULL DEFAULT (datetime('now')),
    action              TEXT NOT NULL,
    tool_name           TEXT,
    tool_input_hash     TEXT,
    subject             TEXT,
    handle              TEXT,
    plaintext_disclosed INTEGER DEFAULT 0,
    duration_ms         REAL,
    status              TEXT NOT NULL DEFAULT 'success',
    error_type          TEXT,
    metadata_json       TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_action    ON audit_log(action);
CREATE INDEX IF NOT EXISTS idx_audit_tool      ON audit_log(tool_name);
"""

# ---------------------------------------------------------------------------
# V3: Spent request signatures (each signed tool request is accepted once)
# ---------------------------------------------------------------------------

_SCHEMA_V3 = """
CREATE TABLE IF NOT EXISTS used_request_signatures (
    signature   TEXT PRIMARY KEY,
    principal   TEXT NOT NULL,
    action      TEXT NOT NULL,
    used_at     TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

# Shared by every LedgerDatabase in the process: one ledger, one writer.
_LEDGER_LOCK = threading.RLock()


class DatabaseError(Exception):
    """Raised when database operations fail."""


class LedgerDatabase:
    """SQLite database manager for the PhysCert ledger.

    Supports both file-based and in-memory (`:memory:`) databases.
    In-memory mode is used for testing.

    The connection runs in autocommit mode; writes are grouped with
    :meth:`transaction`, which commits on success and rolls back on any
    exception. Transactions nest: inner blocks join the outermost one.
    Reads go through :meth:`query_all` and :meth:`query_one`, which take
    the same lock.

    Usage::

        db = LedgerDatabase(":memory:")
        db.initialize()
        with db.transaction() as conn:
            conn.execute(...)
        db.close()
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        """Initialize database manager.

        Args:
            db_path: Path to SQLite file, or ":memory:" for in-memory DB.
        """
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._depth = 0

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the active database connection.

        Raises:
            DatabaseError: If the database has not been initialized.
        """
        if self._conn is None:
            raise DatabaseError("Database not initialized. Call initialize() first.")
        return self._conn

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def initialize(self) -> None:
        """Create the database connection and ensure schema exists.

        For file-based databases, creates parent directories if needed.
        Idempotent: safe to call multiple times.
        """
        if self._conn is not None:
            return  # Already initialized

        if self._db_path != ":memory:":
            db_file = Path(self._db_path).expanduser()
            db_file.parent.mkdir(parents=True, exist_ok=True)
            target = str(db_file)
        else:
            target = ":memory:"

        self._conn = sqlite3.connect(target, isolation_level=None, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")

        self._ensure_schema()
        logger.info("Ledger database initialized: %s", self._db_path)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block of writes atomically.

        The outermost block takes the process-wide ledger lock and opens
        ``BEGIN IMMEDIATE``; nested blocks reuse it. Any exception escaping
        the outermost block rolls back every write made inside it.
        """
        conn = self.connection
        with _LEDGER_LOCK:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield conn
                finally:
                    self._depth -= 1
                return

            conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                logger.debug("Ledger transaction rolled back")
                raise
            else:
                conn.execute("COMMIT")
            finally:
                self._depth = 0

    def query_all(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        """Run a read under the ledger lock.

        The connection is shared across threads, so a read waits for any
        transaction open on another thread to finish rather than seeing its
        uncommitted writes. Reads inside the caller's own transaction see
        that transaction's writes.
        """
        with _LEDGER_LOCK:
            return self.connection.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        rows = self.query_all(sql, params)
        return rows[0] if rows else None

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist and apply migrations."""
        conn = self.connection

        # V1: Core tables (always applied; CREATE IF NOT EXISTS is idempotent)
        conn.executescript(_SCHEMA_V1)

        cursor = conn.execute("SELECT MAX(version) FROM schema_version")
        row = cursor.fetchone()
        current_version = row[0] if row[0] is not None else 0

        # V2: Audit log table
        if current_version < 2:
            conn.executescript(_SCHEMA_V2)
            logger.info("Applied schema migration V2: audit_log table")

        # V3: Request replay guard
        if current_version < 3:
            conn.executescript(_SCHEMA_V3)
            logger.info("Applied schema migration V3: used_request_signatures table")

        if current_version < SCHEMA_VERSION:
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            logger.info(
                "Schema updated from version %d to %d", current_version, SCHEMA_VERSION
            )

    def get_schema_version(self) -> int:
        """Return the current schema version."""
        row = self.query_one("SELECT MAX(version) FROM schema_version")
        return row[0] if row[0] is not None else 0

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.info("Ledger database closed")

    def __enter__(self) -> LedgerDatabase:
        self.initialize()
        return self

    def __exit__(self, *args) -> None:
        self.close()
