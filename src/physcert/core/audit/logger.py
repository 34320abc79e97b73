"""Audit logger: access logging and plaintext disclosure tracking.

Records every tool invocation and decryption request in a plaintext-free
audit trail:

* ``tool_input_hash``: SHA-256 of canonical JSON (handles and proofs
  are never stored raw).
* ``plaintext_disclosed``: whether a decryption actually released a value.
* ``subject`` / ``handle``: which record or ciphertext the event touched.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from physcert.core.storage.database import DatabaseError, LedgerDatabase

logger = logging.getLogger(__name__)


def _hash_input(data: Any) -> str:
    """SHA-256 hash of canonical JSON.

    Returns:
        Hex-encoded SHA-256 digest, or empty string on failure.
    """
    try:
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()
    except (TypeError, ValueError):
        return ""


@dataclass
class AuditEvent:
    """A single audit log entry."""

    action: str                          # 'tool_invocation' | 'decrypt_request'
    tool_name: str = ""
    tool_input_hash: str = ""
    subject: str | None = None
    handle: str | None = None
    plaintext_disclosed: bool = False
    duration_ms: float | None = None
    status: str = "success"              # 'success' | 'failure' | 'denied'
    error_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AuditLogger:
    """Records audit events to the ``audit_log`` table.

    Every write is its own committed transaction, so no entry depends on
    the outcome of the operation it describes.

    Usage::

        audit = AuditLogger(ledger_db)
        audit.log_tool_call(
            tool_name="submit_encrypted_metrics",
            tool_input={"caller": "0x..."},
            subject="0x...",
        )
    """

    def __init__(self, database: LedgerDatabase) -> None:
        self._db = database

    # ---------------------------------------------------------------
    # Write
    # ---------------------------------------------------------------

    def log_event(self, event: AuditEvent) -> str:
        """Insert an audit event and return its UUID, or "" if the write failed."""
        event_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()

        metadata_json = (
            json.dumps(event.metadata, separators=(",", ":"))
            if event.metadata
            else None
        )

        try:
            with self._db.transaction() as conn:
                conn.execute(
                    """INSERT INTO audit_log
                       (id, timestamp, action, tool_name, tool_input_hash,
                        subject, handle, plaintext_disclosed,
                        duration_ms, status, error_type, metadata_json)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        event_id,
                        now,
                        event.action,
                        event.tool_name or None,
                        event.tool_input_hash or None,
                        event.subject,
                        event.handle,
                        1 if event.plaintext_disclosed else 0,
                        event.duration_ms,
                        event.status,
                        event.error_type,
                        metadata_json,
                    ),
                )
        except (sqlite3.Error, DatabaseError):
            logger.exception("Failed to write audit event; event lost")
            return ""

        return event_id

    def log_tool_call(
        self,
        tool_name: str,
        tool_input: Any = None,
        *,
        subject: str | None = None,
        handle: str | None = None,
        duration_ms: float | None = None,
        status: str = "success",
        error_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Convenience wrapper for logging a tool invocation.

        Args:
            tool_name: Name of the MCP tool.
            tool_input: Tool input data (hashed, never stored raw).
            subject: Subject whose record or verdict was touched.
            handle: Resulting handle, if any.
            duration_ms: Tool execution duration in milliseconds.
            status: 'success' or 'failure'.
            error_type: Exception class name on failure.
            metadata: Additional plaintext-free context.
        """
        return self.log_event(AuditEvent(
            action="tool_invocation",
            tool_name=tool_name,
            tool_input_hash=_hash_input(tool_input) if tool_input else "",
            subject=subject,
            handle=handle,
            duration_ms=duration_ms,
            status=status,
            error_type=error_type,
            metadata=metadata or {},
        ))

    def log_decrypt_request(
        self,
        *,
        requester: str,
        handles: list[str],
        granted: bool,
        tool_name: str = "user_decrypt",
        duration_ms: float | None = None,
    ) -> str:
        """Log a user decryption request and whether plaintext left the ledger."""
        return self.log_event(AuditEvent(
            action="decrypt_request",
            tool_name=tool_name,
            tool_input_hash=_hash_input(handles),
            subject=requester,
            handle=handles[0] if len(handles) == 1 else None,
            plaintext_disclosed=granted,
            duration_ms=duration_ms,
            status="success" if granted else "denied",
            metadata={"handle_count": len(handles)},
        ))

    # ---------------------------------------------------------------
    # Read
    # ---------------------------------------------------------------

    def get_events(
        self,
        *,
        action: str | None = None,
        tool_name: str | None = None,
        subject: str | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Query audit events with optional filters, newest first."""
        conditions: list[str] = []
        params: list[Any] = []

        if action:
            conditions.append("action = ?")
            params.append(action)
        if tool_name:
            conditions.append("tool_name = ?")
            params.append(tool_name)
        if subject:
            conditions.append("subject = ?")
            params.append(subject.lower())
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM audit_log{where} ORDER BY timestamp DESC, rowid DESC LIMIT ?"
        params.append(limit)

        rows = self._db.query_all(query, params)
        return [dict(row) for row in rows]

    def count_events(self, *, since: str | None = None) -> int:
        """Count total audit events, optionally since a timestamp."""
        if since:
            row = self._db.query_one(
                "SELECT COUNT(*) FROM audit_log WHERE timestamp >= ?", (since,)
            )
        else:
            row = self._db.query_one(
                "SELECT COUNT(*) FROM audit_log"
            )
        return row[0]

    def count_disclosures(self, *, since: str | None = None) -> int:
        """Count decryption requests that released plaintext."""
        if since:
            row = self._db.query_one(
                "SELECT COUNT(*) FROM audit_log WHERE plaintext_disclosed = 1 AND timestamp >= ?",
                (since,),
            )
        else:
            row = self._db.query_one(
                "SELECT COUNT(*) FROM audit_log WHERE plaintext_disclosed = 1"
            )
        return row[0]
