"""MCP tools for viewing the audit trail.

The audit log holds no plaintext and no raw handles or proofs, only hashed
input references, so it can be shown to anyone operating the server.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from physcert.core.audit.logger import AuditLogger

logger = logging.getLogger(__name__)


def register_audit_tools(
    mcp: FastMCP,
    audit_logger: AuditLogger,
) -> None:
    """Register audit trail tools on the MCP server."""

    @mcp.tool
    async def audit_summary(
        ctx: Context,
        days: int = 30,
        subject: str = "",
    ) -> str:
        """View recent submissions, evaluations and decryption requests.

        Args:
            days: Number of days to look back (default: 30).
            subject: Optional address to restrict events to.
        """
        since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()

        total_events = audit_logger.count_events(since=since)
        disclosure_count = audit_logger.count_disclosures(since=since)
        recent_events = audit_logger.get_events(since=since, subject=subject or None, limit=20)

        display_events = []
        for event in recent_events:
            display_events.append({
                "timestamp": event.get("timestamp"),
                "action": event.get("action"),
                "tool_name": event.get("tool_name"),
                "subject": event.get("subject"),
                "plaintext_disclosed": bool(event.get("plaintext_disclosed")),
                "status": event.get("status"),
                "error_type": event.get("error_type"),
                "duration_ms": event.get("duration_ms"),
            })

        return json.dumps({
            "status": "ok",
            "period_days": days,
            "total_events": total_events,
            "plaintext_disclosures": disclosure_count,
            "recent_events": display_events,
            "note": (
                "This audit trail contains no plaintext health data. "
                "It tracks tool usage and which decryption requests released a value."
            ),
        }, indent=2)
