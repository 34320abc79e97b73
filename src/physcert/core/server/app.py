"""PhysCert MCP Server: application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery
"""

from __future__ import annotations

import logging

from fastmcp import FastMCP

from physcert.core.acl.service import AccessControlService
from physcert.core.audit.logger import AuditLogger
from physcert.core.config.settings import get_settings
from physcert.core.fhe.coprocessor import SimulatedCoprocessor
from physcert.core.storage.database import LedgerDatabase
from physcert.core.storage.encryption import EncryptionError, FieldEncryptor
from physcert.core.storage.repository import CertificationRepository
from physcert.domains.certification.domain_logic.evaluator import EligibilityEvaluator
from physcert.domains.certification.tools.audit_tools import register_audit_tools
from physcert.domains.certification.tools.certification_tools import (
    register_certification_tools,
)

logger = logging.getLogger(__name__)


def create_app(
    *,
    database_override: LedgerDatabase | None = None,
    coprocessor_key_override: str | None = None,
) -> FastMCP:
    """Create and configure the PhysCert MCP server.

    This is the main application factory. It:
    1. Creates the FastMCP server instance
    2. Opens the ledger database
    3. Creates the simulated coprocessor and the Access Control Service
    4. Creates the eligibility evaluator and the audit logger
    5. Registers all tools
    """
    settings = get_settings()

    server = FastMCP(
        "PhysCert",
        instructions=(
            "Encrypted health eligibility certification. Submit six encrypted "
            "health metrics, evaluate eligibility under encryption, and decrypt "
            "results only with a signed, granted request."
        ),
    )

    # --- Ledger ---
    if database_override is not None:
        database = database_override
    else:
        database = LedgerDatabase(settings.db_path)
    database.initialize()
    logger.info(
        "Ledger ready: %s (schema v%d)", settings.db_path, database.get_schema_version()
    )

    # --- Coprocessor ---
    key = coprocessor_key_override or settings.coprocessor_key
    if not key:
        key = FieldEncryptor.generate_key()
        logger.warning(
            "No COPROCESSOR_KEY configured; using an ephemeral key. "
            "Ciphertexts stored by this process will be unreadable after restart."
        )
    try:
        coprocessor = SimulatedCoprocessor(database, key)
    except EncryptionError as exc:
        raise RuntimeError(f"Invalid COPROCESSOR_KEY: {exc}") from exc

    acl = AccessControlService(
        database,
        coprocessor,
        max_duration_days=settings.decryption_max_duration_days,
        request_max_age_seconds=settings.request_max_age_seconds,
    )
    repository = CertificationRepository(database)
    evaluator = EligibilityEvaluator(
        database, coprocessor, acl, repository, address=settings.contract_address
    )
    audit_logger = AuditLogger(database)

    @server.tool
    def health_check() -> dict:
        """Check server health and return basic status information."""
        return {
            "status": "ok",
            "server": "PhysCert",
            "version": "0.1.0",
            "chain_id": settings.chain_id,
            "contract_address": evaluator.address,
            "records_stored": repository.count_records(),
            "verdicts_stored": repository.count_verdicts(),
        }

    register_certification_tools(server, evaluator, acl, coprocessor, audit_logger)
    logger.info("Certification tools registered")

    register_audit_tools(server, audit_logger)
    logger.info("Audit tools registered")

    return server


# Module-level instance for FastMCP discovery.
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
