"""Entry point for the PhysCert eligibility ledger server.

Serves the encrypted submission, evaluation and user-decryption tools over
Streamable HTTP. Run with ``physcert`` or ``python -m physcert.core.server.main``.
"""

from __future__ import annotations

import logging
from ipaddress import ip_address

from physcert.core.config.settings import get_settings
from physcert.core.server.app import create_app


def _is_loopback_host(host: str) -> bool:
    if host in {"localhost"}:
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def run() -> None:
    """Open the ledger and serve the certification tools."""
    settings = get_settings()
    logging.basicConfig(level=getattr(logging, settings.physcert_log_level.upper(), logging.INFO))

    logger = logging.getLogger(__name__)
    if not settings.physcert_allow_insecure_bind and not _is_loopback_host(settings.physcert_host):
        raise RuntimeError(
            "Refusing to expose the certification ledger on a non-loopback host: "
            "read tools are unauthenticated. Set PHYSCERT_ALLOW_INSECURE_BIND=true to override."
        )
    logger.info(
        "Serving eligibility ledger for %s (chain %d) on %s:%d",
        settings.contract_address,
        settings.chain_id,
        settings.physcert_host,
        settings.physcert_port,
    )

    mcp = create_app()
    mcp.run(
        transport="streamable-http",
        host=settings.physcert_host,
        port=settings.physcert_port,
    )


if __name__ == "__main__":
    run()
