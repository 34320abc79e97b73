"""Client-side API: drive one user's session against an in-process evaluator."""

from physcert.domains.certification.client.orchestrator import (
    ActionResult,
    CertificationClient,
    ContextFingerprint,
)

__all__ = ["ActionResult", "CertificationClient", "ContextFingerprint"]
