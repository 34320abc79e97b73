"""MCP tools for encrypted metric submission, evaluation and decryption.

These are the submission interface of the evaluator: one tool encrypts
metrics for a user, one accepts six encrypted handles plus a proof, one
recomputes and returns a subject's verdict handle, two read handles back,
and one performs authorized user decryption. The two tools that act for a
user require that user's signature over the exact request.

Failures surface as a generic ``error`` or ``denied`` status; every call
is audit-logged without raw handles or proofs.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

from physcert.core.acl.service import AccessControlError, DecryptionDenied
from physcert.core.acl.signature import DecryptionSignature, RequestSignature, SignatureError
from physcert.core.fhe import FheError
from physcert.core.fhe.inputs import EncryptedInput
from physcert.core.storage.repository import RepositoryError
from physcert.domains.certification.domain_logic.evaluator import SubmissionError
from physcert.domains.certification.domain_logic.metrics_models import (
    HealthMetrics,
    MetricsValidationError,
)
from physcert.domains.certification.domain_logic.requests import (
    ENCRYPT_ACTION,
    SUBMIT_ACTION,
    encryption_request,
    submission_request,
)

if TYPE_CHECKING:
    from physcert.core.acl.service import AccessControlService
    from physcert.core.audit.logger import AuditLogger
    from physcert.core.fhe.coprocessor import SimulatedCoprocessor
    from physcert.domains.certification.domain_logic.evaluator import EligibilityEvaluator

logger = logging.getLogger(__name__)

_OPERATION_ERRORS = (
    AccessControlError,
    FheError,
    RepositoryError,
    SignatureError,
    SubmissionError,
    ValueError,
)


def register_certification_tools(
    mcp: FastMCP,
    evaluator: EligibilityEvaluator,
    acl: AccessControlService,
    coprocessor: SimulatedCoprocessor,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register certification tools on the MCP server."""

    def _audit(tool_name: str, tool_input: Any, start: float, **kwargs: Any) -> None:
        if audit_logger is None:
            return
        audit_logger.log_tool_call(
            tool_name,
            tool_input,
            duration_ms=round((time.monotonic() - start) * 1000, 1),
            **kwargs,
        )

    def _failure(tool_name: str, tool_input: Any, start: float, exc: Exception, **kwargs: Any) -> str:
        logger.info("%s failed: %s", tool_name, type(exc).__name__)
        _audit(tool_name, tool_input, start, status="failure", error_type=type(exc).__name__, **kwargs)
        return json.dumps({
            "status": "error",
            "error_type": type(exc).__name__,
            "message": "Transaction reverted.",
        })

    @mcp.tool
    async def encrypt_metrics(
        ctx: Context,
        user_address: str,
        heart_rate: int,
        bmi: float,
        blood_pressure_systolic: int,
        blood_pressure_diastolic: int,
        lung_capacity: int,
        blood_oxygen: int,
        request_signature: dict,
    ) -> str:
        """Encrypt six health metrics for a user (relayer role).

        BMI is given in kg/m² and scaled ×100 before encryption. The result
        carries six handles and one proof bound to the user and this
        evaluator, ready for ``submit_encrypted_metrics``. Only the user can
        ask for their own proof: ``request_signature`` must be the user's
        signature over the contract, the user and the six scaled values.

        Args:
            user_address: Address of the user who will submit.
            heart_rate: Beats per minute.
            bmi: Body-mass index, e.g. 22.5.
            blood_pressure_systolic: Systolic pressure (top number).
            blood_pressure_diastolic: Diastolic pressure (bottom number).
            lung_capacity: Lung capacity score.
            blood_oxygen: Blood oxygen saturation percentage.
            request_signature: A request signature (public_key, issued_at,
                signature) from ``user_address``.
        """
        start = time.monotonic()
        metrics = HealthMetrics(
            heart_rate=heart_rate,
            bmi=bmi,
            blood_pressure_systolic=blood_pressure_systolic,
            blood_pressure_diastolic=blood_pressure_diastolic,
            lung_capacity=lung_capacity,
            blood_oxygen=blood_oxygen,
        )
        try:
            values = metrics.scaled()
            acl.authenticate_request(
                user_address,
                RequestSignature.from_dict(request_signature),
                ENCRYPT_ACTION,
                encryption_request(evaluator.address, user_address, values),
            )
            enc = EncryptedInput(coprocessor, evaluator.address, user_address)
            for value in values:
                enc.add32(value)
            bundle = enc.encrypt()
        except AccessControlError as exc:
            _audit("encrypt_metrics", {"user": user_address}, start,
                   status="failure", error_type=type(exc).__name__)
            return json.dumps({"status": "denied", "message": "request not authorized"})
        except (MetricsValidationError, FheError, SignatureError, ValueError) as exc:
            _audit("encrypt_metrics", {"user": user_address}, start,
                   status="failure", error_type=type(exc).__name__)
            return json.dumps({"status": "error", "message": str(exc)})

        _audit("encrypt_metrics", {"user": user_address}, start, subject=user_address.lower())
        return json.dumps({"status": "encrypted", **bundle.to_dict()})

    @mcp.tool
    async def submit_encrypted_metrics(
        ctx: Context,
        caller: str,
        handles: list[str],
        input_proof: str,
        request_signature: dict,
    ) -> str:
        """Store six encrypted metrics for the caller and evaluate eligibility.

        Replaces the caller's previous record in full. The caller proves who
        they are with ``request_signature``, their signature over the
        caller, this evaluator, the handles and the proof; each signed
        request is accepted once. If any check fails, the caller's record
        and verdict are left as they were.

        Args:
            caller: Address of the submitting user.
            handles: Six handles: heart rate, BMI ×100, systolic, diastolic,
                lung capacity, blood oxygen.
            input_proof: The proof returned alongside the handles.
            request_signature: A request signature (public_key, issued_at,
                signature) from ``caller``.
        """
        start = time.monotonic()
        tool_input = {"caller": caller, "handles": handles}
        try:
            acl.authenticate_request(
                caller,
                RequestSignature.from_dict(request_signature),
                SUBMIT_ACTION,
                submission_request(evaluator.address, caller, handles, input_proof),
            )
            verdict_handle = evaluator.submit_encrypted_metrics(caller, handles, input_proof)
        except _OPERATION_ERRORS as exc:
            return _failure("submit_encrypted_metrics", tool_input, start, exc)

        _audit("submit_encrypted_metrics", tool_input, start,
               subject=caller.lower(), handle=verdict_handle)
        return json.dumps({
            "status": "submitted",
            "subject": caller.lower(),
            "verdict_handle": verdict_handle,
        })

    @mcp.tool
    async def evaluate_eligibility(
        ctx: Context,
        subject: str,
        caller: str = "",
    ) -> str:
        """Recompute a subject's encrypted eligibility verdict.

        Anyone may request this. A subject who never submitted metrics
        evaluates to "not eligible".

        Args:
            subject: Address whose verdict to recompute.
            caller: Optional address of the requester, for the audit trail.
        """
        start = time.monotonic()
        tool_input = {"subject": subject, "caller": caller}
        try:
            verdict_handle = evaluator.evaluate(subject, caller=caller or None)
        except _OPERATION_ERRORS as exc:
            return _failure("evaluate_eligibility", tool_input, start, exc)

        _audit("evaluate_eligibility", tool_input, start,
               subject=subject.lower(), handle=verdict_handle)
        return json.dumps({
            "status": "evaluated",
            "subject": subject.lower(),
            "verdict_handle": verdict_handle,
        })

    @mcp.tool
    async def get_eligibility_handle(ctx: Context, subject: str) -> str:
        """Return a subject's current encrypted verdict handle.

        The all-zero handle means the subject was never evaluated.

        Args:
            subject: Address to look up.
        """
        try:
            handle = evaluator.get_verdict_handle(subject)
        except RepositoryError as exc:
            return json.dumps({"status": "error", "message": str(exc)})
        return json.dumps({"status": "ok", "subject": subject.lower(), "verdict_handle": handle})

    @mcp.tool
    async def get_metric_handles(ctx: Context, subject: str) -> str:
        """Return a subject's six encrypted metric handles.

        Args:
            subject: Address to look up.
        """
        try:
            handles = evaluator.get_metric_handles(subject)
        except RepositoryError as exc:
            return json.dumps({"status": "error", "message": str(exc)})
        return json.dumps({"status": "ok", "subject": subject.lower(), "handles": handles})

    @mcp.tool
    async def user_decrypt(
        ctx: Context,
        handles: list[str],
        signature: dict,
    ) -> str:
        """Decrypt handles for the principal who signed the request.

        Succeeds only if the signature is valid, current, names this
        evaluator, and both the signer and the evaluator hold grants on
        every handle. Any refusal reads "request denied".

        Args:
            handles: Handles to decrypt.
            signature: A decryption signature (public_key, user_address,
                contract_addresses, start_timestamp, duration_days, signature).
        """
        start = time.monotonic()
        requester = str(signature.get("user_address", "")).lower()
        try:
            parsed = DecryptionSignature.from_dict(signature)
            clear = acl.authorize_decrypt(
                handles, parsed.user_address, parsed, contract_address=evaluator.address
            )
        except (DecryptionDenied, SignatureError):
            if audit_logger is not None:
                audit_logger.log_decrypt_request(
                    requester=requester,
                    handles=handles,
                    granted=False,
                    duration_ms=round((time.monotonic() - start) * 1000, 1),
                )
            return json.dumps({"status": "denied", "message": "request denied"})

        if audit_logger is not None:
            audit_logger.log_decrypt_request(
                requester=requester,
                handles=handles,
                granted=True,
                duration_ms=round((time.monotonic() - start) * 1000, 1),
            )
        return json.dumps({"status": "ok", "values": clear})
