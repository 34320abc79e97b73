"""Off-chain orchestration of one user's certification session.

This is the public client API for applications that embed the evaluator
in-process (the MCP tools are the remote API). It is exported from
:mod:`physcert.domains.certification.client`.

Encrypt, submit, evaluate, fetch the verdict handle and decrypt it, one
step at a time. Each action captures a context fingerprint (network, account,
evaluator address) when it starts and compares it with the live context
after every ledger step; on a mismatch the action stops and reports
``cancelled`` instead of acting on a stale result. Nothing is timed out.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from physcert.core.acl.service import AccessControlError, AccessControlService
from physcert.core.acl.signature import DecryptionKeypair, DecryptionSignatureStore, SignatureError
from physcert.core.fhe import FheError
from physcert.core.fhe.coprocessor import SimulatedCoprocessor
from physcert.core.fhe.handles import ZERO_HANDLE
from physcert.core.fhe.inputs import EncryptedInput
from physcert.core.storage.database import DatabaseError
from physcert.core.storage.repository import RepositoryError
from physcert.domains.certification.domain_logic.evaluator import (
    EligibilityEvaluator,
    SubmissionError,
)
from physcert.domains.certification.domain_logic.metrics_models import HealthMetrics

logger = logging.getLogger(__name__)

_ACTION_ERRORS = (
    AccessControlError,
    DatabaseError,
    FheError,
    RepositoryError,
    SignatureError,
    SubmissionError,
    ValueError,
)


@dataclass(frozen=True)
class ContextFingerprint:
    """The session context an action was started under."""

    chain_id: int | None
    account: str | None
    contract_address: str | None


@dataclass
class ActionResult:
    """Outcome of one client action."""

    status: str  # 'ok' | 'cancelled' | 'busy' | 'unavailable' | 'error'
    message: str
    value: Any = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


class CertificationClient:
    """Drives submission, evaluation and decryption for one user.

    Usage::

        client = CertificationClient(evaluator, acl, fhe, keypair, chain_id=31337)
        await client.submit_metrics(HealthMetrics(75, 22.5, 120, 80, 70, 98))
        result = await client.decrypt_verdict()   # result.value == 1
    """

    def __init__(
        self,
        evaluator: EligibilityEvaluator,
        acl: AccessControlService,
        coprocessor: SimulatedCoprocessor,
        keypair: DecryptionKeypair,
        *,
        chain_id: int,
        context_provider: Callable[[], ContextFingerprint] | None = None,
        signature_store: DecryptionSignatureStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._evaluator = evaluator
        self._acl = acl
        self._coprocessor = coprocessor
        self._keypair = keypair
        self._chain_id = chain_id
        self._context_provider = context_provider
        self._signatures = signature_store or DecryptionSignatureStore()
        self._clock = clock

        self.verdict_handle: str = ZERO_HANDLE
        self.clear_verdict: tuple[str, int] | None = None
        self.message: str = ""
        self.is_submitting = False
        self.is_evaluating = False
        self.is_decrypting = False

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    @property
    def account(self) -> str:
        return self._keypair.address

    def fingerprint(self) -> ContextFingerprint:
        """The context this client was built for."""
        return ContextFingerprint(self._chain_id, self.account, self._evaluator.address)

    def _current(self) -> ContextFingerprint:
        if self._context_provider is not None:
            return self._context_provider()
        return self.fingerprint()

    def _is_stale(self, captured: ContextFingerprint) -> bool:
        return captured != self._current()

    def _set_message(self, message: str) -> str:
        self.message = message
        logger.debug("[%s] %s", self.account, message)
        return message

    @property
    def can_decrypt(self) -> bool:
        return (
            not self.is_decrypting
            and self.verdict_handle != ZERO_HANDLE
            and (self.clear_verdict is None or self.clear_verdict[0] != self.verdict_handle)
        )

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def submit_metrics(self, metrics: HealthMetrics) -> ActionResult:
        """Encrypt and submit ``metrics``, then evaluate and refresh the handle."""
        if self.is_submitting:
            return ActionResult("busy", self.message)

        captured = self.fingerprint()
        self.is_submitting = True
        self._set_message("Encrypting metrics...")
        try:
            enc = EncryptedInput(self._coprocessor, captured.contract_address, captured.account)
            for value in metrics.scaled():
                enc.add32(value)
            bundle = enc.encrypt()

            if self._is_stale(captured):
                return ActionResult("cancelled", self._set_message("Operation cancelled"))

            self._set_message("Submitting transaction...")
            self._evaluator.submit_encrypted_metrics(
                captured.account,
                bundle.handles,
                bundle.input_proof,
            )
            self._set_message("Health metrics submitted and encrypted successfully!")

            if self._is_stale(captured):
                return ActionResult("cancelled", self.message)
        except _ACTION_ERRORS as exc:
            return ActionResult("error", self._set_message(f"Error: {exc}"))
        finally:
            self.is_submitting = False

        return await self.evaluate()

    async def evaluate(self) -> ActionResult:
        """Recompute this user's verdict and refresh the stored handle."""
        if self.is_evaluating:
            return ActionResult("busy", self.message)

        captured = self.fingerprint()
        self.is_evaluating = True
        self._set_message("Evaluating eligibility...")
        try:
            self._evaluator.evaluate(captured.account, caller=captured.account)
            self._set_message("Eligibility evaluation completed successfully!")

            if self._is_stale(captured):
                return ActionResult("cancelled", self.message)
        except _ACTION_ERRORS as exc:
            return ActionResult("error", self._set_message(f"Evaluation error: {exc}"))
        finally:
            self.is_evaluating = False

        return await self.refresh_verdict_handle()

    async def refresh_verdict_handle(self) -> ActionResult:
        """Read the current verdict handle for this user."""
        captured = self.fingerprint()
        try:
            handle = self._evaluator.get_verdict_handle(captured.account)
        except _ACTION_ERRORS as exc:
            return ActionResult("error", self._set_message(f"Failed to get proof: {exc}"))

        if self._is_stale(captured):
            return ActionResult("cancelled", self.message)
        self.verdict_handle = handle
        return ActionResult("ok", self.message, handle)

    async def decrypt_verdict(self) -> ActionResult:
        """Decrypt the current verdict handle; 1 means eligible."""
        if self.is_decrypting:
            return ActionResult("busy", self.message)

        handle = self.verdict_handle
        if handle == ZERO_HANDLE:
            return ActionResult("unavailable", self._set_message("No proof to decrypt"))
        if self.clear_verdict is not None and self.clear_verdict[0] == handle:
            return ActionResult("ok", self.message, self.clear_verdict[1])

        captured = self.fingerprint()
        self.is_decrypting = True
        self._set_message("Starting decryption...")
        try:
            signature = self._signatures.load_or_sign(
                self._keypair, [captured.contract_address], now=self._clock()
            )

            if self._is_stale(captured):
                return ActionResult(
                    "cancelled",
                    self._set_message("Operation cancelled due to network or account change"),
                )

            self._set_message("Decrypting your eligibility result...")
            clear = self._acl.authorize_decrypt(
                [handle],
                captured.account,
                signature,
                contract_address=captured.contract_address,
                now=self._clock(),
            )

            if self._is_stale(captured):
                return ActionResult("cancelled", self.message)
        except _ACTION_ERRORS as exc:
            return ActionResult("error", self._set_message(f"Decryption error: {exc}"))
        finally:
            self.is_decrypting = False

        self.clear_verdict = (handle, clear[handle])
        self._set_message(
            "Decryption completed successfully! Your eligibility status has been determined."
        )
        return ActionResult("ok", self.message, clear[handle])
