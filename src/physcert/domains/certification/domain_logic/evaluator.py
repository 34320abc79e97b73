"""Eligibility Evaluator: encrypted metric intake, evaluation and queries.

Each state-changing call runs inside one ledger transaction: a submission
verifies its proof, replaces the caller's record, grants the new handles
and evaluates, and any failure along the way leaves no trace. Handles are
readable by anyone; only the Access Control Service decides who may turn
them into plaintext.
"""

from __future__ import annotations

import logging

from physcert.core.acl.service import AccessControlService
from physcert.core.fhe import HomomorphicValueService
from physcert.core.fhe.handles import ZERO_HANDLE, normalize_address, short
from physcert.core.storage.database import LedgerDatabase
from physcert.core.storage.models import METRIC_FIELDS, EncryptedMetricRecord
from physcert.core.storage.repository import CertificationRepository
from physcert.domains.certification.domain_logic.eligibility_formula import (
    compute_eligibility,
)

logger = logging.getLogger(__name__)


class SubmissionError(Exception):
    """Raised when a submission is structurally invalid."""


class EligibilityEvaluator:
    """Holds per-subject encrypted records and verdicts.

    Usage::

        evaluator = EligibilityEvaluator(db, fhe, acl, repo, address=contract)
        verdict = evaluator.submit_encrypted_metrics(user, bundle.handles, bundle.input_proof)
        evaluator.get_verdict_handle(user) == verdict
    """

    def __init__(
        self,
        database: LedgerDatabase,
        fhe: HomomorphicValueService,
        acl: AccessControlService,
        repository: CertificationRepository,
        *,
        address: str,
    ) -> None:
        self._db = database
        self._fhe = fhe
        self._acl = acl
        self._repo = repository
        self._address = normalize_address(address)

    @property
    def address(self) -> str:
        """The evaluator's own principal address."""
        return self._address

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def submit_encrypted_metrics(
        self, caller: str, handles: list[str], input_proof: str
    ) -> str:
        """Replace ``caller``'s record with six encrypted metrics and evaluate.

        Args:
            caller: Submitting principal; becomes the record's subject.
            handles: Six external handles in :data:`METRIC_FIELDS` order.
            input_proof: One proof covering all six handles, bound to the
                caller and to this evaluator.

        Returns:
            Handle of the freshly computed verdict.

        Raises:
            SubmissionError: If the caller or handle count is malformed.
            InputProofError: If the proof does not validate. Nothing is written.
        """
        try:
            caller = normalize_address(caller)
        except ValueError as exc:
            raise SubmissionError(str(exc)) from exc
        if len(handles) != len(METRIC_FIELDS):
            raise SubmissionError(
                f"Expected {len(METRIC_FIELDS)} encrypted metrics, got {len(handles)}"
            )

        with self._db.transaction():
            decoded = self._fhe.decode_external_batch(
                list(handles), input_proof, contract=self._address, user=caller
            )
            record = self._repo.save_record(EncryptedMetricRecord.from_handles(caller, decoded))
            for handle in record.handles():
                self._acl.grant(handle, self._address)
                self._acl.grant(handle, caller)
            verdict = self._evaluate(caller)

        logger.info("Accepted encrypted metrics from %s", caller)
        return verdict

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, subject: str, *, caller: str | None = None) -> str:
        """Recompute ``subject``'s verdict from their latest record.

        Anyone may call this. A subject without a record gets an encrypted 0.

        Returns:
            Handle of the new verdict.
        """
        with self._db.transaction():
            verdict = self._evaluate(subject)
        if caller is not None:
            logger.debug("Evaluation for %s requested by %s", subject, caller)
        return verdict

    def _evaluate(self, subject: str) -> str:
        record = self._repo.get_record(subject) or EncryptedMetricRecord.empty(subject)
        for handle in record.handles():
            self._acl.require_allowed(handle, self._address)

        verdict_handle = compute_eligibility(self._fhe, record)
        verdict = self._repo.save_verdict(subject, verdict_handle)
        self._acl.grant(verdict_handle, self._address)
        self._acl.grant(verdict_handle, verdict.subject)
        logger.info("Evaluated eligibility for %s -> %s", verdict.subject, short(verdict_handle))
        return verdict_handle

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_verdict_handle(self, subject: str) -> str:
        """Current verdict handle, or :data:`ZERO_HANDLE` if never evaluated."""
        verdict = self._repo.get_verdict(subject)
        return verdict.handle if verdict is not None else ZERO_HANDLE

    def get_metric_handles(self, subject: str) -> dict[str, str]:
        """The six current metric handles (all zero if nothing was submitted)."""
        record = self._repo.get_record(subject) or EncryptedMetricRecord.empty(subject)
        return record.as_dict()
