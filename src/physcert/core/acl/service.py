"""Access Control Service: who may decrypt which handle.

Grants are ``(handle, principal)`` rows in the ledger. They are idempotent
and monotonic: there is no revoke operation, so once a principal may
decrypt a handle it always may.

Disclosure goes through :meth:`AccessControlService.authorize_decrypt`,
which checks a signed user request against the grant table before asking
the coprocessor for plaintext. Every refusal looks the same to the caller.

Writes made on a principal's behalf go through
:meth:`AccessControlService.authenticate_request`: the principal signs the
exact request, and each signed request is accepted once.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

from physcert.core.acl.signature import DecryptionSignature, RequestSignature
from physcert.core.fhe import FheError, HomomorphicValueService
from physcert.core.fhe.handles import ZERO_HANDLE, is_handle, normalize_address, short
from physcert.core.storage.database import LedgerDatabase

logger = logging.getLogger(__name__)


class AccessControlError(Exception):
    """Base class for access-control failures."""


class AccessDenied(AccessControlError):
    """Raised when a principal lacks a grant or did not sign its request."""


class DecryptionDenied(AccessControlError):
    """Raised when a user decryption request is refused."""

    def __init__(self) -> None:
        super().__init__("request denied")


class AccessControlService:
    """Grant bookkeeping and decrypt authorization.

    Usage::

        acl = AccessControlService(db, fhe)
        acl.grant(handle, subject)
        clear = acl.authorize_decrypt([handle], subject, signature,
                                      contract_address=evaluator_address)
    """

    def __init__(
        self,
        database: LedgerDatabase,
        fhe: HomomorphicValueService,
        *,
        max_duration_days: int = 365,
        request_max_age_seconds: int = 300,
    ) -> None:
        self._db = database
        self._fhe = fhe
        self._max_duration_days = max_duration_days
        self._request_max_age_seconds = request_max_age_seconds

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def grant(self, handle: str, principal: str) -> None:
        """Allow ``principal`` to decrypt ``handle``. Safe to repeat."""
        if not is_handle(handle) or handle == ZERO_HANDLE:
            raise AccessControlError(f"Cannot grant on handle {handle!r}")
        principal = normalize_address(principal)
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO acl_grants (handle, principal, granted_at) VALUES (?, ?, ?)",
                (handle, principal, datetime.now(timezone.utc).isoformat()),
            )
        logger.debug("Granted %s to %s", short(handle), principal)

    def is_allowed(self, handle: str, principal: str) -> bool:
        try:
            principal = normalize_address(principal)
        except ValueError:
            return False
        row = self._db.query_one(
            "SELECT 1 FROM acl_grants WHERE handle = ? AND principal = ?",
            (handle, principal),
        )
        return row is not None

    def require_allowed(self, handle: str, principal: str) -> None:
        """Raise :class:`AccessDenied` unless ``principal`` holds a grant.

        The zero handle needs no grant: it carries no ciphertext.
        """
        if handle == ZERO_HANDLE:
            return
        if not self.is_allowed(handle, principal):
            raise AccessDenied(f"{principal} has no grant on {short(handle)}")

    def grants_for(self, principal: str) -> list[str]:
        """Handles ``principal`` may decrypt, oldest grant first."""
        principal = normalize_address(principal)
        rows = self._db.query_all(
            "SELECT handle FROM acl_grants WHERE principal = ? ORDER BY granted_at, rowid",
            (principal,),
        )
        return [row[0] for row in rows]

    def count_grants(self) -> int:
        row = self._db.query_one("SELECT COUNT(*) FROM acl_grants")
        return row[0]

    # ------------------------------------------------------------------
    # Request authentication
    # ------------------------------------------------------------------

    def authenticate_request(
        self,
        principal: str,
        signature: RequestSignature,
        action: str,
        fields: dict[str, Any],
        *,
        now: float | None = None,
    ) -> str:
        """Confirm ``principal`` itself signed this exact request.

        The signature must come from the key owning ``principal``, cover
        ``action`` and ``fields`` unchanged, be issued within the freshness
        window, and never have been used before. A request that passes is
        recorded so it cannot be replayed.

        Returns:
            The normalized principal address.

        Raises:
            AccessDenied: On any failed check. The cause is only logged.
        """
        current = time.time() if now is None else now
        with self._db.transaction() as conn:
            reason = self._request_refusal_reason(principal, signature, action, fields, current)
            if reason is not None:
                logger.debug("Request %s refused for %s: %s", action, principal, reason)
                raise AccessDenied("request not authorized")
            principal = normalize_address(principal)
            conn.execute(
                "INSERT INTO used_request_signatures (signature, principal, action) VALUES (?, ?, ?)",
                (signature.signature, principal, action),
            )
        return principal

    def _request_refusal_reason(
        self,
        principal: str,
        signature: RequestSignature,
        action: str,
        fields: dict[str, Any],
        now: float,
    ) -> str | None:
        try:
            principal = normalize_address(principal)
        except ValueError as exc:
            return str(exc)
        if signature.signer != principal:
            return "signature belongs to another principal"
        if not signature.verify(action, fields):
            return "invalid signature"
        if abs(now - signature.issued_at) > self._request_max_age_seconds:
            return "request outside its freshness window"
        used = self._db.query_one(
            "SELECT 1 FROM used_request_signatures WHERE signature = ?",
            (signature.signature,),
        )
        if used is not None:
            return "request already used"
        return None

    # ------------------------------------------------------------------
    # Disclosure
    # ------------------------------------------------------------------

    def authorize_decrypt(
        self,
        handles: list[str],
        requester: str,
        signature: DecryptionSignature,
        *,
        contract_address: str,
        now: float | None = None,
    ) -> dict[str, int]:
        """Decrypt ``handles`` for ``requester`` if every check passes.

        The signature must verify, belong to ``requester``, be inside its
        validity window, not exceed the maximum duration, and name
        ``contract_address``. Both the requester and the contract must hold
        a grant on every handle.

        Returns:
            Mapping of handle to plaintext.

        Raises:
            DecryptionDenied: On any failed check. The cause is only logged.
        """
        reason = self._refusal_reason(handles, requester, signature, contract_address, now)
        if reason is not None:
            logger.debug("Decryption denied for %s: %s", requester, reason)
            raise DecryptionDenied()

        try:
            clear = {handle: self._fhe.decrypt(handle) for handle in handles}
        except FheError as exc:
            logger.debug("Decryption denied for %s: %s", requester, exc)
            raise DecryptionDenied() from exc
        logger.info("Decrypted %d handle(s) for %s", len(clear), requester)
        return clear

    def _refusal_reason(
        self,
        handles: list[str],
        requester: str,
        signature: DecryptionSignature,
        contract_address: str,
        now: float | None,
    ) -> str | None:
        if not handles:
            return "no handles requested"
        try:
            requester = normalize_address(requester)
            contract = normalize_address(contract_address)
        except ValueError as exc:
            return str(exc)
        if signature.user_address.lower() != requester:
            return "signature belongs to another principal"
        if not signature.verify():
            return "invalid signature"
        if signature.duration_days > self._max_duration_days:
            return "signature validity window too long"
        if not signature.is_valid_at(now):
            return "signature outside its validity window"
        if not signature.covers(contract):
            return "contract not covered by signature"
        for handle in handles:
            if not self.is_allowed(handle, requester):
                return f"requester has no grant on {short(handle)}"
            if not self.is_allowed(handle, contract):
                return f"contract has no grant on {short(handle)}"
        return None
