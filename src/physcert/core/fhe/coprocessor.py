"""Simulated FHE coprocessor backed by the ledger database.

Stands in for the external coprocessor network when running locally and in
tests. Handles point at Fernet-sealed plaintexts in the ``ciphertexts``
table; each operation unseals its operands, computes the uint32/boolean
result and seals it under a fresh random handle. Callers only ever see
handles, and every result is a new ciphertext even when its plaintext
repeats.

Input proofs are HMAC-SHA256 tags over the contract, the user and the
ordered list of input handles, so a single proof covers a whole batch.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from physcert.core.fhe import (
    FheTypeError,
    InputProofError,
    PlaintextRangeError,
    UnknownHandleError,
)
from physcert.core.fhe.handles import (
    UINT32_MAX,
    ZERO_HANDLE,
    FheType,
    is_handle,
    new_handle,
    normalize_address,
    short,
)
from physcert.core.storage.database import LedgerDatabase
from physcert.core.storage.encryption import EncryptionError, FieldEncryptor

logger = logging.getLogger(__name__)


@dataclass
class EncryptedInputBundle:
    """Client-encrypted inputs plus the single proof binding them."""

    handles: list[str] = field(default_factory=list)
    input_proof: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"handles": list(self.handles), "input_proof": self.input_proof}


def _canonical(data: Any) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


class SimulatedCoprocessor:
    """In-process implementation of :class:`HomomorphicValueService`.

    Usage::

        db = LedgerDatabase(":memory:")
        db.initialize()
        fhe = SimulatedCoprocessor(db, FieldEncryptor.generate_key())
        a = fhe.encrypt(72)
        flag = fhe.lt(a, fhe.encrypt(120))
    """

    def __init__(self, database: LedgerDatabase, key: str) -> None:
        self._db = database
        self._sealer = FieldEncryptor(key)
        self._proof_key = hmac.new(
            key.encode("utf-8"), b"physcert-input-proof", hashlib.sha256
        ).digest()

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _store(self, value: int, fhe_type: FheType) -> str:
        handle = new_handle()
        sealed = self._sealer.seal(handle, fhe_type.value, value)
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO ciphertexts (handle, fhe_type, sealed) VALUES (?, ?, ?)",
                (handle, fhe_type.value, sealed),
            )
        return handle

    def _load(self, handle: str) -> tuple[int, FheType | None]:
        if handle == ZERO_HANDLE:
            return 0, None
        if not is_handle(handle):
            raise UnknownHandleError(f"Malformed handle: {handle!r}")

        row = self._db.query_one(
            "SELECT fhe_type, sealed FROM ciphertexts WHERE handle = ?", (handle,)
        )
        if row is None:
            raise UnknownHandleError(f"Unknown handle: {short(handle)}")

        try:
            value = self._sealer.unseal(handle, row["fhe_type"], row["sealed"])
        except EncryptionError as exc:
            raise UnknownHandleError(f"Unreadable ciphertext: {short(handle)}") from exc
        return int(value), FheType(row["fhe_type"])

    def _operand(self, handle: str, expected: FheType) -> int:
        value, fhe_type = self._load(handle)
        if fhe_type is not None and fhe_type is not expected:
            raise FheTypeError(
                f"Expected {expected.value} operand, got {fhe_type.value} ({short(handle)})"
            )
        return value

    # ------------------------------------------------------------------
    # Trivial encryption
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: int, fhe_type: FheType = FheType.EUINT32) -> str:
        """Encrypt a plaintext constant under fresh randomness.

        Raises:
            PlaintextRangeError: If the value does not fit ``fhe_type``.
        """
        if isinstance(plaintext, bool) or not isinstance(plaintext, int):
            raise PlaintextRangeError(f"Plaintext must be an int, got {type(plaintext).__name__}")
        upper = 1 if fhe_type is FheType.EBOOL else UINT32_MAX
        if not 0 <= plaintext <= upper:
            raise PlaintextRangeError(f"Plaintext out of range for {fhe_type.value}")
        return self._store(plaintext, fhe_type)

    def as_ebool(self, flag: bool) -> str:
        return self.encrypt(1 if flag else 0, FheType.EBOOL)

    # ------------------------------------------------------------------
    # User inputs
    # ------------------------------------------------------------------

    def _proof_tag(self, contract: str, user: str, handles: list[str]) -> str:
        message = _canonical({"contract": contract, "handles": handles, "user": user})
        return hmac.new(self._proof_key, message, hashlib.sha256).hexdigest()

    def register_inputs(
        self, values: list[tuple[int, FheType]], *, contract: str, user: str
    ) -> EncryptedInputBundle:
        """Encrypt user inputs and issue one proof covering all of them."""
        contract = normalize_address(contract)
        user = normalize_address(user)
        with self._db.transaction():
            handles = [self.encrypt(value, fhe_type) for value, fhe_type in values]
        envelope = {
            "contract": contract,
            "user": user,
            "handles": handles,
            "tag": self._proof_tag(contract, user, handles),
        }
        proof = "0x" + _canonical(envelope).hex()
        logger.debug("Registered %d encrypted inputs for %s", len(handles), user)
        return EncryptedInputBundle(handles=handles, input_proof=proof)

    def _open_proof(self, proof: str) -> dict[str, Any]:
        if not isinstance(proof, str) or not proof.startswith("0x"):
            raise InputProofError("Malformed input proof")
        try:
            envelope = json.loads(bytes.fromhex(proof[2:]))
        except ValueError as exc:
            raise InputProofError("Malformed input proof") from exc
        if not isinstance(envelope, dict) or not isinstance(envelope.get("handles"), list):
            raise InputProofError("Malformed input proof")
        return envelope

    def decode_external_batch(
        self, external_handles: list[str], proof: str, *, contract: str, user: str
    ) -> list[str]:
        """Validate a proof jointly against every handle it must cover.

        The proof must have been issued for exactly this ordered handle list,
        this contract and this user.

        Raises:
            InputProofError: If any binding does not hold.
        """
        envelope = self._open_proof(proof)
        try:
            contract = normalize_address(contract)
            user = normalize_address(user)
        except ValueError as exc:
            raise InputProofError(str(exc)) from exc

        expected = self._proof_tag(
            str(envelope.get("contract", "")),
            str(envelope.get("user", "")),
            envelope["handles"],
        )
        if not hmac.compare_digest(expected, str(envelope.get("tag", ""))):
            raise InputProofError("Input proof signature mismatch")
        if envelope.get("contract") != contract:
            raise InputProofError("Input proof bound to another contract")
        if envelope.get("user") != user:
            raise InputProofError("Input proof bound to another user")
        if list(external_handles) != envelope["handles"]:
            raise InputProofError("Input proof does not cover the submitted handles")

        for handle in external_handles:
            self._load(handle)
        return list(external_handles)

    def decode_external(
        self, external_handle: str, proof: str, *, contract: str, user: str
    ) -> str:
        """Validate a single input whose proof was issued for it alone."""
        return self.decode_external_batch(
            [external_handle], proof, contract=contract, user=user
        )[0]

    # ------------------------------------------------------------------
    # Comparisons (uint32 -> ebool)
    # ------------------------------------------------------------------

    def _compare(self, a: str, b: str, op) -> str:
        left = self._operand(a, FheType.EUINT32)
        right = self._operand(b, FheType.EUINT32)
        return self._store(1 if op(left, right) else 0, FheType.EBOOL)

    def ge(self, a: str, b: str) -> str:
        return self._compare(a, b, lambda x, y: x >= y)

    def gt(self, a: str, b: str) -> str:
        return self._compare(a, b, lambda x, y: x > y)

    def le(self, a: str, b: str) -> str:
        return self._compare(a, b, lambda x, y: x <= y)

    def lt(self, a: str, b: str) -> str:
        return self._compare(a, b, lambda x, y: x < y)

    def eq(self, a: str, b: str) -> str:
        return self._compare(a, b, lambda x, y: x == y)

    def ne(self, a: str, b: str) -> str:
        return self._compare(a, b, lambda x, y: x != y)

    # ------------------------------------------------------------------
    # Boolean combinators
    # ------------------------------------------------------------------

    def and_(self, a: str, b: str) -> str:
        left = self._operand(a, FheType.EBOOL)
        right = self._operand(b, FheType.EBOOL)
        return self._store(left & right, FheType.EBOOL)

    def select(self, condition: str, if_true: str, if_false: str) -> str:
        """Encrypted ``condition ? if_true : if_false``.

        Both branches are read whatever the condition, and the result is a
        fresh ciphertext of the branches' type.
        """
        flag = self._operand(condition, FheType.EBOOL)
        true_value, true_type = self._load(if_true)
        false_value, false_type = self._load(if_false)
        if true_type is not None and false_type is not None and true_type is not false_type:
            raise FheTypeError("select branches must share a type")
        result_type = true_type or false_type or FheType.EUINT32
        return self._store(true_value if flag else false_value, result_type)

    # ------------------------------------------------------------------
    # Introspection / disclosure
    # ------------------------------------------------------------------

    def fhe_type_of(self, handle: str) -> FheType | None:
        return self._load(handle)[1]

    def decrypt(self, handle: str) -> int:
        """Reveal a plaintext. Only the Access Control Service calls this."""
        return self._load(handle)[0]

    def count_ciphertexts(self) -> int:
        row = self._db.query_one("SELECT COUNT(*) FROM ciphertexts")
        return row[0]
