"""Fernet sealing of ciphertext plaintexts held by the simulated coprocessor.

Each stored ciphertext row carries a Fernet token whose payload binds the
plaintext to its handle and FHE type, so a token copied onto another row
fails to unseal. Fernet tokens embed a random IV, so sealing the same value
twice never yields the same bytes.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Raised when sealing/unsealing fails."""


class FieldEncryptor:
    """Seals and unseals handle-bound values with Fernet symmetric encryption.

    Usage::

        encryptor = FieldEncryptor(key="...")
        token = encryptor.seal("0xab...", "euint32", 72)
        encryptor.unseal("0xab...", "euint32", token)  # 72
    """

    def __init__(self, key: str) -> None:
        """Initialize with a Fernet key.

        Args:
            key: A valid Fernet key string. Generate with
                 :meth:`generate_key`.

        Raises:
            EncryptionError: If the key is empty or invalid.
        """
        if not key or not key.strip():
            raise EncryptionError("Encryption key must not be empty")
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as exc:
            raise EncryptionError(f"Invalid encryption key: {exc}") from exc

    def seal(self, handle: str, fhe_type: str, value: Any) -> str:
        """Seal a JSON-serializable value under ``handle``.

        Returns:
            Base64-encoded Fernet token as a string.

        Raises:
            EncryptionError: If serialization or encryption fails.
        """
        payload = {"h": handle, "t": fhe_type, "v": value}
        try:
            plaintext = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"Sealing failed: {exc}") from exc
        return self._fernet.encrypt(plaintext).decode("utf-8")

    def unseal(self, handle: str, fhe_type: str, token: str) -> Any:
        """Recover the value sealed under ``handle``.

        Raises:
            EncryptionError: If the token is invalid, was sealed with another
                key, or is bound to a different handle or type.
        """
        if not token:
            raise EncryptionError("Unsealing failed: empty token")
        try:
            payload = json.loads(self._fernet.decrypt(token.encode("utf-8")))
        except InvalidToken as exc:
            raise EncryptionError("Unsealing failed: invalid token or wrong key") from exc
        except ValueError as exc:
            raise EncryptionError(f"Unsealing failed: {exc}") from exc

        if payload.get("h") != handle or payload.get("t") != fhe_type:
            raise EncryptionError("Unsealing failed: token bound to another ciphertext")
        return payload.get("v")

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet key.

        Returns:
            A URL-safe base64-encoded 32-byte key as a string.
        """
        return Fernet.generate_key().decode("utf-8")
