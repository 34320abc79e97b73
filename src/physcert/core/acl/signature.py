"""User decryption and request signatures.

A user asking for plaintext signs a statement naming the contracts whose
handles they want decrypted and a validity window. The Access Control
Service checks that statement before disclosing anything. Requests that
write on a principal's behalf carry a :class:`RequestSignature` instead.

Signatures are Ed25519; a principal's address is derived from its public
key so the signature itself proves who is asking.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from physcert.core.fhe.handles import normalize_address

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400
DEFAULT_DURATION_DAYS = 365


class SignatureError(Exception):
    """Raised when a decryption signature cannot be built or parsed."""


def principal_address(public_key: bytes) -> str:
    """Derive the ``0x`` address owning an Ed25519 public key."""
    return "0x" + hashlib.sha256(public_key).hexdigest()[-40:]


class DecryptionKeypair:
    """An Ed25519 keypair identifying one principal."""

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._private_key = private_key
        self._public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    @classmethod
    def generate(cls) -> DecryptionKeypair:
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_private_hex(cls, private_hex: str) -> DecryptionKeypair:
        try:
            raw = bytes.fromhex(private_hex.removeprefix("0x"))
            return cls(Ed25519PrivateKey.from_private_bytes(raw))
        except ValueError as exc:
            raise SignatureError(f"Invalid private key: {exc}") from exc

    @property
    def public_key_hex(self) -> str:
        return self._public_bytes.hex()

    @property
    def address(self) -> str:
        return principal_address(self._public_bytes)

    def private_hex(self) -> str:
        raw = self._private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return raw.hex()

    def sign(self, message: bytes) -> str:
        return self._private_key.sign(message).hex()


@dataclass
class DecryptionSignature:
    """Signed authorization to decrypt handles of the listed contracts."""

    public_key: str
    user_address: str
    contract_addresses: list[str]
    start_timestamp: int
    duration_days: int
    signature: str = ""

    @staticmethod
    def _payload(
        public_key: str,
        user_address: str,
        contract_addresses: list[str],
        start_timestamp: int,
        duration_days: int,
    ) -> bytes:
        return json.dumps(
            {
                "contract_addresses": contract_addresses,
                "duration_days": duration_days,
                "public_key": public_key,
                "start_timestamp": start_timestamp,
                "user_address": user_address,
            },
            sort_keys=True,
            separators=(",", ":"),
        ).encode("utf-8")

    @classmethod
    def create(
        cls,
        keypair: DecryptionKeypair,
        contract_addresses: list[str],
        *,
        start_timestamp: int | None = None,
        duration_days: int = DEFAULT_DURATION_DAYS,
    ) -> DecryptionSignature:
        """Sign a decryption authorization with ``keypair``.

        Raises:
            SignatureError: If no contract is named or an address is malformed.
        """
        if not contract_addresses:
            raise SignatureError("At least one contract address is required")
        if duration_days < 1:
            raise SignatureError("duration_days must be at least 1")
        try:
            contracts = sorted({normalize_address(c) for c in contract_addresses})
        except ValueError as exc:
            raise SignatureError(str(exc)) from exc

        start = int(time.time()) if start_timestamp is None else int(start_timestamp)
        payload = cls._payload(
            keypair.public_key_hex, keypair.address, contracts, start, duration_days
        )
        return cls(
            public_key=keypair.public_key_hex,
            user_address=keypair.address,
            contract_addresses=contracts,
            start_timestamp=start,
            duration_days=duration_days,
            signature=keypair.sign(payload),
        )

    def verify(self) -> bool:
        """Check the signature and that the key owns ``user_address``."""
        try:
            public_bytes = bytes.fromhex(self.public_key)
            signature = bytes.fromhex(self.signature)
            key = Ed25519PublicKey.from_public_bytes(public_bytes)
        except ValueError:
            return False
        if principal_address(public_bytes) != self.user_address.lower():
            return False

        payload = self._payload(
            self.public_key,
            self.user_address.lower(),
            self.contract_addresses,
            self.start_timestamp,
            self.duration_days,
        )
        try:
            key.verify(signature, payload)
        except InvalidSignature:
            return False
        return True

    @property
    def expires_at(self) -> int:
        return self.start_timestamp + self.duration_days * SECONDS_PER_DAY

    def is_valid_at(self, now: float | None = None) -> bool:
        """Whether ``now`` falls inside ``[start, start + duration)``."""
        current = time.time() if now is None else now
        return self.start_timestamp <= current < self.expires_at

    def covers(self, contract_address: str) -> bool:
        return contract_address.lower() in self.contract_addresses

    def to_dict(self) -> dict[str, Any]:
        return {
            "public_key": self.public_key,
            "user_address": self.user_address,
            "contract_addresses": list(self.contract_addresses),
            "start_timestamp": self.start_timestamp,
            "duration_days": self.duration_days,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DecryptionSignature:
        try:
            return cls(
                public_key=str(data["public_key"]),
                user_address=str(data["user_address"]).lower(),
                contract_addresses=[str(c).lower() for c in data["contract_addresses"]],
                start_timestamp=int(data["start_timestamp"]),
                duration_days=int(data["duration_days"]),
                signature=str(data["signature"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise SignatureError(f"Malformed decryption signature: {exc}") from exc


@dataclass
class RequestSignature:
    """Proof that the holder of ``public_key`` sent one specific request.

    The signed payload names the action, the request fields and the time
    the request was issued. The signer's address is derived from the key,
    so a principal can only ever sign on their own behalf.
    """

    public_key: str
    issued_at: int
    signature: str = ""

    @staticmethod
    def _payload(public_key: str, action: str, fields: dict[str, Any], issued_at: int) -> bytes:
        return json.dumps(
            {
                "action": action,
                "fields": fields,
                "issued_at": issued_at,
                "public_key": public_key,
            },
            sort_keys=True,
            separators=(",", ":"),
        ).encode("utf-8")

    @classmethod
    def create(
        cls,
        keypair: DecryptionKeypair,
        action: str,
        fields: dict[str, Any],
        *,
        issued_at: int | None = None,
    ) -> RequestSignature:
        issued = int(time.time()) if issued_at is None else int(issued_at)
        payload = cls._payload(keypair.public_key_hex, action, fields, issued)
        return cls(
            public_key=keypair.public_key_hex,
            issued_at=issued,
            signature=keypair.sign(payload),
        )

    @property
    def signer(self) -> str:
        """Address owning ``public_key``, or "" if the key is malformed."""
        try:
            return principal_address(bytes.fromhex(self.public_key))
        except ValueError:
            return ""

    def verify(self, action: str, fields: dict[str, Any]) -> bool:
        """Check the signature covers exactly ``action`` and ``fields``."""
        try:
            key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(self.public_key))
            signature = bytes.fromhex(self.signature)
            payload = self._payload(self.public_key, action, fields, self.issued_at)
        except (TypeError, ValueError):
            return False
        try:
            key.verify(signature, payload)
        except InvalidSignature:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "public_key": self.public_key,
            "issued_at": self.issued_at,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RequestSignature:
        try:
            return cls(
                public_key=str(data["public_key"]),
                issued_at=int(data["issued_at"]),
                signature=str(data["signature"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise SignatureError(f"Malformed request signature: {exc}") from exc


class DecryptionSignatureStore:
    """Caches signatures per user and contract set.

    ``load_or_sign`` hands back a cached signature while it still verifies
    and is inside its validity window, and signs a new one otherwise.
    """

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    @staticmethod
    def _key(user_address: str, contract_addresses: list[str]) -> str:
        contracts = ",".join(sorted(c.lower() for c in contract_addresses))
        return f"{user_address.lower()}:{contracts}"

    def get(self, user_address: str, contract_addresses: list[str]) -> DecryptionSignature | None:
        raw = self._items.get(self._key(user_address, contract_addresses))
        if raw is None:
            return None
        return DecryptionSignature.from_dict(json.loads(raw))

    def put(self, signature: DecryptionSignature) -> None:
        key = self._key(signature.user_address, signature.contract_addresses)
        self._items[key] = json.dumps(signature.to_dict())

    def remove(self, user_address: str, contract_addresses: list[str]) -> None:
        self._items.pop(self._key(user_address, contract_addresses), None)

    def load_or_sign(
        self,
        keypair: DecryptionKeypair,
        contract_addresses: list[str],
        *,
        now: float | None = None,
        duration_days: int = DEFAULT_DURATION_DAYS,
    ) -> DecryptionSignature:
        cached = self.get(keypair.address, contract_addresses)
        if cached is not None and cached.verify() and cached.is_valid_at(now):
            return cached

        start = int(time.time() if now is None else now)
        signature = DecryptionSignature.create(
            keypair,
            contract_addresses,
            start_timestamp=start,
            duration_days=duration_days,
        )
        self.put(signature)
        logger.debug("Signed new decryption signature for %s", keypair.address)
        return signature
