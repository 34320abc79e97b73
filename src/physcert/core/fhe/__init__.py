"""Homomorphic Value Service: abstraction over the FHE coprocessor."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from physcert.core.fhe.handles import FheType


class FheError(Exception):
    """Base class for coprocessor failures."""


class UnknownHandleError(FheError):
    """Raised when a handle is malformed or names no stored ciphertext."""


class FheTypeError(FheError):
    """Raised when an operand has the wrong encrypted type."""


class PlaintextRangeError(FheError):
    """Raised when a plaintext does not fit the requested encrypted type."""


class InputProofError(FheError):
    """Raised when an input proof does not validate."""


@runtime_checkable
class HomomorphicValueService(Protocol):
    """Encrypted arithmetic capability consumed by the evaluator.

    Every operation takes and returns opaque handles; plaintext semantics
    are those of unsigned 32-bit integers and 0/1 booleans. No operation
    except :meth:`decrypt` reveals a plaintext, and only the Access Control
    Service calls that after authorizing the requester.
    """

    def encrypt(self, plaintext: int, fhe_type: FheType = FheType.EUINT32) -> str:
        """Trivially encrypt a plaintext constant."""
        ...

    def as_ebool(self, flag: bool) -> str:
        """Encrypt a boolean constant."""
        ...

    def decode_external_batch(
        self, external_handles: list[str], proof: str, *, contract: str, user: str
    ) -> list[str]:
        """Validate one proof jointly over several user-encrypted inputs."""
        ...

    def decode_external(
        self, external_handle: str, proof: str, *, contract: str, user: str
    ) -> str:
        """Validate a single user-encrypted input."""
        ...

    def ge(self, a: str, b: str) -> str:
        ...

    def le(self, a: str, b: str) -> str:
        ...

    def lt(self, a: str, b: str) -> str:
        ...

    def ne(self, a: str, b: str) -> str:
        ...

    def and_(self, a: str, b: str) -> str:
        ...

    def select(self, condition: str, if_true: str, if_false: str) -> str:
        ...

    def fhe_type_of(self, handle: str) -> FheType | None:
        """Stored type of ``handle``; ``None`` for the zero handle."""
        ...

    def decrypt(self, handle: str) -> int:
        """Reveal a plaintext. Reserved for the Access Control Service."""
        ...
