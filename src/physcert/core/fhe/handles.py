"""Ciphertext handles and FHE value types."""

from __future__ import annotations

import re
import secrets
from enum import Enum

# Uninitialized value; the coprocessor reads it as the trivial encryption of 0.
ZERO_HANDLE = "0x" + "00" * 32

UINT32_MAX = 2**32 - 1

_HANDLE_RE = re.compile(r"^0x[0-9a-f]{64}$")


class FheType(str, Enum):
    """Encrypted value types supported by the coprocessor."""

    EBOOL = "ebool"
    EUINT32 = "euint32"


def new_handle() -> str:
    """Return a fresh random handle."""
    return "0x" + secrets.token_hex(32)


def is_handle(value: object) -> bool:
    """Whether ``value`` is a well-formed handle string."""
    return isinstance(value, str) and bool(_HANDLE_RE.match(value))


def short(handle: str) -> str:
    """Truncated form for log lines."""
    return f"{handle[:10]}…" if len(handle) > 10 else handle


_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")


def normalize_address(address: str) -> str:
    """Lower-case a ``0x`` principal address, rejecting malformed input.

    Raises:
        ValueError: If ``address`` is not 20 hex-encoded bytes.
    """
    candidate = address.strip().lower() if isinstance(address, str) else ""
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Malformed address: {address!r}")
    return candidate
