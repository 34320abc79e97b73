"""Signed write requests accepted by the certification tools.

A principal signs the fields built here with
:meth:`RequestSignature.create` and sends the signature alongside the
request. The tools rebuild the same fields from what they received, so any
change to the request invalidates the signature.
"""

from __future__ import annotations

from typing import Any

ENCRYPT_ACTION = "encrypt_metrics"
SUBMIT_ACTION = "submit_encrypted_metrics"


def encryption_request(contract: str, user: str, values: list[int]) -> dict[str, Any]:
    """Fields of a request to encrypt ``values`` (already scaled) for ``user``."""
    return {
        "contract": contract.lower(),
        "user": user.lower(),
        "values": list(values),
    }


def submission_request(
    contract: str, caller: str, handles: list[str], input_proof: str
) -> dict[str, Any]:
    """Fields of a request to submit ``handles`` as ``caller``'s record."""
    return {
        "caller": caller.lower(),
        "contract": contract.lower(),
        "handles": list(handles),
        "input_proof": input_proof,
    }
