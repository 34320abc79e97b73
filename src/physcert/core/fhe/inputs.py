"""Client-side encrypted input builder."""

from __future__ import annotations

from physcert.core.fhe import PlaintextRangeError
from physcert.core.fhe.coprocessor import EncryptedInputBundle, SimulatedCoprocessor
from physcert.core.fhe.handles import UINT32_MAX, FheType


class EncryptedInput:
    """Collects plaintexts for one contract/user pair, then encrypts them at once.

    Usage::

        enc = EncryptedInput(fhe, contract_address, user_address)
        enc.add32(75).add32(2250)
        bundle = enc.encrypt()  # bundle.handles, bundle.input_proof
    """

    def __init__(self, coprocessor: SimulatedCoprocessor, contract: str, user: str) -> None:
        self._coprocessor = coprocessor
        self._contract = contract
        self._user = user
        self._values: list[tuple[int, FheType]] = []
        self._sealed = False

    def __len__(self) -> int:
        return len(self._values)

    def add32(self, value: int) -> EncryptedInput:
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= UINT32_MAX:
            raise PlaintextRangeError(f"{value!r} does not fit in uint32")
        return self._add(value, FheType.EUINT32)

    def add_bool(self, flag: bool) -> EncryptedInput:
        return self._add(1 if flag else 0, FheType.EBOOL)

    def _add(self, value: int, fhe_type: FheType) -> EncryptedInput:
        if self._sealed:
            raise RuntimeError("EncryptedInput already encrypted")
        self._values.append((value, fhe_type))
        return self

    def encrypt(self) -> EncryptedInputBundle:
        """Encrypt every collected value under one joint proof."""
        if not self._values:
            raise ValueError("No values added to EncryptedInput")
        self._sealed = True
        return self._coprocessor.register_inputs(
            self._values, contract=self._contract, user=self._user
        )
