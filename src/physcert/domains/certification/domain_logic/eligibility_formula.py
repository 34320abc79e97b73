"""The encrypted eligibility predicate.

Every sub-check is computed on every evaluation and combined with encrypted
AND, so the sequence of coprocessor calls is the same whatever the inputs
are. Nothing here branches on a secret value.

Thresholds are plaintext constants, encrypted afresh on each evaluation.
"""

from __future__ import annotations

from physcert.core.fhe import HomomorphicValueService
from physcert.core.fhe.handles import FheType
from physcert.core.storage.models import EncryptedMetricRecord

# BMI is fixed-point ×100: 18.50–27.00 kg/m².
BMI_MIN = 1850
BMI_MAX = 2700
HEART_RATE_MAX_EXCLUSIVE = 120
LUNG_CAPACITY_MIN = 60
BLOOD_OXYGEN_MIN = 95
SYSTOLIC_MAX_EXCLUSIVE = 140
DIASTOLIC_MAX_EXCLUSIVE = 90


def compute_eligibility(fhe: HomomorphicValueService, record: EncryptedMetricRecord) -> str:
    """Evaluate the eligibility formula over ``record``.

    Returns:
        Handle of an ``ebool`` that is 1 when the subject is eligible.
    """
    def const(value: int) -> str:
        return fhe.encrypt(value, FheType.EUINT32)

    bmi_valid = fhe.and_(
        fhe.ge(record.bmi, const(BMI_MIN)),
        fhe.le(record.bmi, const(BMI_MAX)),
    )
    heart_rate_valid = fhe.lt(record.heart_rate, const(HEART_RATE_MAX_EXCLUSIVE))
    lung_capacity_valid = fhe.ge(record.lung_capacity, const(LUNG_CAPACITY_MIN))
    blood_oxygen_valid = fhe.ge(record.blood_oxygen, const(BLOOD_OXYGEN_MIN))
    bp_valid = fhe.and_(
        fhe.lt(record.blood_pressure_systolic, const(SYSTOLIC_MAX_EXCLUSIVE)),
        fhe.lt(record.blood_pressure_diastolic, const(DIASTOLIC_MAX_EXCLUSIVE)),
    )
    # No presence flag: a zero BMI ciphertext reads as "no record".
    record_present = fhe.ne(record.bmi, const(0))

    eligible = record_present
    for check in (bmi_valid, heart_rate_valid, lung_capacity_valid, blood_oxygen_valid, bp_valid):
        eligible = fhe.and_(eligible, check)

    return fhe.select(eligible, fhe.as_ebool(True), fhe.as_ebool(False))
