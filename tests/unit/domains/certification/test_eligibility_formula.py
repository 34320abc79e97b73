"""Tests for the encrypted eligibility formula."""

from __future__ import annotations

from dataclasses import replace

import pytest

from physcert.core.fhe.handles import FheType
from physcert.core.storage.models import EncryptedMetricRecord
from physcert.domains.certification.domain_logic.eligibility_formula import compute_eligibility

SUBJECT = "0x" + "ab" * 20


@pytest.fixture
def evaluate_plain(coprocessor):
    """Return ``fn(metrics) -> int`` running the formula over encrypted metrics."""
    def _run(metrics) -> int:
        handles = [coprocessor.encrypt(v) for v in metrics.scaled()]
        record = EncryptedMetricRecord.from_handles(SUBJECT, handles)
        return coprocessor.decrypt(compute_eligibility(coprocessor, record))
    return _run


def test_eligible(evaluate_plain, eligible_metrics):
    assert evaluate_plain(eligible_metrics) == 1


def test_result_is_ebool(coprocessor, eligible_metrics):
    handles = [coprocessor.encrypt(v) for v in eligible_metrics.scaled()]
    verdict = compute_eligibility(coprocessor, EncryptedMetricRecord.from_handles(SUBJECT, handles))
    assert coprocessor.fhe_type_of(verdict) is FheType.EBOOL


@pytest.mark.parametrize(
    "field, value",
    [
        ("heart_rate", 130),
        ("heart_rate", 120),
        ("bmi", 18.49),
        ("bmi", 27.01),
        ("blood_pressure_systolic", 140),
        ("blood_pressure_diastolic", 90),
        ("lung_capacity", 59),
        ("blood_oxygen", 94),
    ],
)
def test_single_violation_fails(evaluate_plain, eligible_metrics, field, value):
    assert evaluate_plain(replace(eligible_metrics, **{field: value})) == 0


@pytest.mark.parametrize(
    "field, value",
    [
        ("heart_rate", 119),
        ("heart_rate", 0),
        ("bmi", 18.5),
        ("bmi", 27.0),
        ("blood_pressure_systolic", 139),
        ("blood_pressure_diastolic", 89),
        ("lung_capacity", 60),
        ("blood_oxygen", 95),
        ("blood_oxygen", 100),
    ],
)
def test_boundaries_pass(evaluate_plain, eligible_metrics, field, value):
    assert evaluate_plain(replace(eligible_metrics, **{field: value})) == 1


def test_zero_bmi_reads_as_absent(evaluate_plain, eligible_metrics):
    assert evaluate_plain(replace(eligible_metrics, bmi=0)) == 0


def test_empty_record_is_not_eligible(coprocessor):
    verdict = compute_eligibility(coprocessor, EncryptedMetricRecord.empty(SUBJECT))
    assert coprocessor.decrypt(verdict) == 0


def test_same_work_whatever_the_inputs(coprocessor, eligible_metrics):
    """Every check runs every time, so the number of ciphertexts is input-independent."""
    def ciphertexts_used(record) -> int:
        before = coprocessor.count_ciphertexts()
        compute_eligibility(coprocessor, record)
        return coprocessor.count_ciphertexts() - before

    eligible = EncryptedMetricRecord.from_handles(
        SUBJECT, [coprocessor.encrypt(v) for v in eligible_metrics.scaled()]
    )
    failing = EncryptedMetricRecord.from_handles(
        SUBJECT, [coprocessor.encrypt(v) for v in replace(eligible_metrics, heart_rate=200).scaled()]
    )
    empty = EncryptedMetricRecord.empty(SUBJECT)

    assert ciphertexts_used(eligible) == ciphertexts_used(failing) == ciphertexts_used(empty)
