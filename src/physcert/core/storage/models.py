"""Data models for the ledger persistence layer."""

from __future__ import annotations

from dataclasses import dataclass

from physcert.core.fhe.handles import ZERO_HANDLE

# Submission order of the six encrypted metrics.
METRIC_FIELDS: tuple[str, ...] = (
    "heart_rate",
    "bmi",
    "blood_pressure_systolic",
    "blood_pressure_diastolic",
    "lung_capacity",
    "blood_oxygen",
)


@dataclass
class EncryptedMetricRecord:
    """One subject's encrypted health metrics.

    Every field is an opaque ``euint32`` handle. ``bmi`` is fixed-point ×100.
    A resubmission replaces all six handles at once.
    """

    subject: str
    heart_rate: str = ZERO_HANDLE
    bmi: str = ZERO_HANDLE
    blood_pressure_systolic: str = ZERO_HANDLE
    blood_pressure_diastolic: str = ZERO_HANDLE
    lung_capacity: str = ZERO_HANDLE
    blood_oxygen: str = ZERO_HANDLE
    updated_at: str = ""

    @classmethod
    def empty(cls, subject: str) -> EncryptedMetricRecord:
        """The record an unknown subject reads as: every field uninitialized."""
        return cls(subject=subject)

    @classmethod
    def from_handles(cls, subject: str, handles: list[str], updated_at: str = "") -> EncryptedMetricRecord:
        if len(handles) != len(METRIC_FIELDS):
            raise ValueError(
                f"Expected {len(METRIC_FIELDS)} metric handles, got {len(handles)}"
            )
        return cls(subject=subject, updated_at=updated_at, **dict(zip(METRIC_FIELDS, handles)))

    def handles(self) -> list[str]:
        """The six handles in submission order."""
        return [getattr(self, name) for name in METRIC_FIELDS]

    def as_dict(self) -> dict[str, str]:
        return {name: getattr(self, name) for name in METRIC_FIELDS}


@dataclass
class EligibilityVerdict:
    """The current encrypted 0/1 eligibility result for a subject."""

    subject: str
    handle: str
    evaluated_at: str = ""
