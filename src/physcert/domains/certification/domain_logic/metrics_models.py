"""Plaintext health metrics as entered by a user, before encryption."""

from __future__ import annotations

from dataclasses import dataclass

from physcert.core.fhe.handles import UINT32_MAX

BMI_SCALE = 100


class MetricsValidationError(ValueError):
    """Raised when a metric cannot be encoded as an unsigned 32-bit integer."""


@dataclass(frozen=True)
class HealthMetrics:
    """A user's six health measurements.

    ``bmi`` is kg/m² as a float; it is scaled ×100 and rounded before
    encryption (22.5 -> 2250). The others are whole numbers.
    """

    heart_rate: int
    bmi: float
    blood_pressure_systolic: int
    blood_pressure_diastolic: int
    lung_capacity: int
    blood_oxygen: int

    @property
    def bmi_scaled(self) -> int:
        return round(self.bmi * BMI_SCALE)

    def scaled(self) -> list[int]:
        """The six uint32 values in submission order.

        Raises:
            MetricsValidationError: If any value is negative, non-integral
                or too large for uint32.
        """
        try:
            bmi = self.bmi_scaled
        except (TypeError, ValueError, OverflowError) as exc:
            raise MetricsValidationError(f"bmi must be a finite number, got {self.bmi!r}") from exc

        values = {
            "heart_rate": self.heart_rate,
            "bmi": bmi,
            "blood_pressure_systolic": self.blood_pressure_systolic,
            "blood_pressure_diastolic": self.blood_pressure_diastolic,
            "lung_capacity": self.lung_capacity,
            "blood_oxygen": self.blood_oxygen,
        }
        for name, value in values.items():
            if isinstance(value, bool) or not isinstance(value, int):
                raise MetricsValidationError(f"{name} must be a whole number, got {value!r}")
            if not 0 <= value <= UINT32_MAX:
                raise MetricsValidationError(f"{name} out of range: {value}")
        return list(values.values())
