"""Ledger repository: the two subject-keyed maps.

``metric_records`` holds each subject's latest encrypted record and
``verdicts`` its latest encrypted eligibility result. Both are last-write-
wins upserts with no history; nothing is ever deleted.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from physcert.core.fhe.handles import is_handle, normalize_address, short
from physcert.core.storage.database import LedgerDatabase
from physcert.core.storage.models import (
    METRIC_FIELDS,
    EligibilityVerdict,
    EncryptedMetricRecord,
)

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Raised when repository operations fail."""


class CertificationRepository:
    """Persistence for encrypted metric records and eligibility verdicts.

    Usage::

        db = LedgerDatabase(":memory:")
        db.initialize()
        repo = CertificationRepository(db)

        repo.save_record(record)
        repo.get_verdict("0xabc...")
    """

    def __init__(self, database: LedgerDatabase) -> None:
        self._db = database

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _subject(subject: str) -> str:
        try:
            return normalize_address(subject)
        except ValueError as exc:
            raise RepositoryError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Metric records
    # ------------------------------------------------------------------

    def save_record(self, record: EncryptedMetricRecord) -> EncryptedMetricRecord:
        """Replace the subject's record with ``record`` in full.

        Returns:
            The stored record, with normalized subject and ``updated_at`` set.
        """
        subject = self._subject(record.subject)
        handles = record.handles()
        bad = [name for name, h in zip(METRIC_FIELDS, handles) if not is_handle(h)]
        if bad:
            raise RepositoryError(f"Malformed handle for {', '.join(bad)}")

        updated_at = record.updated_at or self._now_iso()
        with self._db.transaction() as conn:
            conn.execute(
                """INSERT INTO metric_records (
                    subject, heart_rate, bmi, blood_pressure_systolic,
                    blood_pressure_diastolic, lung_capacity, blood_oxygen, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(subject) DO UPDATE SET
                    heart_rate = excluded.heart_rate,
                    bmi = excluded.bmi,
                    blood_pressure_systolic = excluded.blood_pressure_systolic,
                    blood_pressure_diastolic = excluded.blood_pressure_diastolic,
                    lung_capacity = excluded.lung_capacity,
                    blood_oxygen = excluded.blood_oxygen,
                    updated_at = excluded.updated_at""",
                (subject, *handles, updated_at),
            )
        logger.info("Saved metric record for %s", subject)
        return EncryptedMetricRecord.from_handles(subject, handles, updated_at)

    def get_record(self, subject: str) -> EncryptedMetricRecord | None:
        """Return the subject's current record, or None if never submitted."""
        row = self._db.query_one(
            "SELECT * FROM metric_records WHERE subject = ?", (self._subject(subject),)
        )
        if row is None:
            return None
        return self._row_to_record(row)

    def count_records(self) -> int:
        row = self._db.query_one("SELECT COUNT(*) FROM metric_records")
        return row[0]

    # ------------------------------------------------------------------
    # Verdicts
    # ------------------------------------------------------------------

    def save_verdict(self, subject: str, handle: str) -> EligibilityVerdict:
        """Overwrite the subject's verdict with ``handle``."""
        subject = self._subject(subject)
        if not is_handle(handle):
            raise RepositoryError(f"Malformed verdict handle: {handle!r}")

        evaluated_at = self._now_iso()
        with self._db.transaction() as conn:
            conn.execute(
                """INSERT INTO verdicts (subject, handle, evaluated_at) VALUES (?, ?, ?)
                   ON CONFLICT(subject) DO UPDATE SET
                       handle = excluded.handle,
                       evaluated_at = excluded.evaluated_at""",
                (subject, handle, evaluated_at),
            )
        logger.info("Saved verdict %s for %s", short(handle), subject)
        return EligibilityVerdict(subject=subject, handle=handle, evaluated_at=evaluated_at)

    def get_verdict(self, subject: str) -> EligibilityVerdict | None:
        """Return the subject's current verdict, or None if never evaluated."""
        row = self._db.query_one(
            "SELECT subject, handle, evaluated_at FROM verdicts WHERE subject = ?",
            (self._subject(subject),),
        )
        if row is None:
            return None
        return EligibilityVerdict(
            subject=row["subject"], handle=row["handle"], evaluated_at=row["evaluated_at"]
        )

    def count_verdicts(self) -> int:
        row = self._db.query_one("SELECT COUNT(*) FROM verdicts")
        return row[0]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_record(row: Any) -> EncryptedMetricRecord:
        return EncryptedMetricRecord(
            subject=row["subject"],
            heart_rate=row["heart_rate"],
            bmi=row["bmi"],
            blood_pressure_systolic=row["blood_pressure_systolic"],
            blood_pressure_diastolic=row["blood_pressure_diastolic"],
            lung_capacity=row["lung_capacity"],
            blood_oxygen=row["blood_oxygen"],
            updated_at=row["updated_at"],
        )
