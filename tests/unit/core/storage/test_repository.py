"""Tests for CertificationRepository: the two subject-keyed maps."""

from __future__ import annotations

import pytest

from physcert.core.fhe.handles import new_handle
from physcert.core.storage.models import METRIC_FIELDS, EncryptedMetricRecord
from physcert.core.storage.repository import RepositoryError

SUBJECT = "0x" + "ab" * 20


def _make_record(subject: str = SUBJECT) -> EncryptedMetricRecord:
    return EncryptedMetricRecord.from_handles(subject, [new_handle() for _ in METRIC_FIELDS])


class TestRecords:
    def test_missing_record_is_none(self, repository):
        assert repository.get_record(SUBJECT) is None

    def test_save_and_get(self, repository):
        record = _make_record()
        repository.save_record(record)
        loaded = repository.get_record(SUBJECT)
        assert loaded is not None
        assert loaded.handles() == record.handles()
        assert loaded.updated_at

    def test_resubmission_replaces_every_field(self, repository):
        first = _make_record()
        second = _make_record()
        repository.save_record(first)
        repository.save_record(second)

        loaded = repository.get_record(SUBJECT)
        assert loaded.handles() == second.handles()
        assert not set(loaded.handles()) & set(first.handles())
        assert repository.count_records() == 1

    def test_subject_is_case_insensitive(self, repository):
        repository.save_record(_make_record(SUBJECT.upper().replace("0X", "0x")))
        assert repository.get_record(SUBJECT) is not None

    def test_malformed_handle_rejected(self, repository):
        record = _make_record()
        record.bmi = "not-a-handle"
        with pytest.raises(RepositoryError, match="bmi"):
            repository.save_record(record)
        assert repository.count_records() == 0

    def test_malformed_subject_rejected(self, repository):
        with pytest.raises(RepositoryError, match="Malformed address"):
            repository.get_record("alice")


class TestVerdicts:
    def test_missing_verdict_is_none(self, repository):
        assert repository.get_verdict(SUBJECT) is None

    def test_save_overwrites(self, repository):
        h1, h2 = new_handle(), new_handle()
        repository.save_verdict(SUBJECT, h1)
        repository.save_verdict(SUBJECT, h2)
        assert repository.get_verdict(SUBJECT).handle == h2
        assert repository.count_verdicts() == 1

    def test_subjects_are_independent(self, repository):
        other = "0x" + "cd" * 20
        h1, h2 = new_handle(), new_handle()
        repository.save_verdict(SUBJECT, h1)
        repository.save_verdict(other, h2)
        assert repository.get_verdict(SUBJECT).handle == h1
        assert repository.get_verdict(other).handle == h2

    def test_malformed_verdict_handle_rejected(self, repository):
        with pytest.raises(RepositoryError):
            repository.save_verdict(SUBJECT, "0x1234")


class TestModels:
    def test_empty_record_is_all_zero(self):
        from physcert.core.fhe.handles import ZERO_HANDLE

        record = EncryptedMetricRecord.empty(SUBJECT)
        assert record.handles() == [ZERO_HANDLE] * 6

    def test_from_handles_requires_six(self):
        with pytest.raises(ValueError, match="Expected 6"):
            EncryptedMetricRecord.from_handles(SUBJECT, [new_handle()])

    def test_as_dict_uses_submission_order(self):
        record = _make_record()
        assert list(record.as_dict()) == list(METRIC_FIELDS)
