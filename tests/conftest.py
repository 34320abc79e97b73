"""Shared test fixtures for PhysCert tests."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DB_PATH", ":memory:")
    monkeypatch.setenv("COPROCESSOR_KEY", "")
    monkeypatch.setenv("CONTRACT_ADDRESS", CONTRACT_ADDRESS)

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from physcert.core.acl.service import AccessControlService  # noqa: E402
from physcert.core.acl.signature import DecryptionKeypair, DecryptionSignature  # noqa: E402
from physcert.core.fhe.coprocessor import SimulatedCoprocessor  # noqa: E402
from physcert.core.fhe.inputs import EncryptedInput  # noqa: E402
from physcert.core.storage.database import LedgerDatabase  # noqa: E402
from physcert.core.storage.encryption import FieldEncryptor  # noqa: E402
from physcert.core.storage.repository import CertificationRepository  # noqa: E402
from physcert.domains.certification.domain_logic.evaluator import (  # noqa: E402
    EligibilityEvaluator,
)
from physcert.domains.certification.domain_logic.metrics_models import (  # noqa: E402
    HealthMetrics,
)

CONTRACT_ADDRESS = "0x5fbdb2315678afecb367f032d93f642f64180aa3"

# The reference tuple from the demo: eligible on every check.
ELIGIBLE_METRICS = HealthMetrics(
    heart_rate=75,
    bmi=22.5,
    blood_pressure_systolic=120,
    blood_pressure_diastolic=80,
    lung_capacity=70,
    blood_oxygen=98,
)


def encrypt_metrics(
    fhe: SimulatedCoprocessor,
    user: str,
    metrics: HealthMetrics,
    contract: str = CONTRACT_ADDRESS,
):
    """Encrypt ``metrics`` the way a client would, returning the bundle."""
    enc = EncryptedInput(fhe, contract, user)
    for value in metrics.scaled():
        enc.add32(value)
    return enc.encrypt()


def sign_for(keypair: DecryptionKeypair, **kwargs) -> DecryptionSignature:
    return DecryptionSignature.create(keypair, [CONTRACT_ADDRESS], **kwargs)


# ---------------------------------------------------------------------------
# In-memory ledger fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def ledger_db():
    """Create an in-memory LedgerDatabase for testing."""
    db = LedgerDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def coprocessor(ledger_db) -> SimulatedCoprocessor:
    return SimulatedCoprocessor(ledger_db, FieldEncryptor.generate_key())


@pytest.fixture
def acl(ledger_db, coprocessor) -> AccessControlService:
    return AccessControlService(ledger_db, coprocessor)


@pytest.fixture
def repository(ledger_db) -> CertificationRepository:
    return CertificationRepository(ledger_db)


@pytest.fixture
def evaluator(ledger_db, coprocessor, acl, repository) -> EligibilityEvaluator:
    return EligibilityEvaluator(
        ledger_db, coprocessor, acl, repository, address=CONTRACT_ADDRESS
    )


@pytest.fixture
def audit_logger(ledger_db):
    """Create an AuditLogger backed by in-memory SQLite."""
    from physcert.core.audit.logger import AuditLogger

    return AuditLogger(ledger_db)


@pytest.fixture
def alice() -> DecryptionKeypair:
    return DecryptionKeypair.generate()


@pytest.fixture
def bob() -> DecryptionKeypair:
    return DecryptionKeypair.generate()


@pytest.fixture
def eligible_metrics() -> HealthMetrics:
    return ELIGIBLE_METRICS


@pytest.fixture
def encrypt_for(coprocessor):
    """Return ``fn(user, metrics, contract=...)`` producing an input bundle."""
    def _encrypt(user: str, metrics: HealthMetrics, contract: str = CONTRACT_ADDRESS):
        return encrypt_metrics(coprocessor, user, metrics, contract)
    return _encrypt


@pytest.fixture
def submit_for(evaluator, encrypt_for):
    """Return ``fn(user, metrics)`` that encrypts, submits and returns the verdict handle."""
    def _submit(user: str, metrics: HealthMetrics) -> str:
        bundle = encrypt_for(user, metrics)
        return evaluator.submit_encrypted_metrics(user, bundle.handles, bundle.input_proof)
    return _submit


@pytest.fixture
def decrypt_as(acl):
    """Return ``fn(keypair, handle)`` performing an authorized user decryption."""
    def _decrypt(keypair: DecryptionKeypair, handle: str) -> int:
        signature = sign_for(keypair)
        return acl.authorize_decrypt(
            [handle], keypair.address, signature, contract_address=CONTRACT_ADDRESS
        )[handle]
    return _decrypt
