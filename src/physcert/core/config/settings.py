"""Application settings loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """PhysCert server configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Default to loopback; there is no auth layer in front of the tools.
    physcert_host: str = "127.0.0.1"
    physcert_port: int = 8001
    physcert_log_level: str = "info"
    # Binding to a non-loopback host is refused unless this is set true.
    physcert_allow_insecure_bind: bool = False

    # Ledger (records, verdicts, grants, ciphertexts, audit trail)
    db_path: str = "~/.physcert/ledger.db"

    # Simulated coprocessor: Fernet key sealing ciphertext plaintexts.
    # Left empty, an ephemeral key is generated at startup.
    coprocessor_key: str = ""

    # Evaluator identity
    contract_address: str = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
    chain_id: int = 31337

    # User decryption
    decryption_max_duration_days: int = 365

    # Signed write requests older or newer than this are refused.
    request_max_age_seconds: int = 300


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
