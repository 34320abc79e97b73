"""Integration tests for the PhysCert MCP server."""

from __future__ import annotations

import asyncio
import json

import pytest
from fastmcp import Client

from physcert.core.acl.signature import DecryptionKeypair, DecryptionSignature, RequestSignature
from physcert.core.fhe.handles import ZERO_HANDLE
from physcert.core.server.app import create_app
from physcert.domains.certification.domain_logic.metrics_models import HealthMetrics
from physcert.domains.certification.domain_logic.requests import (
    ENCRYPT_ACTION,
    SUBMIT_ACTION,
    encryption_request,
    submission_request,
)

CONTRACT = "0x5fbdb2315678afecb367f032d93f642f64180aa3"

METRICS = {
    "heart_rate": 75,
    "bmi": 22.5,
    "blood_pressure_systolic": 120,
    "blood_pressure_diastolic": 80,
    "lung_capacity": 70,
    "blood_oxygen": 98,
}

ALL_EXPECTED_TOOLS = [
    "health_check",
    "encrypt_metrics",
    "submit_encrypted_metrics",
    "evaluate_eligibility",
    "get_eligibility_handle",
    "get_metric_handles",
    "user_decrypt",
    "audit_summary",
]


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _payload(result) -> dict:
    content = getattr(result, "content", result)
    return json.loads(content[0].text)


@pytest.fixture
def client(ledger_db):
    """Create an MCP client connected to a server on an in-memory ledger."""
    return Client(create_app(database_override=ledger_db))


@pytest.fixture
def user() -> DecryptionKeypair:
    return DecryptionKeypair.generate()


def _encrypt_args(signer: DecryptionKeypair, user_address: str, **overrides) -> dict:
    metrics = {**METRICS, **overrides}
    fields = encryption_request(CONTRACT, user_address, HealthMetrics(**metrics).scaled())
    signature = RequestSignature.create(signer, ENCRYPT_ACTION, fields)
    return {"user_address": user_address, **metrics, "request_signature": signature.to_dict()}


def _submit_args(signer: DecryptionKeypair, caller: str, encrypted: dict) -> dict:
    handles, proof = encrypted["handles"], encrypted["input_proof"]
    signature = RequestSignature.create(
        signer, SUBMIT_ACTION, submission_request(CONTRACT, caller, handles, proof)
    )
    return {
        "caller": caller,
        "handles": handles,
        "input_proof": proof,
        "request_signature": signature.to_dict(),
    }


async def _encrypt(client, keypair: DecryptionKeypair, **overrides) -> dict:
    encrypted = _payload(await client.call_tool(
        "encrypt_metrics", _encrypt_args(keypair, keypair.address, **overrides)
    ))
    assert encrypted["status"] == "encrypted"
    return encrypted


async def _submit(client, keypair: DecryptionKeypair, **overrides) -> dict:
    encrypted = await _encrypt(client, keypair, **overrides)
    return _payload(await client.call_tool(
        "submit_encrypted_metrics", _submit_args(keypair, keypair.address, encrypted)
    ))


async def _decrypt(client, keypair: DecryptionKeypair, handles: list[str]) -> dict:
    signature = DecryptionSignature.create(keypair, [CONTRACT])
    return _payload(await client.call_tool(
        "user_decrypt", {"handles": handles, "signature": signature.to_dict()}
    ))


def test_server_starts_and_lists_tools(client):
    """Server should start and expose all registered tools."""
    async def _check():
        async with client:
            tools = await client.list_tools()
            tool_names = [t.name for t in tools]
            for expected in ALL_EXPECTED_TOOLS:
                assert expected in tool_names, f"Missing tool: {expected}"
    _run(_check())


def test_health_check_returns_ok(client):
    async def _check():
        async with client:
            data = _payload(await client.call_tool("health_check", {}))
            assert data["status"] == "ok"
            assert data["contract_address"] == CONTRACT
            assert data["records_stored"] == 0
    _run(_check())


def test_submit_and_decrypt_eligible(client, user):
    async def _check():
        async with client:
            submitted = await _submit(client, user)
            assert submitted["status"] == "submitted"
            verdict = submitted["verdict_handle"]

            current = _payload(await client.call_tool("get_eligibility_handle", {"subject": user.address}))
            assert current["verdict_handle"] == verdict

            decrypted = await _decrypt(client, user, [verdict])
            assert decrypted == {"status": "ok", "values": {verdict: 1}}
    _run(_check())


def test_heart_rate_violation_is_not_eligible(client, user):
    async def _check():
        async with client:
            verdict = (await _submit(client, user, heart_rate=130))["verdict_handle"]
            decrypted = await _decrypt(client, user, [verdict])
            assert decrypted["values"][verdict] == 0
    _run(_check())


def test_owner_reads_back_metrics(client, user):
    async def _check():
        async with client:
            await _submit(client, user)
            handles = _payload(await client.call_tool("get_metric_handles", {"subject": user.address}))["handles"]
            decrypted = await _decrypt(client, user, [handles["bmi"]])
            assert decrypted["values"][handles["bmi"]] == 2250
    _run(_check())


def test_other_user_is_denied(client, user):
    async def _check():
        async with client:
            verdict = (await _submit(client, user))["verdict_handle"]
            denied = await _decrypt(client, DecryptionKeypair.generate(), [verdict])
            assert denied == {"status": "denied", "message": "request denied"}
    _run(_check())


def test_malformed_signature_is_denied(client, user):
    async def _check():
        async with client:
            verdict = (await _submit(client, user))["verdict_handle"]
            denied = _payload(await client.call_tool(
                "user_decrypt", {"handles": [verdict], "signature": {"user_address": user.address}}
            ))
            assert denied["status"] == "denied"
    _run(_check())


def test_invalid_proof_reverts(client, user):
    async def _check():
        async with client:
            encrypted = await _encrypt(client, user)
            other = DecryptionKeypair.generate()
            result = _payload(await client.call_tool(
                "submit_encrypted_metrics", _submit_args(other, other.address, encrypted)
            ))
            assert result["status"] == "error"
            assert result["error_type"] == "InputProofError"

            health = _payload(await client.call_tool("health_check", {}))
            assert health["records_stored"] == 0
    _run(_check())


def test_encrypt_rejects_out_of_range(client, user):
    async def _check():
        async with client:
            result = _payload(await client.call_tool(
                "encrypt_metrics",
                {"user_address": user.address, **METRICS, "heart_rate": -1, "request_signature": {}},
            ))
            assert result["status"] == "error"
    _run(_check())


def test_encrypt_for_another_user_is_denied(client, user):
    async def _check():
        async with client:
            mallory = DecryptionKeypair.generate()
            result = _payload(await client.call_tool(
                "encrypt_metrics", _encrypt_args(mallory, user.address)
            ))
            assert result == {"status": "denied", "message": "request not authorized"}
    _run(_check())


def test_another_principal_cannot_replace_a_record(client, user):
    async def _check():
        async with client:
            submitted = await _submit(client, user)
            verdict = submitted["verdict_handle"]
            metric_handles = _payload(await client.call_tool(
                "get_metric_handles", {"subject": user.address}
            ))["handles"]

            # An ineligible record encrypted by mallory for herself, then
            # submitted in the victim's name under mallory's key.
            mallory = DecryptionKeypair.generate()
            forged = await _encrypt(client, mallory, heart_rate=130)
            result = _payload(await client.call_tool(
                "submit_encrypted_metrics", _submit_args(mallory, user.address, forged)
            ))
            assert result["status"] == "error"
            assert result["error_type"] == "AccessDenied"

            # Mallory's key passed off as the victim's in an otherwise valid request.
            stolen = _submit_args(mallory, user.address, forged)
            stolen["request_signature"]["public_key"] = user.public_key_hex
            result = _payload(await client.call_tool("submit_encrypted_metrics", stolen))
            assert result["error_type"] == "AccessDenied"

            current = _payload(await client.call_tool("get_eligibility_handle", {"subject": user.address}))
            assert current["verdict_handle"] == verdict
            after = _payload(await client.call_tool("get_metric_handles", {"subject": user.address}))
            assert after["handles"] == metric_handles
            decrypted = await _decrypt(client, user, [verdict])
            assert decrypted["values"][verdict] == 1
    _run(_check())


def test_signed_submission_cannot_be_replayed(client, user):
    async def _check():
        async with client:
            encrypted = await _encrypt(client, user)
            request = _submit_args(user, user.address, encrypted)
            first = _payload(await client.call_tool("submit_encrypted_metrics", request))
            assert first["status"] == "submitted"

            replayed = _payload(await client.call_tool("submit_encrypted_metrics", request))
            assert replayed["status"] == "error"
            assert replayed["error_type"] == "AccessDenied"

            current = _payload(await client.call_tool("get_eligibility_handle", {"subject": user.address}))
            assert current["verdict_handle"] == first["verdict_handle"]
    _run(_check())


def test_altered_submission_is_refused(client, user):
    async def _check():
        async with client:
            honest = await _encrypt(client, user)
            swapped = await _encrypt(client, user, heart_rate=130)
            request = _submit_args(user, user.address, honest)
            request["handles"] = swapped["handles"]
            request["input_proof"] = swapped["input_proof"]
            result = _payload(await client.call_tool("submit_encrypted_metrics", request))
            assert result["error_type"] == "AccessDenied"

            health = _payload(await client.call_tool("health_check", {}))
            assert health["records_stored"] == 0
    _run(_check())



def test_evaluate_unknown_subject(client, user):
    async def _check():
        async with client:
            before = _payload(await client.call_tool("get_eligibility_handle", {"subject": user.address}))
            assert before["verdict_handle"] == ZERO_HANDLE

            evaluated = _payload(await client.call_tool("evaluate_eligibility", {"subject": user.address}))
            assert evaluated["status"] == "evaluated"
            decrypted = await _decrypt(client, user, [evaluated["verdict_handle"]])
            assert decrypted["values"][evaluated["verdict_handle"]] == 0
    _run(_check())


def test_audit_summary_tracks_disclosures(client, user):
    async def _check():
        async with client:
            verdict = (await _submit(client, user))["verdict_handle"]
            await _decrypt(client, user, [verdict])
            await _decrypt(client, DecryptionKeypair.generate(), [verdict])

            summary = _payload(await client.call_tool("audit_summary", {}))
            assert summary["plaintext_disclosures"] == 1
            actions = [e["action"] for e in summary["recent_events"]]
            assert actions.count("decrypt_request") == 2
            assert verdict not in json.dumps(summary)
    _run(_check())
