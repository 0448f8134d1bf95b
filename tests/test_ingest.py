"""Tests for envelope ingestion into the contract store."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import json

import pytest

from address import derive_escrow_address
from client import Envelope
from contract import build_contract_record, signable_data
from coordinator.export import is_complete, is_signed_by, missing_signers
from coordinator.ingest import apply_contract_approval, apply_contract_request, ingest_envelope
from coordinator.store import ContractStore
from crypto import ecdsa_sign
from messages import decode_payload
from protocol import InvalidQuorum

from conftest import (
    A1, A1_PRIV, APPROVAL, C1, C1_PRIV, C2, C2_PRIV, FILE_HASH, REQUEST,
    MemoryTransport, approval_text, make_envelope, request_text,
)


@pytest.fixture
def me(hub):
    """C1's view of the world."""
    return MemoryTransport(hub, C1_PRIV)


class TestApply:
    def test_request_builds_record(self, store):
        payload = decode_payload(REQUEST, request_text())
        assert apply_contract_request(store, payload) is True
        record = store.get_contract(FILE_HASH)
        assert record["collateral"]["multisigAddress"] == derive_escrow_address("liquid", [C1, C2], [A1], 1)

    def test_second_request_ignored(self, store):
        apply_contract_request(store, decode_payload(REQUEST, request_text()))
        assert apply_contract_request(store, decode_payload(REQUEST, request_text(network="bitcoin"))) is False
        assert store.get_contract(FILE_HASH)["collateral"]["network"] == "liquid"

    def test_request_bad_quorum_stores_nothing(self, store):
        payload = decode_payload(REQUEST, request_text(quorum=3))
        with pytest.raises(InvalidQuorum):
            apply_contract_request(store, payload)
        assert store.get_contract(FILE_HASH) is None

    def test_approval_records_sender(self, store):
        apply_contract_approval(store, A1, {"fileHash": FILE_HASH, "signature": "aa"})
        assert store.get_signatures(FILE_HASH) == {A1: "aa"}


@pytest.mark.asyncio
class TestIngestEnvelope:
    async def test_request(self, store, me):
        env = make_envelope(C2_PRIV, C1, REQUEST, request_text())
        assert await ingest_envelope(store, me, env) == REQUEST
        assert FILE_HASH in store

    async def test_address_derived_not_trusted(self, store, me):
        data = json.loads(request_text())
        data["multisigAddress"] = "lq1attackeraddress"
        env = make_envelope(C2_PRIV, C1, REQUEST, json.dumps(data))
        await ingest_envelope(store, me, env)
        address = store.get_contract(FILE_HASH)["collateral"]["multisigAddress"]
        assert address == derive_escrow_address("liquid", [C1, C2], [A1], 1)

    async def test_approval_signer_is_envelope_sender(self, store, me):
        env = make_envelope(A1_PRIV, C1, APPROVAL, approval_text("ab12"))
        assert await ingest_envelope(store, me, env) == APPROVAL
        assert store.get_signatures(FILE_HASH) == {A1: "ab12"}

    async def test_approval_before_request(self, store, me):
        """Order independence: a signature that arrives first is kept."""
        await ingest_envelope(store, me, make_envelope(A1_PRIV, C1, APPROVAL, approval_text("ab12"), seq=1))
        await ingest_envelope(store, me, make_envelope(C2_PRIV, C1, REQUEST, request_text(), seq=2))
        assert store.get_signatures(FILE_HASH) == {A1: "ab12"}
        assert FILE_HASH in store

    async def test_garbage_ciphertext_dropped(self, store, me):
        env = Envelope(sender=C2, recipient=C1, kind=REQUEST, ciphertext="@@@", seq=1)
        assert await ingest_envelope(store, me, env) is None
        assert store.list_contracts() == []

    async def test_wrong_recipient_dropped(self, store, me):
        # Encrypted for A1, delivered to C1: decryption fails
        env = make_envelope(C2_PRIV, A1, REQUEST, request_text())
        assert await ingest_envelope(store, me, env) is None

    async def test_malformed_payload_dropped(self, store, me):
        env = make_envelope(C2_PRIV, C1, APPROVAL, json.dumps({"fileHash": FILE_HASH}))
        assert await ingest_envelope(store, me, env) is None
        assert store.get_signatures(FILE_HASH) == {}

    async def test_unknown_kind_dropped(self, store, me):
        env = make_envelope(C2_PRIV, C1, "contract-rejection", "{}")
        assert await ingest_envelope(store, me, env) is None

    async def test_underivable_request_dropped(self, store, me):
        env = make_envelope(C2_PRIV, C1, REQUEST, request_text(quorum=5))
        assert await ingest_envelope(store, me, env) is None
        assert FILE_HASH not in store

    async def test_bad_message_does_not_block_next(self, store, me):
        bad = make_envelope(C2_PRIV, C1, REQUEST, "{not json", seq=1)
        good = make_envelope(C2_PRIV, C1, REQUEST, request_text(), seq=2)
        assert await ingest_envelope(store, me, bad) is None
        assert await ingest_envelope(store, me, good) == REQUEST


@pytest.mark.asyncio
class TestHostilePayloads:
    async def test_deeply_nested_json_dropped(self, store, me):
        env = make_envelope(C2_PRIV, C1, REQUEST, "[" * 5000 + "]" * 5000)
        assert await ingest_envelope(store, me, env) is None

    async def test_huge_integer_dropped(self, store, me):
        text = '{"arbitratorsQuorum": ' + "9" * 5000 + "}"
        env = make_envelope(C2_PRIV, C1, REQUEST, text)
        assert await ingest_envelope(store, me, env) is None

    async def test_nested_approval_dropped(self, store, me):
        env = make_envelope(A1_PRIV, C1, APPROVAL, '{"signature": ' + "[" * 5000 + "]" * 5000 + "}")
        assert await ingest_envelope(store, me, env) is None
        assert store.get_signatures(FILE_HASH) == {}

    async def test_next_message_still_applied(self, store, me):
        bad = make_envelope(C2_PRIV, C1, REQUEST, "[" * 5000 + "]" * 5000, seq=1)
        good = make_envelope(C2_PRIV, C1, REQUEST, request_text(), seq=2)
        await ingest_envelope(store, me, bad)
        assert await ingest_envelope(store, me, good) == REQUEST
        assert FILE_HASH in store


def _signed_approvals(record):
    return [
        make_envelope(priv, C1, APPROVAL, approval_text(ecdsa_sign(priv, signable_data(record))), seq=i)
        for i, priv in enumerate((C1_PRIV, C2_PRIV, A1_PRIV), start=2)
    ]


@pytest.mark.asyncio
class TestOrderIndependence:
    async def test_same_outcome_either_order(self, me):
        record = build_contract_record(FILE_HASH, [C1, C2], [A1], 1, "liquid")
        request = make_envelope(C2_PRIV, C1, REQUEST, request_text(), seq=1)
        approvals = _signed_approvals(record)

        request_first = ContractStore()
        for env in [request] + approvals:
            await ingest_envelope(request_first, me, env)

        approvals_first = ContractStore()
        for env in approvals + [request]:
            await ingest_envelope(approvals_first, me, env)

        assert request_first.get_signatures(FILE_HASH) == approvals_first.get_signatures(FILE_HASH)
        assert request_first.get_contract(FILE_HASH) == approvals_first.get_contract(FILE_HASH)
        assert is_complete(request_first, FILE_HASH)
        assert is_complete(approvals_first, FILE_HASH)

    async def test_early_signer_counted_once_request_arrives(self, store, me):
        record = build_contract_record(FILE_HASH, [C1, C2], [A1], 1, "liquid")
        early = _signed_approvals(record)[2]  # A1
        await ingest_envelope(store, me, early)
        assert not is_complete(store, FILE_HASH)

        await ingest_envelope(store, me, make_envelope(C2_PRIV, C1, REQUEST, request_text(), seq=9))
        assert is_signed_by(store, FILE_HASH, A1)
        assert missing_signers(store, FILE_HASH) == [C1, C2]
