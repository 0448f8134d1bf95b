"""Tests for the in-memory contract store."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from contract import build_contract_record
from coordinator.store import EVENT_CONTRACT, EVENT_SIGNATURE, ContractStore

from conftest import A1, C1, C2, FILE_HASH


def make_record(quorum=1, network="liquid"):
    return build_contract_record(FILE_HASH, [C1, C2], [A1], quorum, network)


class TestContracts:
    def test_empty(self, store):
        assert store.get_contract(FILE_HASH) is None
        assert store.get_signatures(FILE_HASH) == {}
        assert FILE_HASH not in store
        assert store.list_contracts() == []

    def test_upsert_and_get(self, store):
        assert store.upsert_contract(FILE_HASH, make_record()) is True
        assert FILE_HASH in store
        assert store.get_contract(FILE_HASH)["document"]["fileHash"] == FILE_HASH

    def test_first_writer_wins(self, store):
        store.upsert_contract(FILE_HASH, make_record(network="liquid"))
        assert store.upsert_contract(FILE_HASH, make_record(network="bitcoin")) is False
        assert store.get_contract(FILE_HASH)["collateral"]["network"] == "liquid"

    def test_get_returns_copy(self, store):
        store.upsert_contract(FILE_HASH, make_record())
        store.get_contract(FILE_HASH)["collateral"]["network"] = "bitcoin"
        assert store.get_contract(FILE_HASH)["collateral"]["network"] == "liquid"

    def test_stores_copy(self, store):
        record = make_record()
        store.upsert_contract(FILE_HASH, record)
        record["version"] = 99
        assert store.get_contract(FILE_HASH)["version"] == 1

    def test_list_in_arrival_order(self, store):
        store.upsert_contract("bb", make_record())
        store.upsert_contract("aa", make_record())
        assert store.list_contracts() == ["bb", "aa"]


class TestSignatures:
    def test_record_before_contract(self, store):
        store.record_signature(FILE_HASH, C1, "aa")
        assert store.get_signatures(FILE_HASH) == {C1: "aa"}
        assert store.get_contract(FILE_HASH) is None

    def test_last_write_wins(self, store):
        store.record_signature(FILE_HASH, C1, "aa")
        store.record_signature(FILE_HASH, C1, "bb")
        assert store.get_signatures(FILE_HASH) == {C1: "bb"}

    def test_keyed_by_hash(self, store):
        store.record_signature(FILE_HASH, C1, "aa")
        store.record_signature("other", C2, "bb")
        assert store.get_signatures(FILE_HASH) == {C1: "aa"}

    def test_get_returns_copy(self, store):
        store.record_signature(FILE_HASH, C1, "aa")
        store.get_signatures(FILE_HASH)[C2] = "bb"
        assert store.get_signatures(FILE_HASH) == {C1: "aa"}


class TestListeners:
    def test_events(self, store):
        events = []
        store.add_listener(lambda event, h: events.append((event, h)))
        store.upsert_contract(FILE_HASH, make_record())
        store.upsert_contract(FILE_HASH, make_record())  # ignored, no event
        store.record_signature(FILE_HASH, C1, "aa")
        assert events == [(EVENT_CONTRACT, FILE_HASH), (EVENT_SIGNATURE, FILE_HASH)]

    def test_failing_listener_does_not_block(self):
        store = ContractStore()
        seen = []

        def broken(event, h):
            raise RuntimeError("boom")

        store.add_listener(broken)
        store.add_listener(lambda event, h: seen.append(event))
        store.record_signature(FILE_HASH, C1, "aa")
        assert seen == [EVENT_SIGNATURE]
        assert store.get_signatures(FILE_HASH) == {C1: "aa"}
