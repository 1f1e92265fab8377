"""
Tests for the keyed stores, dispute context resolution and call sessions.
"""

import json

import pytest

from src.caller.models import CallPhase, DisputeContext, Speaker
from src.caller.sessions import CallSessionRegistry
from src.caller.store import InMemoryStore, parse_context_data


class TestInMemoryStore:
    """Tests for InMemoryStore."""

    def test_get_set_delete(self):
        store = InMemoryStore()
        store.set("a", 1)

        assert store.get("a") == 1
        assert store.delete("a") == 1
        assert store.get("a") is None
        assert store.delete("a") is None

    def test_sweep(self):
        store = InMemoryStore()
        for key, value in (("a", 1), ("b", 5), ("c", 9)):
            store.set(key, value)

        removed = store.sweep(lambda v: v > 3)

        assert removed == 2
        assert store.values() == [1]
        assert len(store) == 1


class TestDisputeContext:
    """Tests for DisputeContext payload handling."""

    def test_carried_payload_camel_case_and_money(self):
        context = parse_context_data("d1", json.dumps({
            "customerName": " Jane Doe ",
            "company": "Acme Power",
            "amount": "$1,088.50",
            "accountNumber": 123,
            "previousBalance": None,
            "billType": "",
        }))

        assert context.customer_name == "Jane Doe"
        assert context.amount == 1088.5
        assert context.account_number == "123"
        assert context.previous_balance is None
        assert context.bill_type is None

    @pytest.mark.parametrize("amount", ["nan", "NaN", "inf", "-Infinity"])
    def test_non_finite_amount_dropped(self, amount):
        context = parse_context_data("d1", json.dumps({"company": "Acme Power", "amount": amount}))

        assert context.amount is None
        assert "NaN" not in context.to_data_param()
        assert json.loads(context.to_data_param()) == {"company": "Acme Power"}

    def test_structured_values_are_not_text(self):
        context = parse_context_data("d1", json.dumps({
            "company": {"name": "Acme"},
            "description": ["double", "charge"],
            "amount": [88],
        }))

        assert context.company is None
        assert context.description is None
        assert context.amount is None

    def test_data_param_round_trip(self, jane_context):
        data = jane_context.to_data_param()

        assert parse_context_data("d1", data) == jane_context

    def test_payload_uses_wire_names(self, jane_context):
        payload = jane_context.to_payload()

        assert payload["customerName"] == jane_context.customer_name
        assert "customer_name" not in payload
        assert "dispute_id" not in payload

    def test_generic_context(self):
        context = DisputeContext.generic("d9")

        assert context.description == "General billing dispute"
        assert context.has_facts

    def test_empty_context_has_no_facts(self):
        assert not DisputeContext(dispute_id="d1").has_facts


class TestDisputeContextStore:
    """Tests for DisputeContextStore."""

    def test_set_replaces(self, contexts):
        contexts.set_context(DisputeContext(dispute_id="d1", company="Old Co", amount=10.0))
        contexts.set_context(DisputeContext(dispute_id="d1", company="New Co"))

        stored = contexts.get_context("d1")
        assert stored.company == "New Co"
        assert stored.amount is None

    def test_get_unknown(self, contexts):
        assert contexts.get_context("nope") is None

    def test_resolve_prefers_carried_data(self, contexts):
        contexts.set_context(DisputeContext(dispute_id="d1", company="Stored Co"))

        context = contexts.resolve("d1", json.dumps({"company": "Carried Co"}))

        assert context.company == "Carried Co"
        assert contexts.get_context("d1").company == "Carried Co"

    def test_resolve_falls_back_to_store(self, contexts):
        contexts.set_context(DisputeContext(dispute_id="d1", company="Stored Co"))

        assert contexts.resolve("d1", "{not json").company == "Stored Co"

    def test_resolve_generic_when_unknown(self, contexts):
        context = contexts.resolve("d2")

        assert context == DisputeContext.generic("d2")
        assert contexts.get_context("d2") is None

    @pytest.mark.parametrize("data", [None, "", "not-json", "[1,2]", "42"])
    def test_parse_context_data_rejects(self, data):
        assert parse_context_data("d1", data) is None


class TestCallSessionRegistry:
    """Tests for CallSessionRegistry."""

    def test_get_or_create_is_total(self, sessions):
        session = sessions.get_or_create("CA1", "d1")

        assert session.call_sid == "CA1"
        assert session.dispute_id == "d1"
        assert session.phase == CallPhase.GREETING
        assert sessions.get_or_create("CA1", "d1") is session
        assert len(sessions) == 1

    def test_transcript_order_unaffected_by_other_calls(self, sessions):
        sessions.create("CA1", "d1")
        sessions.create("CA2", "d2")

        for i in range(5):
            sessions.append_utterance("CA1", Speaker.COUNTERPARTY, f"line {i}")
            sessions.append_utterance("CA2", Speaker.CALLER, f"other {i}")

        assert sessions.get("CA1").transcript_lines() == [f"Human: line {i}" for i in range(5)]
        assert len(sessions.get("CA2").transcript) == 5

    def test_append_to_unknown_call_raises(self, sessions):
        with pytest.raises(KeyError):
            sessions.append_utterance("missing", Speaker.CALLER, "hi")

    def test_close_removes_and_returns_snapshot(self, sessions):
        sessions.create("CA1", "d1", phone_number="+15551234567")
        sessions.append_utterance("CA1", Speaker.CALLER, "Hello")

        closed = sessions.close("CA1")

        assert closed.is_active is False
        assert closed.phase == CallPhase.TERMINATED
        assert closed.transcript_lines() == ["AI: Hello"]
        assert sessions.get("CA1") is None
        assert sessions.close("CA1") is None

    def test_concurrent_calls_for_one_dispute_allowed(self):
        sessions = CallSessionRegistry()
        sessions.create("CA1", "d1")
        sessions.create("CA2", "d1")

        assert {s.call_sid for s in sessions.active_for_dispute("d1")} == {"CA1", "CA2"}
