"""Unit tests for the access-control gate and pairing flow."""

import threading

import pytest

from parley.config import SecurityConfig
from parley.gate import SecurityGate


def make_gate(store, clock, **overrides):
    config = SecurityConfig(
        channels={"telegram": {"allowed_ids": ["owner"]}},
        **overrides,
    )
    return SecurityGate(config, store, clock=clock)


class TestCheck:
    def test_static_allowlist_allows(self, store, clock):
        gate = make_gate(store, clock)
        decision = gate.check("owner", "telegram")

        assert decision.allowed
        events = store.security_events(sender="owner")
        assert [e.kind for e in events] == ["allowlist_hit"]

    def test_channel_without_static_list_allows_everyone(self, store, clock):
        gate = make_gate(store, clock)
        assert gate.check("anyone", "cli").allowed

    def test_pairing_policy_issues_code(self, store, clock):
        gate = make_gate(store, clock, pairing_code_length=8)
        decision = gate.check("stranger", "telegram")

        assert not decision.allowed
        assert decision.reason == "pairing_required"
        assert decision.pairing_code is not None
        assert len(decision.pairing_code) == 8
        assert decision.pairing_code == decision.pairing_code.upper()

        event = store.security_events(sender="stranger")[0]
        assert event.kind == "blocked"
        assert decision.pairing_code in event.detail

    @pytest.mark.parametrize("length", [4, 7, 12])
    def test_code_length_is_configurable(self, store, clock, length):
        gate = make_gate(store, clock, pairing_code_length=length)
        assert len(gate.check("stranger", "telegram").pairing_code) == length

    def test_strict_policy_reveals_no_code(self, store, clock):
        gate = make_gate(store, clock, dm_policy="strict")
        decision = gate.check("stranger", "telegram")

        assert not decision.allowed
        assert decision.reason == "not_allowed"
        assert decision.pairing_code is None
        assert store.security_events(sender="stranger")[0].kind == "blocked"

    def test_dynamic_allowlist_allows(self, store, clock):
        store.add_to_allowlist("friend", "telegram")
        gate = make_gate(store, clock, dm_policy="strict")
        assert gate.check("friend", "telegram").allowed

    def test_allowlist_is_per_channel(self, store, clock):
        store.add_to_allowlist("friend", "whatsapp")
        gate = make_gate(store, clock, dm_policy="strict")
        assert not gate.check("friend", "telegram").allowed


class TestPairing:
    def test_pair_then_allowed(self, store, clock):
        gate = make_gate(store, clock)
        code = gate.check("stranger", "telegram").pairing_code

        approval = gate.approve_pairing(code)

        assert approval.success
        assert (approval.sender, approval.channel) == ("stranger", "telegram")
        assert gate.check("stranger", "telegram").allowed
        kinds = [e.kind for e in store.security_events(sender="stranger")]
        assert "pairing_approved" in kinds

    def test_code_is_case_insensitive(self, store, clock):
        gate = make_gate(store, clock)
        code = gate.check("stranger", "telegram").pairing_code
        assert gate.approve_pairing(f"  {code.lower()} ").success

    def test_code_consumed_once(self, store, clock):
        gate = make_gate(store, clock)
        code = gate.check("stranger", "telegram").pairing_code

        assert gate.approve_pairing(code).success
        assert not gate.approve_pairing(code).success

    def test_expired_code_rejected(self, store, clock):
        gate = make_gate(store, clock, pairing_ttl_seconds=600)
        code = gate.check("stranger", "telegram").pairing_code

        clock.advance(601)

        assert not gate.approve_pairing(code).success
        assert not store.is_allowlisted("stranger", "telegram")

    def test_unknown_code_rejected(self, store, clock):
        assert not make_gate(store, clock).approve_pairing("DEADBEEF").success

    def test_concurrent_approval_has_one_winner(self, store, clock):
        gate = make_gate(store, clock)
        code = gate.check("stranger", "telegram").pairing_code

        results = []
        barrier = threading.Barrier(8)

        def approve():
            barrier.wait()
            results.append(gate.approve_pairing(code).success)

        threads = [threading.Thread(target=approve) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 7

    def test_rate_limit_event_recorded(self, store, clock):
        gate = make_gate(store, clock)
        gate.record_rate_limited("owner", "telegram", 12.3)
        event = store.security_events(sender="owner")[0]
        assert event.kind == "rate_limit"
        assert "12.3" in event.detail
