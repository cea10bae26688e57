"""
Tests for TradeOrchestrator - the trade negotiation state machine.

Tests cover:
- Propose / Match / Confirm / Cancel guards and transitions
- Lock registry invariant after every operation
- Idempotent confirmation and exactly-once settlement
- Expiry of abandoned trades
- Transaction retry on busy storage
"""

import logging
import sqlite3
import threading
import time

import pytest

from core.db import (
    db_is_missing, db_missing_add, db_user_in_trade, db_locked_users, db_trade_list_open,
    db_missing_list,
)
from core.trading import (
    TradeOrchestrator, ConfirmOutcome, CardRef,
    AlreadyInTrade, NotMissing, AcceptorMissingCard, ProposerMissingOfferedCard,
    NoActiveProposal, SelfTrade, UnknownTrade, NotAParty, BadRequest, StorageFailure,
    PENDING, ACTIVE, COMPLETED, CANCELLED,
)


def assert_lock_invariant(state):
    """A user holds a lock iff they are a party to a pending/active trade."""
    parties = set()
    for row in db_trade_list_open(state):
        parties.add(row["proposer_id"])
        if row["acceptor_id"]:
            parties.add(row["acceptor_id"])
    assert set(db_locked_users(state)) == parties


def _active_trade(orch):
    orch.propose("alice", "SetA", "007")
    return orch.match("bob", "SetA", "007", proposer_id="alice")


# ---- end to end ----

def test_end_to_end_swap(orch, alice_needs_007):
    state = alice_needs_007

    trade = orch.propose("alice", "SetA", "007")
    assert trade.status == PENDING
    assert trade.requested == CardRef("SetA", "007")
    assert db_user_in_trade(state, "alice")
    assert_lock_invariant(state)

    trade = orch.match("bob", "SetA", "007", proposer_id="alice")
    assert trade.status == ACTIVE
    assert trade.acceptor_id == "bob"
    assert trade.offered == CardRef("SetA", "007")
    assert db_user_in_trade(state, "alice") and db_user_in_trade(state, "bob")
    assert_lock_invariant(state)

    res = orch.confirm(trade.trade_id, "alice")
    assert res.outcome is ConfirmOutcome.WAITING_FOR_COUNTERPARTY
    assert res.trade.status == ACTIVE
    assert res.trade.confirmations == 1

    res = orch.confirm(trade.trade_id, "bob")
    assert res.outcome is ConfirmOutcome.SETTLED
    assert res.trade.status == COMPLETED
    assert res.trade.confirmations == 2
    assert not db_is_missing(state, "alice", "SetA", "007")
    assert not db_is_missing(state, "bob", "SetA", "007")
    assert not db_user_in_trade(state, "alice")
    assert not db_user_in_trade(state, "bob")
    assert_lock_invariant(state)


def test_propose_normalizes_card_input(orch, alice_needs_007):
    trade = orch.propose("alice", "  SetA ", "#007")
    assert trade.requested == CardRef("SetA", "007")


def test_trade_ids_increase(orch, state):
    db_missing_add(state, "alice", "SetA", "007")
    db_missing_add(state, "carol", "SetA", "001")
    first = orch.propose("alice", "SetA", "007")
    second = orch.propose("carol", "SetA", "001")
    assert second.trade_id > first.trade_id


# ---- propose ----

def test_propose_not_missing_releases_lock(orch, alice_needs_007):
    state = alice_needs_007
    with pytest.raises(NotMissing):
        orch.propose("alice", "SetA", "099")
    assert not db_user_in_trade(state, "alice")
    assert db_trade_list_open(state) == []


def test_second_proposal_while_locked(orch, alice_needs_007):
    state = alice_needs_007
    db_missing_add(state, "alice", "SetB", "001")
    orch.propose("alice", "SetA", "007")
    with pytest.raises(AlreadyInTrade):
        orch.propose("alice", "SetB", "001")
    # a card she isn't even missing still fails on the lock first
    with pytest.raises(AlreadyInTrade):
        orch.propose("alice", "SetA", "099")
    assert len(db_trade_list_open(state)) == 1
    assert_lock_invariant(state)


def test_propose_blank_card_is_bad_request(orch, state):
    with pytest.raises(BadRequest):
        orch.propose("alice", "SetA", "  ")
    assert not db_user_in_trade(state, "alice")


def test_rejections_logged_at_debug(orch, state, caplog):
    caplog.set_level(logging.DEBUG, logger="core.trading")
    with pytest.raises(NotMissing):
        orch.propose("alice", "SetA", "099")
    with pytest.raises(BadRequest):
        orch.match("bob", "SetA", "007")
    rejected = [r for r in caplog.records if r.levelno == logging.DEBUG and "rejected" in r.getMessage()]
    assert [r.getMessage().split()[0] for r in rejected] == ["propose", "match"]
    assert "NotMissing" in rejected[0].getMessage()


# ---- match ----

def test_match_self_trade(orch, alice_needs_007):
    trade = orch.propose("alice", "SetA", "007")
    with pytest.raises(SelfTrade):
        orch.match("alice", "SetA", "007", proposer_id="alice")
    with pytest.raises(SelfTrade):
        orch.match("alice", "Whatever", "1", trade_id=trade.trade_id)
    assert orch.get_trade(trade.trade_id).status == PENDING
    assert_lock_invariant(alice_needs_007)


def test_match_acceptor_missing_card(orch, alice_needs_007):
    state = alice_needs_007
    trade = orch.propose("alice", "SetA", "007")
    with pytest.raises(AcceptorMissingCard):
        orch.match("bob", "SetA", "010", proposer_id="alice")
    assert not db_user_in_trade(state, "bob")
    assert orch.get_trade(trade.trade_id).status == PENDING
    assert_lock_invariant(state)


def test_match_without_proposal(orch, alice_needs_007):
    state = alice_needs_007
    with pytest.raises(NoActiveProposal):
        orch.match("bob", "SetA", "007", proposer_id="carol")
    assert not db_user_in_trade(state, "bob")


def test_match_acceptor_already_trading(orch, alice_needs_007):
    state = alice_needs_007
    trade = orch.propose("alice", "SetA", "007")
    own = orch.propose("bob", "SetA", "010")
    with pytest.raises(AlreadyInTrade):
        orch.match("bob", "SetA", "007", proposer_id="alice")
    assert orch.get_trade(trade.trade_id).status == PENDING
    assert orch.get_trade(own.trade_id).status == PENDING
    assert db_user_in_trade(state, "bob")
    assert_lock_invariant(state)


def test_match_proposer_also_missing_offered_card(orch, alice_needs_007):
    state = alice_needs_007
    db_missing_add(state, "alice", "SetA", "008")
    orch.propose("alice", "SetA", "007")
    with pytest.raises(ProposerMissingOfferedCard):
        orch.match("bob", "SetA", "008", proposer_id="alice")
    assert not db_user_in_trade(state, "bob")
    assert_lock_invariant(state)


def test_match_other_owned_card(orch, alice_needs_007):
    orch.propose("alice", "SetA", "007")
    trade = orch.match("bob", "SetB", "042", proposer_id="alice")
    assert trade.offered == CardRef("SetB", "042")
    assert trade.status == ACTIVE


def test_match_by_trade_id(orch, alice_needs_007):
    trade = orch.propose("alice", "SetA", "007")
    with pytest.raises(NoActiveProposal):
        orch.match("bob", "SetA", "007", proposer_id="alice", trade_id=trade.trade_id + 1)
    matched = orch.match("bob", "SetA", "007", trade_id=trade.trade_id)
    assert matched.trade_id == trade.trade_id
    assert matched.status == ACTIVE


def test_match_needs_a_target(orch, alice_needs_007):
    with pytest.raises(BadRequest):
        orch.match("bob", "SetA", "007")


def test_second_acceptor_is_turned_away(orch, alice_needs_007):
    state = alice_needs_007
    trade = _active_trade(orch)
    with pytest.raises(NoActiveProposal):
        orch.match("carol", "SetA", "007", trade_id=trade.trade_id)
    assert not db_user_in_trade(state, "carol")
    assert_lock_invariant(state)


# ---- confirm ----

def test_confirm_twice_counts_once(orch, alice_needs_007):
    state = alice_needs_007
    trade = _active_trade(orch)
    first = orch.confirm(trade.trade_id, "alice")
    again = orch.confirm(trade.trade_id, "alice")
    assert first.recorded is True
    assert again.recorded is False
    assert again.outcome is ConfirmOutcome.WAITING_FOR_COUNTERPARTY
    assert again.trade.confirmations == 1
    assert again.trade.status == ACTIVE
    assert db_is_missing(state, "alice", "SetA", "007")


def test_confirm_rejects_outsiders_and_unknown_ids(orch, alice_needs_007):
    trade = _active_trade(orch)
    with pytest.raises(NotAParty):
        orch.confirm(trade.trade_id, "carol")
    with pytest.raises(UnknownTrade):
        orch.confirm(9999, "alice")


def test_confirm_pending_trade_is_unknown(orch, alice_needs_007):
    trade = orch.propose("alice", "SetA", "007")
    with pytest.raises(UnknownTrade):
        orch.confirm(trade.trade_id, "alice")


def test_settlement_fires_once(orch, alice_needs_007):
    state = alice_needs_007
    trade = _active_trade(orch)
    orch.confirm(trade.trade_id, "alice")
    orch.confirm(trade.trade_id, "bob")

    # re-add the entry; a late duplicate confirm must not delete it again
    db_missing_add(state, "alice", "SetA", "007")
    with pytest.raises(UnknownTrade):
        orch.confirm(trade.trade_id, "bob")
    assert db_is_missing(state, "alice", "SetA", "007")


def test_settlement_removes_only_traded_entries(orch, alice_needs_007):
    state = alice_needs_007
    db_missing_add(state, "alice", "SetA", "008")
    db_missing_add(state, "carol", "SetA", "007")
    trade = _active_trade(orch)
    orch.confirm(trade.trade_id, "bob")
    orch.confirm(trade.trade_id, "alice")

    assert db_missing_list(state, "alice") == [{"expansion": "SetA", "card_number": "008"}]
    assert db_missing_list(state, "bob") == [{"expansion": "SetA", "card_number": "010"}]
    assert db_missing_list(state, "carol") == [{"expansion": "SetA", "card_number": "007"}]


def test_settlement_fault_rolls_back_everything(orch, alice_needs_007, monkeypatch):
    import core.trading as trading

    state = alice_needs_007
    trade = _active_trade(orch)
    orch.confirm(trade.trade_id, "alice")

    real_release = trading._lock_release_with_conn
    calls = {"n": 0}

    def flaky_release(c, user_id):
        calls["n"] += 1
        if calls["n"] == 2:
            raise sqlite3.IntegrityError("disk went away")
        return real_release(c, user_id)

    monkeypatch.setattr(trading, "_lock_release_with_conn", flaky_release)

    with pytest.raises(StorageFailure):
        orch.confirm(trade.trade_id, "bob")

    assert db_is_missing(state, "alice", "SetA", "007")
    assert db_is_missing(state, "bob", "SetA", "010")
    after = orch.get_trade(trade.trade_id)
    assert after.status == ACTIVE
    assert after.confirmations == 1
    assert set(db_locked_users(state)) == {"alice", "bob"}
    assert_lock_invariant(state)


def test_concurrent_confirms_settle_once(alice_needs_007):
    state = alice_needs_007
    orch_a = TradeOrchestrator(state, retry_delay=0)
    orch_b = TradeOrchestrator(state, retry_delay=0)
    trade = _active_trade(orch_a)

    barrier = threading.Barrier(2)
    results = {}

    def worker(o, user):
        barrier.wait()
        results[user] = o.confirm(trade.trade_id, user)

    threads = [threading.Thread(target=worker, args=(orch_a, "alice")),
               threading.Thread(target=worker, args=(orch_b, "bob"))]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    outcomes = sorted(r.outcome.value for r in results.values())
    assert outcomes == ["settled", "waiting"]
    assert orch_a.get_trade(trade.trade_id).status == COMPLETED
    assert_lock_invariant(state)


def test_concurrent_offers_only_one_matches(orch, alice_needs_007):
    state = alice_needs_007
    trade = orch.propose("alice", "SetA", "007")
    barrier = threading.Barrier(2)
    outcomes = {}

    def worker(user):
        barrier.wait()
        try:
            orch.match(user, "SetA", "007", trade_id=trade.trade_id)
            outcomes[user] = "matched"
        except NoActiveProposal:
            outcomes[user] = "rejected"

    threads = [threading.Thread(target=worker, args=(u,)) for u in ("bob", "carol")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes.values()) == ["matched", "rejected"]
    assert_lock_invariant(state)


# ---- cancel ----

def test_cancel_active_releases_both(orch, alice_needs_007):
    state = alice_needs_007
    trade = _active_trade(orch)
    cancelled = orch.cancel(trade.trade_id, "alice")
    assert cancelled.status == CANCELLED
    assert cancelled.cancelled_by == "alice"
    assert cancelled.cancel_reason == "cancelled"
    assert not db_user_in_trade(state, "alice")
    assert not db_user_in_trade(state, "bob")
    assert db_is_missing(state, "alice", "SetA", "007")
    assert db_is_missing(state, "bob", "SetA", "010")
    assert_lock_invariant(state)


def test_cancel_by_acceptor(orch, alice_needs_007):
    trade = _active_trade(orch)
    orch.confirm(trade.trade_id, "alice")
    cancelled = orch.cancel(trade.trade_id, "bob")
    assert cancelled.status == CANCELLED
    assert_lock_invariant(alice_needs_007)


def test_cancel_pending(orch, alice_needs_007):
    state = alice_needs_007
    trade = orch.propose("alice", "SetA", "007")
    cancelled = orch.cancel(trade.trade_id, "alice")
    assert cancelled.status == CANCELLED
    assert cancelled.acceptor_id is None
    assert not db_user_in_trade(state, "alice")
    # free to ask again
    assert orch.propose("alice", "SetA", "007").status == PENDING


def test_cancel_guards(orch, alice_needs_007):
    trade = _active_trade(orch)
    with pytest.raises(NotAParty):
        orch.cancel(trade.trade_id, "carol")
    with pytest.raises(UnknownTrade):
        orch.cancel(9999, "alice")
    orch.cancel(trade.trade_id, "bob")
    with pytest.raises(UnknownTrade):
        orch.cancel(trade.trade_id, "alice")
    with pytest.raises(UnknownTrade):
        orch.confirm(trade.trade_id, "alice")


# ---- expiry ----

def test_expire_stale_trades(orch, alice_needs_007):
    state = alice_needs_007
    state.trade_timeout_s = 60
    trade = _active_trade(orch)

    assert orch.expire_stale(now=time.time()) == []
    expired = orch.expire_stale(now=time.time() + 120)
    assert [t.trade_id for t in expired] == [trade.trade_id]
    assert expired[0].status == CANCELLED
    assert expired[0].cancel_reason == "expired"
    assert db_locked_users(state) == []


def test_expiry_disabled(orch, alice_needs_007):
    alice_needs_007.trade_timeout_s = 0
    orch.propose("alice", "SetA", "007")
    assert orch.expire_stale(now=time.time() + 10**9) == []


# ---- lookups / persistence ----

def test_open_trade_for_either_party(orch, alice_needs_007):
    trade = _active_trade(orch)
    assert orch.open_trade_for("alice").trade_id == trade.trade_id
    assert orch.open_trade_for("bob").trade_id == trade.trade_id
    assert orch.open_trade_for("carol") is None


def test_locks_survive_restart(alice_needs_007):
    state = alice_needs_007
    TradeOrchestrator(state).propose("alice", "SetA", "007")
    with pytest.raises(AlreadyInTrade):
        TradeOrchestrator(state).propose("alice", "SetA", "007")


# ---- storage failures ----

def test_busy_storage_retries_whole_transaction(orch):
    calls = []

    def work(c):
        calls.append(1)
        raise sqlite3.OperationalError("database is locked")

    with pytest.raises(StorageFailure):
        orch._run("test", work)
    assert len(calls) == orch.retries


def test_busy_storage_recovers_on_retry(orch):
    calls = []

    def work(c):
        calls.append(1)
        if len(calls) == 1:
            raise sqlite3.OperationalError("database is locked")
        return "ok"

    assert orch._run("test", work) == "ok"
    assert len(calls) == 2


def test_integrity_error_is_not_retried(orch):
    calls = []

    def work(c):
        calls.append(1)
        raise sqlite3.IntegrityError("constraint failed")

    with pytest.raises(StorageFailure):
        orch._run("test", work)
    assert len(calls) == 1
