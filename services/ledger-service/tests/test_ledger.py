from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from ledger_service.domain.errors import (
    AccountNotFound,
    Forbidden,
    InsufficientBalance,
    InvalidAmount,
    InvalidRecipient,
    LedgerError,
    RecipientNotFound,
    StoreUnavailable,
)
from ledger_service.domain.ledger import LedgerEngine, parse_amount
from ledger_service.domain.account import Role


class FlakyStore:
    """Wraps a store and fails after committing, like a dropped connection."""

    def __init__(self, inner, failures: int) -> None:
        self._inner = inner
        self._failures = failures
        self.calls = 0

    def __getattr__(self, name):
        return getattr(self._inner, name)

    def transfer(self, **kwargs):
        self.calls += 1
        result = self._inner.transfer(**kwargs)
        if self._failures:
            self._failures -= 1
            raise StoreUnavailable("connection reset")
        return result

    def cash_out(self, **kwargs):
        self.calls += 1
        result = self._inner.cash_out(**kwargs)
        if self._failures:
            self._failures -= 1
            raise StoreUnavailable("connection reset")
        return result


class AuditOutageStore:
    """Wraps a store whose standalone audit writes fail, like an unreachable audit table."""

    def __init__(self, inner, failures: int) -> None:
        self._inner = inner
        self._failures = failures
        self.audit_attempts = 0

    def __getattr__(self, name):
        return getattr(self._inner, name)

    def write_audit_event(self, **kwargs):
        self.audit_attempts += 1
        if self._failures:
            self._failures -= 1
            raise StoreUnavailable("audit log unreachable")
        return self._inner.write_audit_event(**kwargs)


@pytest.mark.parametrize("value,expected", [(5, 5), ("42", 42), (7.0, 7), (" 3 ", 3)])
def test_parse_amount_accepts_whole_numbers(value, expected):
    assert parse_amount(value) == expected


@pytest.mark.parametrize("value", [0, -5, 2.5, "abc", "", None, True, "1e3", float("nan"), [10]])
def test_parse_amount_rejects_invalid_values(value):
    with pytest.raises(InvalidAmount):
        parse_amount(value)


def test_cash_out_with_insufficient_funds_leaves_balance(ledger, open_account):
    account = open_account()
    ledger.cash_out(account.account_id, 30)
    assert ledger.get_balance(account.account_id) == 10

    with pytest.raises(InsufficientBalance):
        ledger.cash_out(account.account_id, 50)
    assert ledger.get_balance(account.account_id) == 10


def test_transfer_conserves_total_balance(ledger, open_account):
    sender = open_account(Role.agent)
    recipient = open_account()
    before = ledger.get_balance(sender.account_id) + ledger.get_balance(recipient.account_id)

    receipt = ledger.transfer(sender.account_id, recipient.mobile_number, 2500)

    assert receipt.balance == 7500
    assert not receipt.replayed
    assert ledger.get_balance(recipient.account_id) == 2540
    after = ledger.get_balance(sender.account_id) + ledger.get_balance(recipient.account_id)
    assert before == after


def test_transfer_to_unknown_recipient(ledger, open_account):
    sender = open_account()
    with pytest.raises(RecipientNotFound):
        ledger.transfer(sender.account_id, "no-such-mobile", 5)
    assert ledger.get_balance(sender.account_id) == 40


def test_transfer_to_self_is_rejected(ledger, open_account):
    sender = open_account()
    with pytest.raises(InvalidRecipient):
        ledger.transfer(sender.account_id, sender.mobile_number, 5)
    assert ledger.get_balance(sender.account_id) == 40


def test_transfer_insufficient_balance(ledger, open_account):
    sender = open_account()
    recipient = open_account()
    with pytest.raises(InsufficientBalance):
        ledger.transfer(sender.account_id, recipient.mobile_number, 41)
    assert ledger.get_balance(sender.account_id) == 40
    assert ledger.get_balance(recipient.account_id) == 40


def test_pending_or_blocked_accounts_cannot_move_money(ledger, lifecycle, admin, open_account):
    pending = open_account(activate=False)
    recipient = open_account()
    with pytest.raises(Forbidden):
        ledger.cash_out(pending.account_id, 1)

    blocked = open_account()
    lifecycle.set_status(admin, blocked.account_id, "blocked")
    with pytest.raises(Forbidden):
        ledger.transfer(blocked.account_id, recipient.mobile_number, 1)
    assert ledger.get_balance(blocked.account_id) == 40


def test_unknown_sender(ledger, open_account):
    recipient = open_account()
    with pytest.raises(AccountNotFound):
        ledger.transfer("ghost", recipient.mobile_number, 1)
    with pytest.raises(AccountNotFound):
        ledger.get_balance("ghost")


def test_concurrent_cash_outs_never_overdraw(ledger, open_account):
    account = open_account()  # balance 40

    def attempt(_):
        try:
            ledger.cash_out(account.account_id, 7)
            return True
        except InsufficientBalance:
            return False

    with ThreadPoolExecutor(max_workers=12) as pool:
        outcomes = list(pool.map(attempt, range(24)))

    assert outcomes.count(True) == 5
    assert ledger.get_balance(account.account_id) == 5


def test_concurrent_opposite_transfers_conserve_funds(ledger, open_account):
    first = open_account(Role.agent)
    second = open_account(Role.agent)

    def move(index):
        source, target = (first, second) if index % 2 else (second, first)
        try:
            ledger.transfer(source.account_id, target.mobile_number, 900)
        except InsufficientBalance:
            pass

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(move, range(40)))

    balances = [ledger.get_balance(first.account_id), ledger.get_balance(second.account_id)]
    assert sum(balances) == 20000
    assert min(balances) >= 0


def test_idempotent_transfer_replays_without_moving_money(ledger, open_account, store):
    sender = open_account(Role.agent)
    recipient = open_account()

    first = ledger.transfer(sender.account_id, recipient.mobile_number, 100, idempotency_key="abc")
    second = ledger.transfer(sender.account_id, recipient.mobile_number, 100, idempotency_key="abc")

    assert second.replayed
    assert second.movement.movement_id == first.movement.movement_id
    assert ledger.get_balance(sender.account_id) == 9900
    assert ledger.get_balance(recipient.account_id) == 140
    event_types = [record.event_type for record in store.audit_log]
    assert "ledger.transfer" in event_types
    assert "ledger.transfer.replayed" in event_types


def test_same_key_for_cash_out_and_transfer_does_not_collide(ledger, open_account):
    sender = open_account(Role.agent)
    recipient = open_account()
    ledger.transfer(sender.account_id, recipient.mobile_number, 100, idempotency_key="k1")
    receipt = ledger.cash_out(sender.account_id, 100, idempotency_key="k1")
    assert not receipt.replayed
    assert ledger.get_balance(sender.account_id) == 9800


def test_retry_after_ambiguous_failure_applies_transfer_once(store, open_account):
    sender = open_account(Role.agent)
    recipient = open_account()
    flaky = FlakyStore(store, failures=1)
    engine = LedgerEngine(flaky, retry_attempts=3, retry_backoff_seconds=0)

    receipt = engine.transfer(sender.account_id, recipient.mobile_number, 1000)

    assert flaky.calls == 2
    assert receipt.replayed
    assert store.get_account(sender.account_id).balance == 9000
    assert store.get_account(recipient.account_id).balance == 1040


def test_store_unavailable_surfaces_after_retries(store, open_account):
    account = open_account()
    flaky = FlakyStore(store, failures=5)
    engine = LedgerEngine(flaky, retry_attempts=2, retry_backoff_seconds=0)

    with pytest.raises(StoreUnavailable) as excinfo:
        engine.cash_out(account.account_id, 10)

    assert isinstance(excinfo.value, LedgerError)
    assert flaky.calls == 2
    # the first attempt committed; the key was reused so the second replayed
    assert store.get_account(account.account_id).balance == 30


def test_audit_outage_does_not_fail_a_committed_transfer(store, open_account):
    sender = open_account(Role.agent)
    recipient = open_account()
    outage = AuditOutageStore(store, failures=1)
    engine = LedgerEngine(outage, retry_backoff_seconds=0)

    receipt = engine.transfer(sender.account_id, recipient.mobile_number, 1000)
    again = engine.transfer(sender.account_id, recipient.mobile_number, 1000)

    assert not receipt.replayed and not again.replayed
    assert store.get_account(sender.account_id).balance == 8000
    assert store.get_account(recipient.account_id).balance == 2040
    audited = [
        record.metadata["movement_id"]
        for record in store.audit_log
        if record.event_type == "ledger.transfer"
    ]
    assert audited == [receipt.movement.movement_id, again.movement.movement_id]


def test_cash_out_is_audited_with_the_movement(store, open_account):
    account = open_account()
    outage = AuditOutageStore(store, failures=1)
    engine = LedgerEngine(outage, retry_backoff_seconds=0)

    receipt = engine.cash_out(account.account_id, 15)

    assert receipt.balance == 25
    assert outage.audit_attempts == 0
    [record] = [r for r in store.audit_log if r.event_type == "ledger.cash_out"]
    assert record.account_id == account.account_id
    assert record.metadata["movement_id"] == receipt.movement.movement_id
    assert record.metadata["amount"] == 15


def test_replay_survives_audit_outage(store, open_account):
    account = open_account()
    engine = LedgerEngine(store, retry_backoff_seconds=0)
    first = engine.cash_out(account.account_id, 10, idempotency_key="withdraw-1")

    outage = AuditOutageStore(store, failures=1)
    replayed = LedgerEngine(outage, retry_backoff_seconds=0).cash_out(
        account.account_id, 10, idempotency_key="withdraw-1"
    )

    assert replayed.replayed
    assert replayed.movement.movement_id == first.movement.movement_id
    assert outage.audit_attempts == 1
    assert store.get_account(account.account_id).balance == 30
