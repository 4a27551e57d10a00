from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from ledger_service.domain.account import AccountStatus, Role
from ledger_service.domain.errors import AccountNotFound, Forbidden, InvalidStatus
from ledger_service.security.access import Principal


def test_registration_then_approval_grants_user_bonus(store, lifecycle, admin, open_account):
    account = open_account(activate=False)
    assert account.status is AccountStatus.pending
    assert account.balance == 0

    approved = lifecycle.set_status(admin, account.account_id, "active")

    assert approved.status is AccountStatus.active
    assert approved.balance == 40
    assert store.get_account(account.account_id).balance == 40


def test_agent_approval_grants_agent_bonus(lifecycle, admin, open_account):
    account = open_account(Role.agent, activate=False)
    approved = lifecycle.set_status(admin, account.account_id, AccountStatus.active)
    assert approved.balance == 10000


def test_bonus_is_not_granted_again_after_unblocking(lifecycle, admin, open_account):
    account = open_account()
    blocked = lifecycle.set_status(admin, account.account_id, "blocked")
    assert blocked.status is AccountStatus.blocked
    assert blocked.balance == 40

    reactivated = lifecycle.set_status(admin, account.account_id, "active")
    assert reactivated.status is AccountStatus.active
    assert reactivated.balance == 40


def test_pending_account_can_be_blocked_without_bonus(lifecycle, admin, open_account):
    account = open_account(activate=False)
    blocked = lifecycle.set_status(admin, account.account_id, "blocked")
    assert blocked.status is AccountStatus.blocked
    assert blocked.balance == 0

    # later approval from blocked is not the pending edge
    activated = lifecycle.set_status(admin, account.account_id, "active")
    assert activated.balance == 0


def test_concurrent_activation_grants_bonus_exactly_once(store, lifecycle, admin, open_account):
    account = open_account(activate=False)

    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(
            pool.map(lambda _: lifecycle.set_status(admin, account.account_id, "active"), range(32))
        )

    assert all(result.status is AccountStatus.active for result in results)
    final = store.get_account(account.account_id)
    assert final.status is AccountStatus.active
    assert final.balance == 40
    changes = [
        record for record in store.audit_log
        if record.event_type == "account.status_changed" and record.account_id == account.account_id
    ]
    assert len(changes) == 1
    assert changes[0].metadata == {"from": "pending", "to": "active", "bonus": 40}


def test_setting_same_status_is_a_noop(lifecycle, admin, open_account):
    account = open_account()
    again = lifecycle.set_status(admin, account.account_id, "active")
    assert again.balance == 40


def test_reentering_pending_is_rejected(lifecycle, admin, open_account):
    account = open_account()
    with pytest.raises(InvalidStatus):
        lifecycle.set_status(admin, account.account_id, "pending")


@pytest.mark.parametrize("value", ["frozen", "", None, "ACTIVE "])
def test_unknown_status_values(lifecycle, admin, open_account, value):
    account = open_account(activate=False)
    if value == "ACTIVE ":
        # normalised at the boundary
        assert lifecycle.set_status(admin, account.account_id, value).status is AccountStatus.active
        return
    with pytest.raises(InvalidStatus):
        lifecycle.set_status(admin, account.account_id, value)


def test_non_admin_cannot_change_status(lifecycle, open_account):
    account = open_account(activate=False)
    caller = Principal(account_id=account.account_id, role=Role.agent)
    with pytest.raises(Forbidden):
        lifecycle.set_status(caller, account.account_id, "active")


def test_missing_account(lifecycle, admin):
    with pytest.raises(AccountNotFound):
        lifecycle.set_status(admin, "does-not-exist", "active")


def test_activation_bonus_is_configurable(store, admin, open_account):
    from ledger_service.domain.lifecycle import AccountLifecycleManager

    manager = AccountLifecycleManager(store, agent_bonus=500, user_bonus=5)
    account = open_account(Role.agent, activate=False)
    assert manager.set_status(admin, account.account_id, "active").balance == 500
