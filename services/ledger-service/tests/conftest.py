from __future__ import annotations

import itertools

import pytest

from ledger_service.domain.account import Account, Role
from ledger_service.domain.contracts import RegisterAccountInput
from ledger_service.domain.ledger import LedgerEngine
from ledger_service.domain.lifecycle import AccountLifecycleManager
from ledger_service.domain.service import AccountService
from ledger_service.memory_repository import InMemoryAccountRepository
from ledger_service.security.access import Principal
from ledger_service.security.pin_hasher import PinHasher

_sequence = itertools.count(1)


@pytest.fixture
def store() -> InMemoryAccountRepository:
    return InMemoryAccountRepository()


@pytest.fixture
def service(store) -> AccountService:
    # bcrypt's minimum cost keeps the suite fast
    return AccountService(store, PinHasher(rounds=4), retry_attempts=3, retry_backoff_seconds=0)


@pytest.fixture
def ledger(store) -> LedgerEngine:
    return LedgerEngine(store, retry_attempts=3, retry_backoff_seconds=0)


@pytest.fixture
def lifecycle(store) -> AccountLifecycleManager:
    return AccountLifecycleManager(store, retry_attempts=3, retry_backoff_seconds=0)


@pytest.fixture
def admin(service) -> Principal:
    account = service.ensure_admin(
        name="Root Admin", email="admin@example.com", mobile_number="01700000000", pin="9999"
    )
    return Principal(account_id=account.account_id, role=Role.admin)


@pytest.fixture
def open_account(service, lifecycle, admin):
    """Factory registering an account and optionally approving it."""

    def _open(role: Role = Role.user, *, activate: bool = True, name: str | None = None) -> Account:
        n = next(_sequence)
        account = service.register(
            RegisterAccountInput(
                name=name or f"Holder {n}",
                email=f"holder{n}@example.com",
                mobile_number=f"0181{n:07d}",
                pin="1234",
                role=role,
            )
        )
        if activate:
            account = lifecycle.set_status(admin, account.account_id, "active")
        return account

    return _open
