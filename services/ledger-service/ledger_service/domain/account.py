from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    user = "user"
    agent = "agent"
    admin = "admin"


class AccountStatus(str, Enum):
    pending = "pending"
    active = "active"
    blocked = "blocked"


class MovementKind(str, Enum):
    transfer = "transfer"
    cash_out = "cash_out"


# Status edges an administrator may apply. Re-entering ``pending`` is never allowed.
ALLOWED_TRANSITIONS: frozenset[tuple[AccountStatus, AccountStatus]] = frozenset(
    {
        (AccountStatus.pending, AccountStatus.active),
        (AccountStatus.pending, AccountStatus.blocked),
        (AccountStatus.active, AccountStatus.blocked),
        (AccountStatus.blocked, AccountStatus.active),
    }
)


@dataclass(slots=True)
class Account:
    """Aggregate root for a ledger account and its balance."""

    account_id: str
    name: str
    email: str
    mobile_number: str
    pin_hash: str
    role: Role
    status: AccountStatus
    balance: int
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status is AccountStatus.active


@dataclass(slots=True)
class LedgerMovement:
    """Persisted record of one transfer or cash-out."""

    movement_id: str
    kind: MovementKind
    source_account_id: str
    target_account_id: str | None
    amount: int
    idempotency_key: str
    created_at: datetime
