"""Domain-level request and result contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol, Tuple

from .account import Account, AccountStatus, LedgerMovement, Role


@dataclass(slots=True)
class RegisterAccountInput:
    """Validated inputs required to open a new account."""

    name: str
    email: str
    mobile_number: str
    pin: str
    role: Role


@dataclass(slots=True)
class NewAccountRecord:
    """Fields the store persists for a freshly created account."""

    name: str
    email: str
    mobile_number: str
    pin_hash: str
    role: Role
    status: AccountStatus = AccountStatus.pending


class MovementOutcome(str, Enum):
    """Result of an atomic balance movement attempted by the store."""

    completed = "completed"
    replayed = "replayed"
    insufficient_balance = "insufficient_balance"
    source_inactive = "source_inactive"
    source_missing = "source_missing"
    target_missing = "target_missing"


@dataclass(slots=True)
class MovementResult:
    """Store response for a transfer or cash-out attempt."""

    outcome: MovementOutcome
    movement: LedgerMovement | None = None
    source_balance: int | None = None


def movement_audit_event(movement: LedgerMovement, *, replayed: bool = False) -> tuple[str, dict[str, Any]]:
    """Event type and metadata describing a ledger movement in the audit log."""
    event_type = f"ledger.{movement.kind.value}"
    if replayed:
        event_type = f"{event_type}.replayed"
    metadata = {
        "movement_id": movement.movement_id,
        "amount": movement.amount,
        "target_account_id": movement.target_account_id,
        "idempotency_key": movement.idempotency_key,
    }
    return event_type, metadata


@dataclass(slots=True)
class AuditLogRecord:
    """Row projection for items in the ledger audit log."""

    audit_id: int
    account_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AccountStore(Protocol):
    """Persistence contract implemented by the Postgres and in-memory stores."""

    def insert_account(self, record: NewAccountRecord) -> Account: ...

    def get_account(self, account_id: str) -> Account | None: ...

    def find_by_email(self, email: str) -> Account | None: ...

    def find_by_mobile(self, mobile_number: str) -> Account | None: ...

    def find_by_identifier(self, identifier: str) -> Account | None: ...

    def list_accounts(self, *, name_query: str | None = None) -> list[Account]: ...

    def transition_status(
        self,
        account_id: str,
        *,
        expected: AccountStatus,
        new: AccountStatus,
        balance_delta: int = 0,
    ) -> Account | None: ...

    def transfer(
        self,
        *,
        sender_id: str,
        recipient_id: str,
        amount: int,
        idempotency_key: str,
    ) -> MovementResult:
        """Apply a transfer and its `ledger.transfer` audit row as one atomic unit."""
        ...

    def cash_out(self, *, account_id: str, amount: int, idempotency_key: str) -> MovementResult:
        """Apply a cash-out and its `ledger.cash_out` audit row as one atomic unit."""
        ...

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...

    def list_audit_events(
        self,
        *,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: Tuple[datetime, int] | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[Tuple[datetime, int]]]: ...
