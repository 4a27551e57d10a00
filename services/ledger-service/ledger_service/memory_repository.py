"""Thread-safe in-process account store used for local development and tests."""

from __future__ import annotations

import dataclasses
import uuid
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Optional, Tuple

from .domain.account import Account, AccountStatus, LedgerMovement, MovementKind, Role
from .domain.contracts import (
    AuditLogRecord,
    MovementOutcome,
    MovementResult,
    NewAccountRecord,
    movement_audit_event,
)
from .domain.errors import DuplicateKeyError


class InMemoryAccountRepository:
    """Account store honouring the same atomicity contract as the Postgres store.

    Every mutation runs inside one critical section, so each conditional update
    observes and writes the current state indivisibly. Returned accounts are
    copies; callers never hold a live reference into the store.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._accounts: dict[str, Account] = {}
        self._email_index: dict[str, str] = {}
        self._mobile_index: dict[str, str] = {}
        self._movements: dict[tuple[str, MovementKind, str], LedgerMovement] = {}
        self.audit_log: list[AuditLogRecord] = []
        self._audit_seq = 0

    def insert_account(self, record: NewAccountRecord) -> Account:
        email = record.email.lower()
        with self._lock:
            if email in self._email_index:
                raise DuplicateKeyError("email")
            if record.mobile_number in self._mobile_index:
                raise DuplicateKeyError("mobile_number")
            now = datetime.now(timezone.utc)
            account = Account(
                account_id=str(uuid.uuid4()),
                name=record.name,
                email=email,
                mobile_number=record.mobile_number,
                pin_hash=record.pin_hash,
                role=record.role,
                status=record.status,
                balance=0,
                created_at=now,
                updated_at=now,
            )
            self._accounts[account.account_id] = account
            self._email_index[email] = account.account_id
            self._mobile_index[record.mobile_number] = account.account_id
            return dataclasses.replace(account)

    def get_account(self, account_id: str) -> Account | None:
        with self._lock:
            account = self._accounts.get(account_id)
            return dataclasses.replace(account) if account else None

    def find_by_email(self, email: str) -> Account | None:
        with self._lock:
            account_id = self._email_index.get(email.lower())
            return self.get_account(account_id) if account_id else None

    def find_by_mobile(self, mobile_number: str) -> Account | None:
        with self._lock:
            account_id = self._mobile_index.get(mobile_number)
            return self.get_account(account_id) if account_id else None

    def find_by_identifier(self, identifier: str) -> Account | None:
        with self._lock:
            return self.find_by_mobile(identifier) or self.find_by_email(identifier)

    def list_accounts(self, *, name_query: str | None = None) -> list[Account]:
        needle = name_query.lower() if name_query else None
        with self._lock:
            accounts = [
                dataclasses.replace(account)
                for account in self._accounts.values()
                if account.role is not Role.admin and (needle is None or needle in account.name.lower())
            ]
        accounts.sort(key=lambda account: account.created_at)
        return accounts

    def transition_status(
        self,
        account_id: str,
        *,
        expected: AccountStatus,
        new: AccountStatus,
        balance_delta: int = 0,
    ) -> Account | None:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None or account.status is not expected:
                return None
            account.status = new
            account.balance += balance_delta
            account.updated_at = datetime.now(timezone.utc)
            return dataclasses.replace(account)

    def transfer(
        self,
        *,
        sender_id: str,
        recipient_id: str,
        amount: int,
        idempotency_key: str,
    ) -> MovementResult:
        with self._lock:
            replay = self._replay(sender_id, MovementKind.transfer, idempotency_key)
            if replay is not None:
                return replay
            sender = self._accounts.get(sender_id)
            failure = self._check_debit(sender, amount)
            if failure is not None:
                return MovementResult(outcome=failure)
            recipient = self._accounts.get(recipient_id)
            if recipient is None:
                return MovementResult(outcome=MovementOutcome.target_missing)
            now = datetime.now(timezone.utc)
            sender.balance -= amount
            sender.updated_at = now
            recipient.balance += amount
            recipient.updated_at = now
            movement = self._record(MovementKind.transfer, sender_id, recipient_id, amount, idempotency_key, now)
            return MovementResult(
                outcome=MovementOutcome.completed, movement=movement, source_balance=sender.balance
            )

    def cash_out(self, *, account_id: str, amount: int, idempotency_key: str) -> MovementResult:
        with self._lock:
            replay = self._replay(account_id, MovementKind.cash_out, idempotency_key)
            if replay is not None:
                return replay
            account = self._accounts.get(account_id)
            failure = self._check_debit(account, amount)
            if failure is not None:
                return MovementResult(outcome=failure)
            now = datetime.now(timezone.utc)
            account.balance -= amount
            account.updated_at = now
            movement = self._record(MovementKind.cash_out, account_id, None, amount, idempotency_key, now)
            return MovementResult(
                outcome=MovementOutcome.completed, movement=movement, source_balance=account.balance
            )

    def _replay(self, source_id: str, kind: MovementKind, idempotency_key: str) -> MovementResult | None:
        movement = self._movements.get((source_id, kind, idempotency_key))
        if movement is None:
            return None
        source = self._accounts[source_id]
        return MovementResult(
            outcome=MovementOutcome.replayed,
            movement=dataclasses.replace(movement),
            source_balance=source.balance,
        )

    @staticmethod
    def _check_debit(account: Account | None, amount: int) -> MovementOutcome | None:
        if account is None:
            return MovementOutcome.source_missing
        if account.status is not AccountStatus.active:
            return MovementOutcome.source_inactive
        if account.balance < amount:
            return MovementOutcome.insufficient_balance
        return None

    def _record(
        self,
        kind: MovementKind,
        source_id: str,
        target_id: str | None,
        amount: int,
        idempotency_key: str,
        now: datetime,
    ) -> LedgerMovement:
        movement = LedgerMovement(
            movement_id=str(uuid.uuid4()),
            kind=kind,
            source_account_id=source_id,
            target_account_id=target_id,
            amount=amount,
            idempotency_key=idempotency_key,
            created_at=now,
        )
        self._movements[(source_id, kind, idempotency_key)] = movement
        event_type, metadata = movement_audit_event(movement)
        self.write_audit_event(account_id=source_id, event_type=event_type, actor=source_id, metadata=metadata)
        return dataclasses.replace(movement)

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        with self._lock:
            self._audit_seq += 1
            self.audit_log.append(
                AuditLogRecord(
                    audit_id=self._audit_seq,
                    account_id=account_id,
                    event_type=event_type,
                    actor=actor,
                    metadata=dict(metadata or {}),
                    created_at=datetime.now(timezone.utc),
                )
            )

    def list_audit_events(
        self,
        *,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: Tuple[datetime, int] | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[Tuple[datetime, int]]]:
        limit = max(1, min(limit, 100))
        with self._lock:
            results = list(self.audit_log)
        if account_id:
            results = [record for record in results if record.account_id == account_id]
        if event_type:
            results = [record for record in results if record.event_type == event_type]
        if created_after:
            results = [record for record in results if record.created_at >= created_after]
        if created_before:
            results = [record for record in results if record.created_at <= created_before]
        results.sort(key=lambda r: (r.created_at, r.audit_id), reverse=True)
        if cursor:
            results = [record for record in results if (record.created_at, record.audit_id) < cursor]
        page = results[:limit]
        next_cursor = None
        if len(results) > limit:
            last = page[-1]
            next_cursor = (last.created_at, last.audit_id)
        return page, next_cursor
