"""Balance-affecting operations: transfer, cash-out and balance reads."""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from .account import LedgerMovement
from .contracts import AccountStore, MovementOutcome, MovementResult, movement_audit_event
from .errors import (
    AccountNotFound,
    Forbidden,
    InsufficientBalance,
    InvalidAmount,
    InvalidRecipient,
    RecipientNotFound,
    StoreUnavailable,
)
from .retry import retry_store_call

logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"^\d+$")

T = TypeVar("T")


@dataclass(slots=True)
class MovementReceipt:
    """What the caller learns about a completed (or replayed) movement."""

    movement: LedgerMovement
    balance: int
    replayed: bool


def parse_amount(value: Any) -> int:
    """Validate a caller-supplied amount in the smallest currency unit."""
    if isinstance(value, bool):
        raise InvalidAmount("amount must be a positive whole number")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, float) and value.is_integer():
        amount = int(value)
    elif isinstance(value, str) and _DIGITS.match(value.strip()):
        amount = int(value.strip())
    else:
        raise InvalidAmount("amount must be a positive whole number")
    if amount <= 0:
        raise InvalidAmount("amount must be greater than zero")
    return amount


class LedgerEngine:
    """Applies transfers and cash-outs through the store's atomic conditional updates."""

    def __init__(
        self,
        store: AccountStore,
        *,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.05,
    ) -> None:
        self._store = store
        self._retry_attempts = retry_attempts
        self._retry_backoff = retry_backoff_seconds

    def _retry(self, operation: Callable[[], T], description: str) -> T:
        return retry_store_call(
            operation,
            attempts=self._retry_attempts,
            backoff_seconds=self._retry_backoff,
            description=description,
        )

    def get_balance(self, account_id: str) -> int:
        account = self._retry(lambda: self._store.get_account(account_id), "balance lookup")
        if account is None:
            raise AccountNotFound("account not found")
        return account.balance

    def transfer(
        self,
        sender_id: str,
        recipient_mobile: str,
        amount: Any,
        *,
        idempotency_key: str | None = None,
    ) -> MovementReceipt:
        """Move ``amount`` from the sender to the account owning ``recipient_mobile``.

        The recipient is resolved before anything is debited. The debit, the
        credit, the movement record and its audit row then commit as one unit
        in the store; retries after a transient failure replay through the
        idempotency key.
        """
        value = parse_amount(amount)
        key = idempotency_key or str(uuid.uuid4())

        recipient = self._retry(lambda: self._store.find_by_mobile(recipient_mobile), "recipient lookup")
        if recipient is None:
            raise RecipientNotFound("recipient not found")
        if recipient.account_id == sender_id:
            raise InvalidRecipient("cannot send money to your own account")

        result = self._retry(
            lambda: self._store.transfer(
                sender_id=sender_id,
                recipient_id=recipient.account_id,
                amount=value,
                idempotency_key=key,
            ),
            "transfer",
        )
        receipt = self._receipt(result)
        self._audit_replay(sender_id, receipt)
        logger.info(
            "transfer %s %s: amount=%s replayed=%s",
            receipt.movement.movement_id,
            result.outcome.value,
            value,
            receipt.replayed,
        )
        return receipt

    def cash_out(self, account_id: str, amount: Any, *, idempotency_key: str | None = None) -> MovementReceipt:
        """Withdraw ``amount`` with a single conditional decrement."""
        value = parse_amount(amount)
        key = idempotency_key or str(uuid.uuid4())
        result = self._retry(
            lambda: self._store.cash_out(account_id=account_id, amount=value, idempotency_key=key),
            "cash-out",
        )
        receipt = self._receipt(result)
        self._audit_replay(account_id, receipt)
        logger.info(
            "cash-out %s %s: amount=%s replayed=%s",
            receipt.movement.movement_id,
            result.outcome.value,
            value,
            receipt.replayed,
        )
        return receipt

    def _audit_replay(self, account_id: str, receipt: MovementReceipt) -> None:
        # completed movements are audited by the store in the same commit
        if not receipt.replayed:
            return
        event_type, metadata = movement_audit_event(receipt.movement, replayed=True)
        try:
            self._store.write_audit_event(
                account_id=account_id,
                event_type=event_type,
                actor=account_id,
                metadata=metadata,
            )
        except StoreUnavailable as exc:
            logger.warning(
                "audit write for replayed movement %s failed: %s", receipt.movement.movement_id, exc
            )

    def _receipt(self, result: MovementResult) -> MovementReceipt:
        outcome = result.outcome
        if outcome is MovementOutcome.insufficient_balance:
            raise InsufficientBalance("insufficient balance")
        if outcome is MovementOutcome.source_inactive:
            raise Forbidden("account is not active")
        if outcome is MovementOutcome.source_missing:
            raise AccountNotFound("account not found")
        if outcome is MovementOutcome.target_missing:
            raise RecipientNotFound("recipient not found")
        if result.movement is None or result.source_balance is None:
            raise StoreUnavailable("ledger movement result incomplete")
        return MovementReceipt(
            movement=result.movement,
            balance=result.source_balance,
            replayed=outcome is MovementOutcome.replayed,
        )
