"""Typed failures raised by the ledger domain and its stores."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    unauthenticated = "Unauthenticated"
    forbidden = "Forbidden"
    account_not_found = "AccountNotFound"
    recipient_not_found = "RecipientNotFound"
    identity_not_found = "IdentityNotFound"
    duplicate_identity = "DuplicateIdentity"
    invalid_amount = "InvalidAmount"
    invalid_recipient = "InvalidRecipient"
    insufficient_balance = "InsufficientBalance"
    invalid_status = "InvalidStatus"
    invalid_role = "InvalidRole"
    secret_mismatch = "SecretMismatch"
    store_unavailable = "StoreUnavailable"


class LedgerError(Exception):
    """Base class for every business or infrastructure failure surfaced to callers."""

    kind: ErrorKind

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class Unauthenticated(LedgerError):
    kind = ErrorKind.unauthenticated


class Forbidden(LedgerError):
    kind = ErrorKind.forbidden


class AccountNotFound(LedgerError):
    kind = ErrorKind.account_not_found


class RecipientNotFound(LedgerError):
    kind = ErrorKind.recipient_not_found


class IdentityNotFound(LedgerError):
    kind = ErrorKind.identity_not_found


class DuplicateIdentity(LedgerError):
    kind = ErrorKind.duplicate_identity


class InvalidAmount(LedgerError):
    kind = ErrorKind.invalid_amount


class InvalidRecipient(LedgerError):
    kind = ErrorKind.invalid_recipient


class InsufficientBalance(LedgerError):
    kind = ErrorKind.insufficient_balance


class InvalidStatus(LedgerError):
    kind = ErrorKind.invalid_status


class InvalidRole(LedgerError):
    kind = ErrorKind.invalid_role


class SecretMismatch(LedgerError):
    kind = ErrorKind.secret_mismatch


class StoreUnavailable(LedgerError):
    """Transient infrastructure failure; the only kind eligible for retry."""

    kind = ErrorKind.store_unavailable


class DuplicateKeyError(Exception):
    """Raised by a store when a unique constraint rejects an insert."""

    def __init__(self, field: str) -> None:
        super().__init__(f"duplicate value for {field}")
        self.field = field
