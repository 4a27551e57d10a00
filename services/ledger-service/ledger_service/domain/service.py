"""Account service orchestrating registration, login, queries and auditing."""

from __future__ import annotations

from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from typing import Any, Callable, Optional, Tuple, TypeVar

from .account import Account, AccountStatus, Role
from .contracts import AccountStore, AuditLogRecord, NewAccountRecord, RegisterAccountInput
from .errors import (
    AccountNotFound,
    DuplicateIdentity,
    DuplicateKeyError,
    Forbidden,
    IdentityNotFound,
    InvalidRole,
    SecretMismatch,
)
from .retry import retry_store_call
from ..security.access import Principal, require_admin
from ..security.pin_hasher import PinHasher
from ..security.tokens import issue_access_token

logger = logging.getLogger(__name__)

T = TypeVar("T")

SELF_SERVICE_ROLES = frozenset({Role.user, Role.agent})


def parse_role(value: Any) -> Role:
    """Map caller input onto the closed role enum."""
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).strip().lower())
    except ValueError as exc:
        raise InvalidRole("role must be one of user, agent, admin") from exc


@dataclass(slots=True)
class AccessToken:
    """Bearer credential handed back after a successful login."""

    access_token: str
    expires_in: int
    account_id: str
    role: Role


class AccountService:
    """Account workflows that sit beside the ledger engine."""

    def __init__(
        self,
        store: AccountStore,
        hasher: PinHasher,
        *,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.05,
    ) -> None:
        """Store dependencies used to orchestrate persistence and token issuance."""
        self._store = store
        self._hasher = hasher
        self._retry_attempts = retry_attempts
        self._retry_backoff = retry_backoff_seconds

    def _read(self, operation: Callable[[], T], description: str) -> T:
        return retry_store_call(
            operation,
            attempts=self._retry_attempts,
            backoff_seconds=self._retry_backoff,
            description=description,
        )

    def register(self, payload: RegisterAccountInput) -> Account:
        """Open a ``pending`` account with a zero balance.

        The lookup below only short-circuits the common duplicate case; the
        store's unique constraints decide when two registrations race. Not
        retried: a repeat after an ambiguous failure would report a duplicate.
        """
        if payload.role not in SELF_SERVICE_ROLES:
            raise Forbidden("admin accounts cannot self-register")

        existing = self._store.find_by_email(payload.email) or self._store.find_by_mobile(
            payload.mobile_number
        )
        if existing is not None:
            raise DuplicateIdentity("user already exists")

        account = self._insert(payload, AccountStatus.pending)
        self._store.write_audit_event(
            account_id=account.account_id,
            event_type="account.registered",
            actor=account.account_id,
            metadata={"role": account.role.value},
        )
        logger.info("registered account %s with role %s", account.account_id, account.role.value)
        return account

    def ensure_admin(self, *, name: str, email: str, mobile_number: str, pin: str) -> Account | None:
        """Create the configured administrator as ``active`` unless it already exists."""
        payload = RegisterAccountInput(
            name=name, email=email, mobile_number=mobile_number, pin=pin, role=Role.admin
        )
        try:
            account = self._insert(payload, AccountStatus.active)
        except DuplicateIdentity:
            logger.info("administrator account already present")
            return None
        self._store.write_audit_event(
            account_id=account.account_id,
            event_type="account.admin_bootstrapped",
            actor=None,
            metadata={},
        )
        logger.info("bootstrapped administrator account %s", account.account_id)
        return account

    def _insert(self, payload: RegisterAccountInput, status: AccountStatus) -> Account:
        record = NewAccountRecord(
            name=payload.name,
            email=payload.email.lower(),
            mobile_number=payload.mobile_number,
            pin_hash=self._hasher.hash(payload.pin),
            role=payload.role,
            status=status,
        )
        try:
            return self._store.insert_account(record)
        except DuplicateKeyError as exc:
            logger.info("registration rejected by unique constraint on %s", exc.field)
            raise DuplicateIdentity("user already exists") from exc

    def login(self, identifier: str, pin: str) -> AccessToken:
        """Verify a mobile number or email plus PIN and issue a bearer token."""
        account = self._read(lambda: self._store.find_by_identifier(identifier.strip()), "login lookup")
        if account is None:
            raise IdentityNotFound("user not found")
        if not self._hasher.verify(pin, account.pin_hash):
            raise SecretMismatch("invalid PIN")

        token, expires_in = issue_access_token(subject=account.account_id, role=account.role.value)
        self._store.write_audit_event(
            account_id=account.account_id,
            event_type="auth.login",
            actor=account.account_id,
            metadata={},
        )
        return AccessToken(
            access_token=token,
            expires_in=expires_in,
            account_id=account.account_id,
            role=account.role,
        )

    def get_account(self, principal: Principal) -> Account:
        """Return the caller's own account."""
        account = self._read(lambda: self._store.get_account(principal.account_id), "account lookup")
        if account is None:
            raise AccountNotFound("user not found")
        return account

    def list_accounts(self, actor: Principal) -> list[Account]:
        """Return every non-admin account for an administrator."""
        require_admin(actor)
        return self._read(lambda: self._store.list_accounts(), "account listing")

    def search_accounts_by_name(self, actor: Principal, name: str) -> list[Account]:
        """Case-insensitive literal substring search over non-admin account names."""
        require_admin(actor)
        query = name.strip()
        if not query:
            return self.list_accounts(actor)
        return self._read(lambda: self._store.list_accounts(name_query=query), "account search")

    def list_audit_events(
        self,
        actor: Principal,
        *,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[AuditLogRecord], str | None]:
        """Return audit log records with optional filters and cursor pagination."""
        require_admin(actor)
        decoded_cursor: Optional[Tuple[datetime, int]] = None
        if cursor:
            decoded_cursor = self._decode_cursor(cursor)
        records, next_cursor_tuple = self._read(
            lambda: self._store.list_audit_events(
                account_id=account_id,
                event_type=event_type,
                created_after=_as_utc(created_after),
                created_before=_as_utc(created_before),
                limit=limit,
                cursor=decoded_cursor,
            ),
            "audit listing",
        )
        next_cursor = self._encode_cursor(next_cursor_tuple) if next_cursor_tuple else None
        return records, next_cursor

    def _encode_cursor(self, cursor: Tuple[datetime, int] | None) -> str | None:
        if cursor is None:
            return None
        created_at, audit_id = cursor
        payload = json.dumps({"created_at": created_at.isoformat(), "audit_id": audit_id})
        return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")

    def _decode_cursor(self, cursor: str) -> Tuple[datetime, int]:
        try:
            data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
            created_at = datetime.fromisoformat(data["created_at"])
            audit_id = int(data["audit_id"])
            return created_at, audit_id
        except (ValueError, KeyError, TypeError) as exc:
            raise ValueError("invalid cursor") from exc


def _as_utc(value: datetime | None) -> datetime | None:
    # naive filter values are taken as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
