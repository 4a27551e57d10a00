"""HTTP route definitions for the ledger service."""

from __future__ import annotations

import logging

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, EmailStr, Field

from ..config import get_settings
from ..domain.account import Account, AccountStatus, Role
from ..domain.contracts import RegisterAccountInput
from ..domain.errors import ErrorKind, LedgerError
from ..domain.ledger import LedgerEngine, MovementReceipt
from ..domain.lifecycle import AccountLifecycleManager
from ..domain.service import AccountService, parse_role
from ..security.access import Principal, require_admin, resolve_principal
from ..security.rate_limiter import RateLimiter, SlidingWindowRateLimiter
from ..security.redis_rate_limiter import RedisSlidingWindowRateLimiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.unauthenticated: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.forbidden: status.HTTP_403_FORBIDDEN,
    ErrorKind.account_not_found: status.HTTP_404_NOT_FOUND,
    ErrorKind.recipient_not_found: status.HTTP_404_NOT_FOUND,
    ErrorKind.identity_not_found: status.HTTP_404_NOT_FOUND,
    ErrorKind.duplicate_identity: status.HTTP_409_CONFLICT,
    ErrorKind.invalid_amount: status.HTTP_400_BAD_REQUEST,
    ErrorKind.invalid_recipient: status.HTTP_400_BAD_REQUEST,
    ErrorKind.insufficient_balance: status.HTTP_400_BAD_REQUEST,
    ErrorKind.invalid_status: status.HTTP_400_BAD_REQUEST,
    ErrorKind.invalid_role: status.HTTP_400_BAD_REQUEST,
    ErrorKind.secret_mismatch: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.store_unavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}

# validated by the ledger engine so every malformed amount maps to InvalidAmount
AmountInput = Any


class AccountResponse(BaseModel):
    """Serialised representation of an `Account` aggregate, without the PIN hash."""

    account_id: str
    name: str
    email: str
    mobile_number: str
    role: Role
    status: AccountStatus
    balance: int
    created_at: datetime

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        """Build a response model from the domain aggregate."""
        return cls(
            account_id=account.account_id,
            name=account.name,
            email=account.email,
            mobile_number=account.mobile_number,
            role=account.role,
            status=account.status,
            balance=account.balance,
            created_at=account.created_at,
        )


class RegisterRequest(BaseModel):
    """Payload accepted when opening a new account."""

    name: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    mobile_number: str = Field(..., min_length=6, max_length=20, pattern=r"^\+?\d+$")
    pin: str = Field(..., min_length=4, max_length=12, pattern=r"^\d+$")
    role: str = Role.user.value


class RegisterResponse(BaseModel):
    account: AccountResponse
    message: str = "Registered successfully, waiting for admin approval"


class LoginRequest(BaseModel):
    """Mobile number or email plus PIN."""

    identifier: str = Field(..., min_length=1)
    pin: str = Field(..., min_length=1, max_length=72)


class TokenResponse(BaseModel):
    """Token issuance response containing the bearer token and metadata."""

    message: str = "Login Successful"
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    account_id: str
    role: Role


class BalanceResponse(BaseModel):
    balance: int


class TransferRequest(BaseModel):
    recipient_mobile: str = Field(..., min_length=1)
    amount: AmountInput


class CashOutRequest(BaseModel):
    amount: AmountInput


class MovementResponse(BaseModel):
    """Outcome of a transfer or cash-out, including the caller's new balance."""

    movement_id: str
    kind: str
    amount: int
    balance: int
    idempotent_replay: bool
    created_at: datetime

    @classmethod
    def from_receipt(cls, receipt: MovementReceipt) -> "MovementResponse":
        return cls(
            movement_id=receipt.movement.movement_id,
            kind=receipt.movement.kind.value,
            amount=receipt.movement.amount,
            balance=receipt.balance,
            idempotent_replay=receipt.replayed,
            created_at=receipt.movement.created_at,
        )


class StatusRequest(BaseModel):
    status: str


class AuditLogEntry(BaseModel):
    """Audit log response entry."""

    audit_id: int
    account_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AuditLogResponse(BaseModel):
    """Envelope for paginated audit log data."""

    items: list[AuditLogEntry]
    next_cursor: str | None = None


settings = get_settings()


def _build_rate_limiter() -> RateLimiter:
    """Instantiate the configured rate limiter backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            import redis

            client = redis.from_url(settings.redis_url)
            # ensure connectivity early to fail fast and fall back
            client.ping()
            logger.info("rate limiter configured for redis backend")
            return RedisSlidingWindowRateLimiter(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
        except Exception as exc:  # pragma: no cover - depends on a live redis
            logger.warning("redis rate limiter unavailable, falling back to in-memory: %s", exc)

    logger.info("rate limiter using in-memory backend")
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )


rate_limiter = _build_rate_limiter()


def _enforce_rate_limit(key: str) -> None:
    if not rate_limiter.allow(key):
        retry_after = rate_limiter.retry_after(key)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="rate limited",
            headers={"Retry-After": str(retry_after)} if retry_after else None,
        )


def _http_error(exc: LedgerError) -> HTTPException:
    status_code = _STATUS_BY_KIND.get(exc.kind, status.HTTP_400_BAD_REQUEST)
    headers = None
    if status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}
    return HTTPException(status_code=status_code, detail=exc.message, headers=headers)


def get_service(request: Request) -> AccountService:
    """Resolve the `AccountService` stored on the FastAPI application state."""
    service: AccountService = request.app.state.account_service
    return service


def get_ledger(request: Request) -> LedgerEngine:
    ledger: LedgerEngine = request.app.state.ledger_engine
    return ledger


def get_lifecycle(request: Request) -> AccountLifecycleManager:
    lifecycle: AccountLifecycleManager = request.app.state.lifecycle_manager
    return lifecycle


def get_principal(authorization: str | None = Header(default=None)) -> Principal:
    """Authenticate the caller from the ``Authorization: Bearer`` header."""
    try:
        return resolve_principal(authorization)
    except LedgerError as exc:
        raise _http_error(exc) from exc


def get_admin(principal: Principal = Depends(get_principal)) -> Principal:
    try:
        return require_admin(principal)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@router.post("/auth/register", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
def register(
    payload: RegisterRequest,
    service: AccountService = Depends(get_service),
) -> RegisterResponse:
    """Open a pending account that waits for administrator approval."""
    _enforce_rate_limit(f"register:{payload.mobile_number}")
    try:
        account = service.register(
            RegisterAccountInput(
                name=payload.name.strip(),
                email=payload.email,
                mobile_number=payload.mobile_number,
                pin=payload.pin,
                role=parse_role(payload.role),
            )
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return RegisterResponse(account=AccountResponse.from_domain(account))


@router.post("/auth/login", response_model=TokenResponse)
def login(
    payload: LoginRequest,
    service: AccountService = Depends(get_service),
) -> TokenResponse:
    """Exchange a mobile number or email plus PIN for a one-hour bearer token."""
    _enforce_rate_limit(f"login:{payload.identifier.strip()}")
    try:
        token = service.login(payload.identifier, payload.pin)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return TokenResponse(
        access_token=token.access_token,
        expires_in=token.expires_in,
        account_id=token.account_id,
        role=token.role,
    )


@router.get("/me", response_model=AccountResponse)
def get_me(
    principal: Principal = Depends(get_principal),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    try:
        account = service.get_account(principal)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.get("/me/balance", response_model=BalanceResponse)
def get_balance(
    principal: Principal = Depends(get_principal),
    ledger: LedgerEngine = Depends(get_ledger),
) -> BalanceResponse:
    try:
        return BalanceResponse(balance=ledger.get_balance(principal.account_id))
    except LedgerError as exc:
        raise _http_error(exc) from exc


@router.post("/transfers", response_model=MovementResponse)
def send_money(
    payload: TransferRequest,
    principal: Principal = Depends(get_principal),
    ledger: LedgerEngine = Depends(get_ledger),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> MovementResponse:
    """Send balance to the account registered with ``recipient_mobile``."""
    try:
        receipt = ledger.transfer(
            principal.account_id,
            payload.recipient_mobile,
            payload.amount,
            idempotency_key=idempotency_key,
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return MovementResponse.from_receipt(receipt)


@router.post("/cash-outs", response_model=MovementResponse)
def cash_out(
    payload: CashOutRequest,
    principal: Principal = Depends(get_principal),
    ledger: LedgerEngine = Depends(get_ledger),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> MovementResponse:
    try:
        receipt = ledger.cash_out(principal.account_id, payload.amount, idempotency_key=idempotency_key)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return MovementResponse.from_receipt(receipt)


@router.get("/admin/accounts", response_model=list[AccountResponse])
def list_accounts(
    name: str | None = Query(default=None, max_length=120),
    admin: Principal = Depends(get_admin),
    service: AccountService = Depends(get_service),
) -> list[AccountResponse]:
    """List non-admin accounts, or search them by name when ``name`` is given."""
    try:
        if name is not None:
            accounts = service.search_accounts_by_name(admin, name)
        else:
            accounts = service.list_accounts(admin)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return [AccountResponse.from_domain(account) for account in accounts]


@router.post("/admin/accounts/{account_id}/status", response_model=AccountResponse)
def set_account_status(
    account_id: str,
    payload: StatusRequest,
    admin: Principal = Depends(get_admin),
    lifecycle: AccountLifecycleManager = Depends(get_lifecycle),
) -> AccountResponse:
    """Activate or block an account; first activation grants the signup bonus."""
    try:
        account = lifecycle.set_status(admin, account_id, payload.status)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.get("/admin/audit/logs", response_model=AuditLogResponse)
def list_audit_logs(
    account_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    created_after: datetime | None = Query(default=None),
    created_before: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    admin: Principal = Depends(get_admin),
    service: AccountService = Depends(get_service),
) -> AuditLogResponse:
    """Return paginated audit events with optional filtering."""
    try:
        records, next_cursor = service.list_audit_events(
            admin,
            account_id=account_id,
            event_type=event_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=cursor,
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    items = [
        AuditLogEntry(
            audit_id=record.audit_id,
            account_id=record.account_id,
            event_type=record.event_type,
            actor=record.actor,
            metadata=record.metadata,
            created_at=record.created_at,
        )
        for record in records
    ]
    return AuditLogResponse(items=items, next_cursor=next_cursor)
