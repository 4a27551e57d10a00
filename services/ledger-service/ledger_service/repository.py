"""Postgres repository for accounts, ledger movements and the audit log."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional, Tuple

import psycopg
from psycopg import Connection
from psycopg.errors import UniqueViolation
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool, PoolTimeout

from .domain.account import Account, AccountStatus, LedgerMovement, MovementKind, Role
from .domain.contracts import (
    AuditLogRecord,
    MovementOutcome,
    MovementResult,
    NewAccountRecord,
    movement_audit_event,
)
from .domain.errors import DuplicateKeyError, StoreUnavailable

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        account_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL,
        mobile_number TEXT NOT NULL,
        pin_hash TEXT NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('user', 'agent', 'admin')),
        status TEXT NOT NULL CHECK (status IN ('pending', 'active', 'blocked')),
        balance BIGINT NOT NULL DEFAULT 0 CHECK (balance >= 0),
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT accounts_email_key UNIQUE (email),
        CONSTRAINT accounts_mobile_number_key UNIQUE (mobile_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_movements (
        movement_id TEXT PRIMARY KEY,
        kind TEXT NOT NULL CHECK (kind IN ('transfer', 'cash_out')),
        source_account_id TEXT NOT NULL REFERENCES accounts (account_id),
        target_account_id TEXT REFERENCES accounts (account_id),
        amount BIGINT NOT NULL CHECK (amount > 0),
        idempotency_key TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT ledger_movements_idempotency_key UNIQUE (source_account_id, kind, idempotency_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_audit_log (
        audit_id BIGSERIAL PRIMARY KEY,
        account_id TEXT,
        event_type TEXT NOT NULL,
        actor TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS ledger_audit_log_created_idx ON ledger_audit_log (created_at DESC, audit_id DESC)",
)

_ACCOUNT_COLUMNS = (
    "account_id, name, email, mobile_number, pin_hash, role, status, balance, created_at, updated_at"
)
_MOVEMENT_COLUMNS = (
    "movement_id, kind, source_account_id, target_account_id, amount, idempotency_key, created_at"
)
_CONSTRAINT_FIELDS = {
    "accounts_email_key": "email",
    "accounts_mobile_number_key": "mobile_number",
}


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class AccountRepository:
    """Postgres-backed account store built on single-statement conditional updates."""

    def __init__(self, pool: ConnectionPool, *, timeout_seconds: float = 5.0) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool
        self._timeout = timeout_seconds

    @contextmanager
    def _connection(self) -> Iterator[Connection]:
        """Check out a pooled connection, translating connectivity failures."""
        try:
            with self._pool.connection(timeout=self._timeout) as conn:
                yield conn
        except (PoolTimeout, psycopg.OperationalError) as exc:
            logger.warning("account store unavailable: %s", exc.__class__.__name__)
            raise StoreUnavailable("account store temporarily unavailable") from exc

    def ensure_schema(self) -> None:
        """Create tables and unique constraints when they do not exist yet."""
        with self._connection() as conn:
            with conn.cursor() as cur:
                for statement in SCHEMA_STATEMENTS:
                    cur.execute(statement)
            conn.commit()

    def insert_account(self, record: NewAccountRecord) -> Account:
        """Insert an account; the unique constraints decide duplicate identities."""
        now = datetime.now(timezone.utc)
        with self._connection() as conn:
            try:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        f"""
                        INSERT INTO accounts ({_ACCOUNT_COLUMNS})
                        VALUES (%s, %s, %s, %s, %s, %s, %s, 0, %s, %s)
                        RETURNING {_ACCOUNT_COLUMNS}
                        """,
                        (
                            str(uuid.uuid4()),
                            record.name,
                            record.email.lower(),
                            record.mobile_number,
                            record.pin_hash,
                            record.role.value,
                            record.status.value,
                            now,
                            now,
                        ),
                    )
                    row = cur.fetchone()
            except UniqueViolation as exc:
                conn.rollback()
                constraint = exc.diag.constraint_name or ""
                raise DuplicateKeyError(_CONSTRAINT_FIELDS.get(constraint, constraint)) from exc
            conn.commit()
        return self._map_account(row)

    def get_account(self, account_id: str) -> Account | None:
        return self._fetch_account("account_id = %s", (account_id,))

    def find_by_email(self, email: str) -> Account | None:
        return self._fetch_account("email = %s", (email.lower(),))

    def find_by_mobile(self, mobile_number: str) -> Account | None:
        return self._fetch_account("mobile_number = %s", (mobile_number,))

    def find_by_identifier(self, identifier: str) -> Account | None:
        """Look an account up by mobile number or (case-insensitive) email."""
        return self._fetch_account(
            "mobile_number = %s OR email = %s", (identifier, identifier.lower())
        )

    def _fetch_account(self, where_sql: str, params: tuple[Any, ...]) -> Account | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE {where_sql}", params)
                row = cur.fetchone()
        if not row:
            return None
        return self._map_account(row)

    def list_accounts(self, *, name_query: str | None = None) -> list[Account]:
        """Return non-admin accounts, optionally filtered by a literal name fragment."""
        clauses = ["role <> %s"]
        params: list[Any] = [Role.admin.value]
        if name_query:
            clauses.append("name ILIKE %s ESCAPE '\\'")
            params.append(f"%{_escape_like(name_query)}%")
        where_sql = " AND ".join(clauses)
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE {where_sql} ORDER BY created_at, account_id",
                    params,
                )
                rows = cur.fetchall()
        return [self._map_account(row) for row in rows]

    def transition_status(
        self,
        account_id: str,
        *,
        expected: AccountStatus,
        new: AccountStatus,
        balance_delta: int = 0,
    ) -> Account | None:
        """Set ``status`` (and add ``balance_delta``) only while the stored status is ``expected``."""
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE accounts
                    SET status = %s, balance = balance + %s, updated_at = NOW()
                    WHERE account_id = %s AND status = %s
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (new.value, balance_delta, account_id, expected.value),
                )
                row = cur.fetchone()
            conn.commit()
        if not row:
            return None
        return self._map_account(row)

    def transfer(
        self,
        *,
        sender_id: str,
        recipient_id: str,
        amount: int,
        idempotency_key: str,
    ) -> MovementResult:
        """Debit the sender, credit the recipient and audit the movement in one transaction."""
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                replay = self._find_replay(cur, sender_id, MovementKind.transfer, idempotency_key)
                if replay is not None:
                    conn.rollback()
                    return replay

                # lock both rows in a stable order so opposite transfers cannot deadlock
                cur.execute(
                    "SELECT account_id FROM accounts WHERE account_id = ANY(%s) ORDER BY account_id FOR UPDATE",
                    ([sender_id, recipient_id],),
                )
                source_balance = self._conditional_debit(cur, sender_id, amount)
                if source_balance is None:
                    outcome = self._classify_debit_failure(cur, sender_id, amount)
                    conn.rollback()
                    return MovementResult(outcome=outcome)

                cur.execute(
                    "UPDATE accounts SET balance = balance + %s, updated_at = NOW() WHERE account_id = %s RETURNING account_id",
                    (amount, recipient_id),
                )
                if cur.fetchone() is None:
                    conn.rollback()
                    return MovementResult(outcome=MovementOutcome.target_missing)

                movement = self._insert_movement(
                    conn, cur, MovementKind.transfer, sender_id, recipient_id, amount, idempotency_key
                )
                if movement is None:
                    return self._replay_after_conflict(conn, sender_id, MovementKind.transfer, idempotency_key)
                self._insert_movement_audit(cur, movement)
            conn.commit()
        return MovementResult(
            outcome=MovementOutcome.completed, movement=movement, source_balance=source_balance
        )

    def cash_out(self, *, account_id: str, amount: int, idempotency_key: str) -> MovementResult:
        """Conditionally debit an account and record the withdrawal with its audit row."""
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                replay = self._find_replay(cur, account_id, MovementKind.cash_out, idempotency_key)
                if replay is not None:
                    conn.rollback()
                    return replay

                source_balance = self._conditional_debit(cur, account_id, amount)
                if source_balance is None:
                    outcome = self._classify_debit_failure(cur, account_id, amount)
                    conn.rollback()
                    return MovementResult(outcome=outcome)

                movement = self._insert_movement(
                    conn, cur, MovementKind.cash_out, account_id, None, amount, idempotency_key
                )
                if movement is None:
                    return self._replay_after_conflict(conn, account_id, MovementKind.cash_out, idempotency_key)
                self._insert_movement_audit(cur, movement)
            conn.commit()
        return MovementResult(
            outcome=MovementOutcome.completed, movement=movement, source_balance=source_balance
        )

    def _conditional_debit(self, cur: psycopg.Cursor, account_id: str, amount: int) -> int | None:
        """Decrement the balance only while it covers ``amount`` on an active account."""
        cur.execute(
            """
            UPDATE accounts
            SET balance = balance - %s, updated_at = NOW()
            WHERE account_id = %s AND status = %s AND balance >= %s
            RETURNING balance
            """,
            (amount, account_id, AccountStatus.active.value, amount),
        )
        row = cur.fetchone()
        return row[0] if row else None

    def _classify_debit_failure(self, cur: psycopg.Cursor, account_id: str, amount: int) -> MovementOutcome:
        cur.execute("SELECT status, balance FROM accounts WHERE account_id = %s", (account_id,))
        row = cur.fetchone()
        if row is None:
            return MovementOutcome.source_missing
        if row[0] != AccountStatus.active.value:
            return MovementOutcome.source_inactive
        return MovementOutcome.insufficient_balance

    def _insert_movement(
        self,
        conn: Connection,
        cur: psycopg.Cursor,
        kind: MovementKind,
        source_id: str,
        target_id: str | None,
        amount: int,
        idempotency_key: str,
    ) -> LedgerMovement | None:
        """Record the movement; ``None`` means a concurrent request already used the key."""
        try:
            cur.execute(
                f"""
                INSERT INTO ledger_movements ({_MOVEMENT_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING {_MOVEMENT_COLUMNS}
                """,
                (
                    str(uuid.uuid4()),
                    kind.value,
                    source_id,
                    target_id,
                    amount,
                    idempotency_key,
                    datetime.now(timezone.utc),
                ),
            )
        except UniqueViolation:
            conn.rollback()
            return None
        return self._map_movement(cur.fetchone())

    def _replay_after_conflict(
        self, conn: Connection, source_id: str, kind: MovementKind, idempotency_key: str
    ) -> MovementResult:
        with conn.cursor(row_factory=tuple_row) as cur:
            replay = self._find_replay(cur, source_id, kind, idempotency_key)
        conn.rollback()
        if replay is None:
            raise StoreUnavailable("conflicting ledger movement could not be read back")
        return replay

    def _find_replay(
        self, cur: psycopg.Cursor, source_id: str, kind: MovementKind, idempotency_key: str
    ) -> MovementResult | None:
        cur.execute(
            f"""
            SELECT {_MOVEMENT_COLUMNS}
            FROM ledger_movements
            WHERE source_account_id = %s AND kind = %s AND idempotency_key = %s
            """,
            (source_id, kind.value, idempotency_key),
        )
        row = cur.fetchone()
        if not row:
            return None
        movement = self._map_movement(row)
        cur.execute("SELECT balance FROM accounts WHERE account_id = %s", (source_id,))
        balance_row = cur.fetchone()
        return MovementResult(
            outcome=MovementOutcome.replayed,
            movement=movement,
            source_balance=balance_row[0] if balance_row else None,
        )

    def _map_account(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        return Account(
            account_id=row[0],
            name=row[1],
            email=row[2],
            mobile_number=row[3],
            pin_hash=row[4],
            role=Role(row[5]),
            status=AccountStatus(row[6]),
            balance=int(row[7]),
            created_at=row[8],
            updated_at=row[9],
        )

    def _map_movement(self, row: tuple) -> LedgerMovement:
        return LedgerMovement(
            movement_id=row[0],
            kind=MovementKind(row[1]),
            source_account_id=row[2],
            target_account_id=row[3],
            amount=int(row[4]),
            idempotency_key=row[5],
            created_at=row[6],
        )

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit trail entry capturing ledger activity."""
        with self._connection() as conn:
            with conn.cursor() as cur:
                self._insert_audit(cur, account_id, event_type, actor, metadata)
            conn.commit()

    def _insert_audit(
        self,
        cur: psycopg.Cursor,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None,
    ) -> None:
        cur.execute(
            """
            INSERT INTO ledger_audit_log (account_id, event_type, actor, metadata)
            VALUES (%s, %s, %s, %s)
            """,
            (account_id, event_type, actor, Json(metadata or {})),
        )

    def _insert_movement_audit(self, cur: psycopg.Cursor, movement: LedgerMovement) -> None:
        event_type, metadata = movement_audit_event(movement)
        source_id = movement.source_account_id
        self._insert_audit(cur, source_id, event_type, source_id, metadata)

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
        """Return audit log entries with optional filters and keyset pagination."""
        limit = max(1, min(limit, 100))
        clauses = ["TRUE"]
        params: list[Any] = []

        if account_id:
            clauses.append("account_id = %s")
            params.append(account_id)
        if event_type:
            clauses.append("event_type = %s")
            params.append(event_type)
        if created_after:
            clauses.append("created_at >= %s")
            params.append(created_after)
        if created_before:
            clauses.append("created_at <= %s")
            params.append(created_before)
        if cursor:
            clauses.append("(created_at, audit_id) < (%s, %s)")
            params.extend(cursor)

        where_sql = " AND ".join(clauses)
        # one extra row tells whether another page exists
        query = f"""
            SELECT audit_id, account_id, event_type, actor, metadata, created_at
            FROM ledger_audit_log
            WHERE {where_sql}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
        """
        params.append(limit + 1)

        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                rows = cur.fetchall()

        records = [
            AuditLogRecord(
                audit_id=row[0],
                account_id=row[1],
                event_type=row[2],
                actor=row[3],
                metadata=row[4] or {},
                created_at=row[5],
            )
            for row in rows[:limit]
        ]
        next_cursor: Tuple[datetime, int] | None = None
        if len(rows) > limit:
            last = records[-1]
            next_cursor = (last.created_at, last.audit_id)
        return records, next_cursor
