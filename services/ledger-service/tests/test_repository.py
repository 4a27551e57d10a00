"""Transaction handling of the Postgres store, checked against a scripted connection."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone

from ledger_service.domain.contracts import MovementOutcome
from ledger_service.repository import AccountRepository

CREATED = datetime(2024, 1, 1, tzinfo=timezone.utc)


class ScriptedCursor:
    def __init__(self, conn: "ScriptedConnection") -> None:
        self._conn = conn

    def __enter__(self) -> "ScriptedCursor":
        return self

    def __exit__(self, *exc_info) -> bool:
        return False

    def execute(self, query: str, params=None) -> None:
        self._conn.events.append(("execute", " ".join(query.split())))

    def fetchone(self):
        return self._conn.rows.pop(0)


class ScriptedConnection:
    """Replays canned rows in order and records statements and transaction ends."""

    def __init__(self, rows) -> None:
        self.rows = list(rows)
        self.events: list[tuple[str, ...]] = []

    def cursor(self, row_factory=None) -> ScriptedCursor:
        return ScriptedCursor(self)

    def commit(self) -> None:
        self.events.append(("commit",))

    def rollback(self) -> None:
        self.events.append(("rollback",))


class ScriptedPool:
    def __init__(self, conn: ScriptedConnection) -> None:
        self._conn = conn

    @contextmanager
    def connection(self, timeout=None):
        yield self._conn


def _movement_row(kind: str = "cash_out", target: str | None = None) -> tuple:
    return ("mv-1", kind, "acc-1", target, 10, "withdraw-1", CREATED)


def _statements(conn: ScriptedConnection) -> list[str]:
    return [event[1] for event in conn.events if event[0] == "execute"]


def test_cash_out_commits_audit_row_with_the_movement():
    conn = ScriptedConnection([None, (30,), _movement_row()])
    repo = AccountRepository(ScriptedPool(conn))

    result = repo.cash_out(account_id="acc-1", amount=10, idempotency_key="withdraw-1")

    assert result.outcome is MovementOutcome.completed
    assert result.source_balance == 30
    statements = _statements(conn)
    assert statements[-1].startswith("INSERT INTO ledger_audit_log")
    assert conn.events[-1] == ("commit",)
    assert ("rollback",) not in conn.events


def test_transfer_commits_audit_row_with_the_movement():
    conn = ScriptedConnection(
        [None, (9000,), ("acc-2",), _movement_row(kind="transfer", target="acc-2")]
    )
    repo = AccountRepository(ScriptedPool(conn))

    result = repo.transfer(sender_id="acc-1", recipient_id="acc-2", amount=10, idempotency_key="withdraw-1")

    assert result.outcome is MovementOutcome.completed
    assert _statements(conn)[-1].startswith("INSERT INTO ledger_audit_log")
    assert conn.events[-1] == ("commit",)


def test_replay_ends_its_read_transaction():
    conn = ScriptedConnection([_movement_row(), (30,)])
    repo = AccountRepository(ScriptedPool(conn))

    result = repo.cash_out(account_id="acc-1", amount=10, idempotency_key="withdraw-1")

    assert result.outcome is MovementOutcome.replayed
    assert result.movement.movement_id == "mv-1"
    assert result.source_balance == 30
    assert conn.events[-1] == ("rollback",)
    assert ("commit",) not in conn.events


def test_transfer_replay_ends_its_read_transaction():
    conn = ScriptedConnection([_movement_row(kind="transfer", target="acc-2"), (9000,)])
    repo = AccountRepository(ScriptedPool(conn))

    result = repo.transfer(sender_id="acc-1", recipient_id="acc-2", amount=10, idempotency_key="withdraw-1")

    assert result.outcome is MovementOutcome.replayed
    assert conn.events[-1] == ("rollback",)
    assert not any(statement.startswith("UPDATE") for statement in _statements(conn))
