"""Account status transitions and the one-time activation bonus."""

from __future__ import annotations

import logging
from typing import Any

from ..security.access import Principal, require_admin
from .account import ALLOWED_TRANSITIONS, Account, AccountStatus, Role
from .contracts import AccountStore
from .errors import AccountNotFound, InvalidStatus, StoreUnavailable
from .retry import retry_store_call

logger = logging.getLogger(__name__)


def parse_status(value: Any) -> AccountStatus:
    """Map caller input onto the closed status enum."""
    if isinstance(value, AccountStatus):
        return value
    try:
        return AccountStatus(str(value).strip().lower())
    except ValueError as exc:
        raise InvalidStatus("status must be one of pending, active, blocked") from exc


class AccountLifecycleManager:
    """Owns ``pending -> active/blocked`` and ``active <-> blocked`` transitions.

    Every transition is a compare-and-set against the stored status, so the
    activation bonus can only be applied by the one update that observes
    ``pending``.
    """

    def __init__(
        self,
        store: AccountStore,
        *,
        agent_bonus: int = 10000,
        user_bonus: int = 40,
        cas_attempts: int = 5,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.05,
    ) -> None:
        self._store = store
        self._agent_bonus = agent_bonus
        self._user_bonus = user_bonus
        self._cas_attempts = max(1, cas_attempts)
        self._retry_attempts = retry_attempts
        self._retry_backoff = retry_backoff_seconds

    def activation_bonus(self, role: Role) -> int:
        if role is Role.agent:
            return self._agent_bonus
        return self._user_bonus

    def set_status(self, actor: Principal, account_id: str, new_status: Any) -> Account:
        """Apply an administrator's status change to ``account_id``.

        Asking for the status the account already has is a no-op that returns
        the account unchanged.
        """
        require_admin(actor)
        target = parse_status(new_status)

        for _ in range(self._cas_attempts):
            account = self._read(account_id)
            if account.status is target:
                return account
            if (account.status, target) not in ALLOWED_TRANSITIONS:
                raise InvalidStatus(
                    f"cannot change status from {account.status.value} to {target.value}"
                )

            bonus = 0
            if account.status is AccountStatus.pending and target is AccountStatus.active:
                bonus = self.activation_bonus(account.role)

            updated = retry_store_call(
                lambda: self._store.transition_status(
                    account_id, expected=account.status, new=target, balance_delta=bonus
                ),
                attempts=self._retry_attempts,
                backoff_seconds=self._retry_backoff,
                description="status transition",
            )
            if updated is None:
                # status moved underneath us; re-read and plan again
                continue

            logger.info(
                "account %s status %s -> %s (bonus %s) by %s",
                account_id,
                account.status.value,
                target.value,
                bonus,
                actor.account_id,
            )
            self._store.write_audit_event(
                account_id=account_id,
                event_type="account.status_changed",
                actor=actor.account_id,
                metadata={"from": account.status.value, "to": target.value, "bonus": bonus},
            )
            return updated

        raise StoreUnavailable("account is being modified concurrently, try again")

    def _read(self, account_id: str) -> Account:
        account = retry_store_call(
            lambda: self._store.get_account(account_id),
            attempts=self._retry_attempts,
            backoff_seconds=self._retry_backoff,
            description="account lookup",
        )
        if account is None:
            raise AccountNotFound("account not found")
        return account
