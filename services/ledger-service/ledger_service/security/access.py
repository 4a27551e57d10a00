"""Access control gate resolving bearer credentials into principals."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import jwt

from ..domain.account import Role
from ..domain.errors import Forbidden, Unauthenticated
from .tokens import decode_access_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Principal:
    """Verified caller identity attached to every protected operation."""

    account_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.admin


def resolve_principal(authorization: str | None) -> Principal:
    """Turn an ``Authorization`` header value into a :class:`Principal`.

    Missing, malformed, expired or foreign-signed credentials all raise
    :class:`Unauthenticated`.
    """
    if not authorization:
        raise Unauthenticated("access denied, no token provided")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthenticated("invalid authorization header")

    try:
        claims = decode_access_token(token.strip())
    except jwt.ExpiredSignatureError as exc:
        raise Unauthenticated("token expired") from exc
    except jwt.PyJWTError as exc:
        logger.info("rejected bearer token: %s", exc.__class__.__name__)
        raise Unauthenticated("invalid token") from exc

    try:
        role = Role(claims["role"])
    except ValueError as exc:
        raise Unauthenticated("invalid token") from exc
    return Principal(account_id=str(claims["sub"]), role=role)


def require_admin(principal: Principal) -> Principal:
    """Return the principal unchanged when it carries the admin role."""
    if not principal.is_admin:
        raise Forbidden("access denied, admins only")
    return principal
