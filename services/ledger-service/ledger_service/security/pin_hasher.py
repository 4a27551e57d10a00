"""One-way salted hashing for account PINs."""

from __future__ import annotations

import bcrypt

# bcrypt only considers the first 72 bytes of its input
_MAX_SECRET_BYTES = 72


class PinHasher:
    """bcrypt wrapper; the raw PIN never leaves this object."""

    def __init__(self, rounds: int = 10) -> None:
        self._rounds = rounds

    def hash(self, pin: str) -> str:
        salt = bcrypt.gensalt(rounds=self._rounds)
        return bcrypt.hashpw(self._encode(pin), salt).decode("utf-8")

    def verify(self, pin: str, hashed: str) -> bool:
        try:
            return bcrypt.checkpw(self._encode(pin), hashed.encode("utf-8"))
        except ValueError:
            # stored value is not a bcrypt hash
            return False

    @staticmethod
    def _encode(pin: str) -> bytes:
        return pin.encode("utf-8")[:_MAX_SECRET_BYTES]
