"""Bounded retry for operations that are safe to repeat against the store."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_store_call(
    operation: Callable[[], T],
    *,
    attempts: int,
    backoff_seconds: float,
    description: str,
) -> T:
    """Run ``operation`` retrying only on :class:`StoreUnavailable`.

    Callers must only pass reads, or writes guarded by an idempotency key or a
    conditional predicate, so a repeat after an ambiguous failure cannot apply
    the mutation twice. Backoff grows linearly with the attempt number.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except StoreUnavailable:
            if attempt == attempts:
                logger.error("%s failed after %s attempts", description, attempts)
                raise
            logger.warning("%s hit an unavailable store (attempt %s/%s), retrying", description, attempt, attempts)
            time.sleep(backoff_seconds * attempt)
    raise AssertionError("unreachable")  # pragma: no cover
