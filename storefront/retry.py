"""Retry policy for whole units of work.

Checkout itself never retries. Callers that want to survive serialization
failures or deadlocks wrap the complete operation, so every attempt starts
from a fresh snapshot read.
"""

import os
import time
from functools import wraps

from .errors import TransactionFailure
from .utils.logging import get_logger

logger = get_logger(__name__)

# PostgreSQL: serialization_failure, deadlock_detected
PG_RETRY_ERRCODES = {"40001", "40P01"}

CHECKOUT_MAX_ATTEMPTS = int(os.getenv("CHECKOUT_MAX_ATTEMPTS", "3"))


def _sqlstate_from(exc: BaseException):
    cause = exc.__cause__
    orig = getattr(cause, "orig", cause)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_retryable(exc: BaseException) -> bool:
    if not isinstance(exc, TransactionFailure):
        return False
    code = _sqlstate_from(exc)
    if code and code in PG_RETRY_ERRCODES:
        return True
    msg = str(exc.__cause__ or "").lower()
    return any(k in msg for k in ("deadlock detected", "could not serialize access"))


def retry_on_transient_failure(max_attempts=None, backoff=0.05):
    """Only apply to operations that run in a single unit of work."""
    def deco(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            attempts = max_attempts or CHECKOUT_MAX_ATTEMPTS
            attempt = 0
            while True:
                attempt += 1
                try:
                    return fn(*args, **kwargs)
                except TransactionFailure as e:
                    if attempt >= attempts or not is_retryable(e):
                        raise
                    logger.warning("Retrying after transient failure", attempt=attempt, operation=fn.__name__)
                    time.sleep(backoff * attempt)
        return wrapper
    return deco
