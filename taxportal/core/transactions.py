"""
Bounded retry around contended ledger transactions.

The allowance row and the active-plan row are the only contended resources.
Writers take row locks (SELECT ... FOR UPDATE) where the store supports them
and guard every update with the value they read, so a lost race surfaces as a
StaleWriteError, a unique violation, or a lock/serialization failure. Those
are retried from a fresh read; anything else is a store failure.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from taxportal.core.config import settings
from taxportal.core.database import get_db_session
from taxportal.core.errors import InternalError
from taxportal.core.logging import log_event
from taxportal.core.metrics import ledger_contention_exhausted_total, ledger_retries_total

T = TypeVar("T")

# SQLSTATEs: serialization_failure, deadlock_detected, lock_not_available
_CONTENTION_SQLSTATES = {"40001", "40P01", "55P03"}
_CONTENTION_MESSAGES = ("database is locked", "database table is locked", "deadlock")

_UNIQUE_VIOLATION_SQLSTATE = "23505"
_UNIQUE_VIOLATION_MESSAGES = ("unique constraint failed", "duplicate key value violates unique constraint")


class ContentionError(Exception):
    """A lost race; the unit of work can be re-run from a fresh read."""

    reason = "lock_conflict"


class StaleWriteError(ContentionError):
    """A guarded update matched no row: another writer got there first."""

    reason = "stale_write"


class UniqueRaceError(ContentionError):
    """A concurrent insert claimed the same unique key."""

    reason = "unique_race"


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def _message(exc: DBAPIError) -> str:
    orig = getattr(exc, "orig", None)
    return str(orig if orig is not None else exc).lower()


def _is_contention(exc: DBAPIError) -> bool:
    if _sqlstate(exc) in _CONTENTION_SQLSTATES:
        return True
    message = _message(exc)
    return any(marker in message for marker in _CONTENTION_MESSAGES)


def _is_unique_violation(exc: IntegrityError) -> bool:
    if _sqlstate(exc) == _UNIQUE_VIOLATION_SQLSTATE:
        return True
    message = _message(exc)
    return any(marker in message for marker in _UNIQUE_VIOLATION_MESSAGES)


def _backoff():
    """Capped exponential backoff with full jitter."""
    return wait_random_exponential(
        multiplier=settings.LEDGER_RETRY_BASE_DELAY_MS / 1000.0,
        max=settings.LEDGER_RETRY_MAX_DELAY_MS / 1000.0,
    )


def _store_failure(operation: str, client_id: Optional[str], exc: DBAPIError, reason: str) -> InternalError:
    log_event(
        "error",
        f"ledger.{reason}",
        client_id=client_id,
        event_type=operation,
        error_code=reason,
        extra={"error": exc},
    )
    message = "store unavailable" if reason == "store_unavailable" else "constraint violated"
    return InternalError(f"{operation} failed: {message}", reason=reason)


def _attempt(operation: str, fn: Callable[[Session], T], client_id: Optional[str]) -> T:
    try:
        with get_db_session() as session:
            return fn(session)
    except IntegrityError as exc:
        if _is_unique_violation(exc):
            raise UniqueRaceError(str(exc.orig)) from exc
        raise _store_failure(operation, client_id, exc, "constraint_violation") from exc
    except DBAPIError as exc:
        if _is_contention(exc):
            raise ContentionError(str(exc.orig)) from exc
        raise _store_failure(operation, client_id, exc, "store_unavailable") from exc


def _log_retry(operation: str, client_id: Optional[str]):
    def before_sleep(retry_state: RetryCallState) -> None:
        reason = retry_state.outcome.exception().reason
        ledger_retries_total.inc({"operation": operation, "reason": reason})
        log_event(
            "warning",
            "ledger.retry",
            client_id=client_id,
            event_type=operation,
            extra={"attempt": retry_state.attempt_number, "reason": reason},
        )

    return before_sleep


def run_in_transaction(
    operation: str,
    fn: Callable[[Session], T],
    *,
    client_id: Optional[str] = None,
    max_attempts: Optional[int] = None,
) -> T:
    """
    Run fn(session) in its own transaction, retrying lost races.

    Args:
        operation: Stable operation name used in logs and metrics
        fn: Unit of work; must be safe to re-run from scratch
        client_id: Tenant for log correlation
        max_attempts: Override for LEDGER_MAX_ATTEMPTS

    Returns:
        Whatever fn returns, after a successful commit

    Raises:
        AppError: Raised by fn itself (rolled back, never retried)
        InternalError: reason="store_unavailable", "constraint_violation"
            or "contention"
    """
    attempts = max_attempts or settings.LEDGER_MAX_ATTEMPTS
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=_backoff(),
        retry=retry_if_exception_type(ContentionError),
        before_sleep=_log_retry(operation, client_id),
    )

    try:
        return retrying(_attempt, operation, fn, client_id)
    except RetryError as exc:
        last = exc.last_attempt.exception()
        ledger_contention_exhausted_total.inc({"operation": operation})
        log_event(
            "error",
            "ledger.contention_exhausted",
            client_id=client_id,
            event_type=operation,
            error_code="contention",
            extra={"attempts": attempts, "reason": last.reason},
        )
        raise InternalError(
            f"{operation} failed after {attempts} attempts due to contention",
            reason="contention",
        ) from last


@contextmanager
def ledger_session(operation: str, *, client_id: Optional[str] = None) -> Iterator[Session]:
    """Session for units that are not retried; store failures surface as InternalError."""
    try:
        with get_db_session() as session:
            yield session
    except IntegrityError as exc:
        raise _store_failure(operation, client_id, exc, "constraint_violation") from exc
    except DBAPIError as exc:
        raise _store_failure(operation, client_id, exc, "store_unavailable") from exc
