"""
taxportal/features/timers/service.py

Advisor timers: at most one running timer per (client, advisor).

Stopping a timer records a time entry and then removes the timer row. The
two writes commit separately: if recording fails the timer is left running
and the stop can be retried; a failure after the entry is recorded leaves an
orphaned timer row behind.
"""

import math
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4
from sqlalchemy import select, insert, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from taxportal.core.database import active_timers
from taxportal.core.errors import ConflictError, NotFoundError
from taxportal.core.logging import log_event
from taxportal.core.metrics import active_timers as active_timers_gauge
from taxportal.core.transactions import ledger_session, run_in_transaction
from taxportal.core.validation import require_text
from taxportal.features.time_entries.service import record_time_entry
from taxportal.models.time_entry import ActiveTimer, TimeEntry, TimeEntrySource


def _row_to_timer(row) -> ActiveTimer:
    started_at = row.started_at
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    return ActiveTimer(
        id=row.id,
        client_id=row.client_id,
        advisor_user_id=row.advisor_user_id,
        started_at=started_at,
        started_by=row.started_by,
        task=row.task,
    )


def _find_timer(session: Session, client_id: str, advisor_user_id: str):
    return session.execute(
        select(active_timers)
        .where(active_timers.c.client_id == client_id)
        .where(active_timers.c.advisor_user_id == advisor_user_id)
    ).first()


def elapsed_minutes(started_at: datetime, now: datetime) -> int:
    """Whole minutes between start and now, rounded up, never less than 1."""
    seconds = (now - started_at).total_seconds()
    return max(1, math.ceil(seconds / 60))


def start_timer(
    client_id: str,
    advisor_user_id: str,
    task: Optional[str] = None,
    started_by: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> ActiveTimer:
    """
    Start a timer for an advisor on a client.

    Raises:
        ConflictError: A timer is already running for this pair (code
            "timer_already_running"); the caller decides whether to stop it first
    """
    client_id = require_text(client_id, "client_id")
    advisor_user_id = require_text(advisor_user_id, "advisor_user_id")
    started_at = now or datetime.now(timezone.utc)

    def _start(session: Session) -> ActiveTimer:
        timer = ActiveTimer(
            id=str(uuid4()),
            client_id=client_id,
            advisor_user_id=advisor_user_id,
            started_at=started_at,
            started_by=started_by,
            task=task,
        )
        try:
            session.execute(
                insert(active_timers).values(
                    id=timer.id,
                    client_id=client_id,
                    advisor_user_id=advisor_user_id,
                    started_at=started_at,
                    started_by=started_by,
                    task=task,
                    created_at=datetime.now(timezone.utc),
                )
            )
        except IntegrityError as exc:
            raise ConflictError(
                "A timer is already running for this client",
                code="timer_already_running",
            ) from exc
        return timer

    timer = run_in_transaction("timer.start", _start, client_id=client_id, max_attempts=1)

    active_timers_gauge.inc()
    log_event(
        "info",
        "timer.started",
        client_id=client_id,
        event_type="timer.start",
        extra={"timer_id": timer.id, "advisor_user_id": advisor_user_id},
    )
    return timer


def get_active_timer(client_id: str, advisor_user_id: str) -> Optional[ActiveTimer]:
    """Running timer for the pair, or None."""
    with ledger_session("timer.get", client_id=client_id) as session:
        row = _find_timer(session, client_id, advisor_user_id)
    return _row_to_timer(row) if row else None


def stop_timer(
    client_id: str,
    advisor_user_id: str,
    task: Optional[str] = None,
    stopped_by: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> TimeEntry:
    """
    Stop the running timer and record its duration.

    The entry is dated on the day the timer stops, so it draws from that
    month's allowance. task overrides the task captured at start.

    Returns:
        The recorded TimeEntry (source=timer)

    Raises:
        NotFoundError: No timer running (code "timer_not_running")
    """
    timer = get_active_timer(client_id, advisor_user_id)
    if not timer:
        raise NotFoundError("No timer is running", code="timer_not_running")

    stopped_at = now or datetime.now(timezone.utc)
    minutes = elapsed_minutes(timer.started_at, stopped_at)

    entry = record_time_entry(
        client_id=client_id,
        advisor_user_id=advisor_user_id,
        worked_at=stopped_at.date(),
        minutes=minutes,
        task=task or timer.task,
        source=TimeEntrySource.TIMER,
        created_by=stopped_by or advisor_user_id,
    )

    def _remove(session: Session) -> int:
        result = session.execute(delete(active_timers).where(active_timers.c.id == timer.id))
        return result.rowcount

    removed = run_in_transaction("timer.stop", _remove, client_id=client_id)
    if removed:
        active_timers_gauge.dec()

    log_event(
        "info",
        "timer.stopped",
        client_id=client_id,
        event_type="timer.stop",
        extra={
            "timer_id": timer.id,
            "entry_id": entry.id,
            "advisor_user_id": advisor_user_id,
            "minutes": minutes,
        },
    )
    return entry
