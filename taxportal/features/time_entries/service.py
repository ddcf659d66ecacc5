"""
taxportal/features/time_entries/service.py

Time entry ledger.

Handles:
- Recording work against the monthly free-minute allowance
- Monthly and current-period summaries
- Entry listing, correction and soft deletion

The allowance row for (client_id, period_start) is the contended resource.
Every write that touches it locks it, re-reads it and applies a guarded
update inside run_in_transaction, so concurrent callers serialize on the row
and a lost race is retried from a fresh read.
"""

from datetime import date, datetime, timezone
from typing import List, Optional, Tuple, Union
from uuid import uuid4
from sqlalchemy import select, insert, update, func
from sqlalchemy.orm import Session

from taxportal.core.database import client_monthly_allowances, time_entries
from taxportal.core.errors import NotFoundError, ValidationError
from taxportal.core.logging import log_event
from taxportal.core.metrics import free_minutes_consumed_total, time_entries_recorded_total
from taxportal.core.transactions import StaleWriteError, ledger_session, run_in_transaction
from taxportal.core.validation import (
    DateLike,
    check_page,
    month_bounds,
    parse_date,
    parse_optional_date,
    parse_year_month,
    require_positive_minutes,
    require_text,
)
from taxportal.features.client_plans.service import resolve_plan_config_on
from taxportal.models.allowance import AllowanceSummary, MonthlyAllowance, MonthlySummary
from taxportal.models.time_entry import TimeEntry, TimeEntrySource


def period_start_for(day: date) -> date:
    """First day of the allowance period containing day."""
    return day.replace(day=1)


def _row_to_time_entry(row) -> TimeEntry:
    return TimeEntry(
        id=row.id,
        client_id=row.client_id,
        advisor_user_id=row.advisor_user_id,
        worked_at=row.worked_at,
        minutes=row.minutes,
        free_minutes_consumed=row.free_minutes_consumed,
        billable_minutes=row.billable_minutes,
        task=row.task,
        is_billable=bool(row.is_billable),
        source=row.source,
        created_at=row.created_at,
        created_by=row.created_by,
        updated_at=row.updated_at,
        updated_by=row.updated_by,
        deleted_at=row.deleted_at,
        deleted_by=row.deleted_by,
    )


def _row_to_allowance(row) -> MonthlyAllowance:
    return MonthlyAllowance(
        id=row.id,
        client_id=row.client_id,
        period_start=row.period_start,
        plan_code=row.plan_code,
        free_minutes_total=row.free_minutes_total,
        free_minutes_used=row.free_minutes_used,
    )


def _parse_source(source: Union[str, TimeEntrySource]) -> TimeEntrySource:
    try:
        return TimeEntrySource(source)
    except ValueError:
        raise ValidationError(f"Unknown time entry source: {source}")


def _snapshot_total(session: Session, client_id: str, period_start: date) -> Tuple[str, int]:
    """Plan code and free-minute grant in force on period_start."""
    code, config = resolve_plan_config_on(session, client_id, period_start)
    total = config.free_minutes_monthly if config else 0
    return code.value, total


def _lock_or_open_allowance(session: Session, client_id: str, period_start: date) -> MonthlyAllowance:
    """
    Lock the allowance row for the period, creating it on first use.

    Two callers opening the same period race on the (client_id, period_start)
    unique constraint; the loser gets an IntegrityError and is retried.
    """
    row = session.execute(
        select(client_monthly_allowances)
        .where(client_monthly_allowances.c.client_id == client_id)
        .where(client_monthly_allowances.c.period_start == period_start)
        .with_for_update()
    ).first()
    if row:
        return _row_to_allowance(row)

    plan_code, total = _snapshot_total(session, client_id, period_start)
    now = datetime.now(timezone.utc)
    allowance_id = str(uuid4())
    session.execute(
        insert(client_monthly_allowances).values(
            id=allowance_id,
            client_id=client_id,
            period_start=period_start,
            plan_code=plan_code,
            free_minutes_total=total,
            free_minutes_used=0,
            created_at=now,
            updated_at=now,
        )
    )
    return MonthlyAllowance(
        id=allowance_id,
        client_id=client_id,
        period_start=period_start,
        plan_code=plan_code,
        free_minutes_total=total,
        free_minutes_used=0,
    )


def _set_used(session: Session, allowance: MonthlyAllowance, new_used: int) -> None:
    """Guarded write: only applies if free_minutes_used is still what we read."""
    if new_used == allowance.free_minutes_used:
        return
    result = session.execute(
        update(client_monthly_allowances)
        .where(client_monthly_allowances.c.id == allowance.id)
        .where(client_monthly_allowances.c.free_minutes_used == allowance.free_minutes_used)
        .values(free_minutes_used=new_used, updated_at=datetime.now(timezone.utc))
    )
    if result.rowcount != 1:
        raise StaleWriteError()


def _split(minutes: int, total: int, used: int) -> Tuple[int, int]:
    remaining = max(0, total - used)
    free_draw = min(minutes, remaining)
    return free_draw, minutes - free_draw


def record_time_entry(
    client_id: str,
    advisor_user_id: str,
    worked_at: DateLike,
    minutes: int,
    task: Optional[str] = None,
    is_billable: bool = True,
    source: Union[str, TimeEntrySource] = TimeEntrySource.MANUAL,
    created_by: Optional[str] = None,
) -> TimeEntry:
    """
    Record work and split it between free allowance and billable minutes.

    The allowance draw and the entry insert commit together; no reader ever
    sees one without the other.

    Args:
        client_id: Tenant the work was done for
        advisor_user_id: Advisor who did the work
        worked_at: Day of the work; selects the allowance period
        minutes: Duration, must be > 0
        task: Free-text description
        is_billable: Caller's billable flag, stored as given
        source: manual, timer or import
        created_by: Acting user

    Returns:
        The stored TimeEntry

    Raises:
        ValidationError: Non-positive minutes, bad date or unknown source
        InternalError: Store failure or exhausted contention retries
    """
    client_id = require_text(client_id, "client_id")
    advisor_user_id = require_text(advisor_user_id, "advisor_user_id")
    day = parse_date(worked_at, "worked_at")
    minutes = require_positive_minutes(minutes)
    entry_source = _parse_source(source)
    period_start = period_start_for(day)

    def _record(session: Session) -> TimeEntry:
        allowance = _lock_or_open_allowance(session, client_id, period_start)
        free_draw, billable = _split(minutes, allowance.free_minutes_total, allowance.free_minutes_used)
        _set_used(session, allowance, allowance.free_minutes_used + free_draw)

        now = datetime.now(timezone.utc)
        entry = TimeEntry(
            id=str(uuid4()),
            client_id=client_id,
            advisor_user_id=advisor_user_id,
            worked_at=day,
            minutes=minutes,
            free_minutes_consumed=free_draw,
            billable_minutes=billable,
            task=task,
            is_billable=is_billable,
            source=entry_source,
            created_at=now,
            created_by=created_by,
        )
        session.execute(
            insert(time_entries).values(
                id=entry.id,
                client_id=client_id,
                advisor_user_id=advisor_user_id,
                worked_at=day,
                minutes=minutes,
                free_minutes_consumed=free_draw,
                billable_minutes=billable,
                task=task,
                is_billable=is_billable,
                source=entry_source.value,
                created_at=now,
                created_by=created_by,
            )
        )
        return entry

    entry = run_in_transaction("time_entry.record", _record, client_id=client_id)

    time_entries_recorded_total.inc({"source": entry_source.value})
    if entry.free_minutes_consumed:
        free_minutes_consumed_total.inc(amount=entry.free_minutes_consumed)
    log_event(
        "info",
        "time_entry.recorded",
        client_id=client_id,
        event_type="time_entry.record",
        extra={
            "entry_id": entry.id,
            "period_start": period_start.isoformat(),
            "minutes": minutes,
            "free_minutes_consumed": entry.free_minutes_consumed,
            "billable_minutes": entry.billable_minutes,
            "source": entry_source.value,
        },
    )
    return entry


def _period_totals(session: Session, client_id: str, start: date, end: date) -> Tuple[int, int]:
    """Total and billable minutes over non-deleted entries in [start, end]."""
    row = session.execute(
        select(
            func.coalesce(func.sum(time_entries.c.minutes), 0),
            func.coalesce(func.sum(time_entries.c.billable_minutes), 0),
        )
        .where(time_entries.c.client_id == client_id)
        .where(time_entries.c.deleted_at.is_(None))
        .where(time_entries.c.worked_at >= start)
        .where(time_entries.c.worked_at <= end)
    ).one()
    return int(row[0]), int(row[1])


def _find_allowance(session: Session, client_id: str, period_start: date) -> Optional[MonthlyAllowance]:
    row = session.execute(
        select(client_monthly_allowances)
        .where(client_monthly_allowances.c.client_id == client_id)
        .where(client_monthly_allowances.c.period_start == period_start)
    ).first()
    return _row_to_allowance(row) if row else None


def _allowance_or_projection(session: Session, client_id: str, period_start: date) -> Tuple[int, int, bool]:
    """(total, used, recorded); projects the total without creating the row."""
    allowance = _find_allowance(session, client_id, period_start)
    if allowance:
        return allowance.free_minutes_total, allowance.free_minutes_used, True
    _, total = _snapshot_total(session, client_id, period_start)
    return total, 0, False


def get_monthly_summary(
    client_id: str,
    year_month: Optional[str] = None,
    *,
    today: Optional[date] = None,
) -> MonthlySummary:
    """
    Allowance and recorded minutes for one calendar month.

    Args:
        client_id: Tenant
        year_month: "YYYY-MM"; defaults to the current month
        today: Reference date when year_month is omitted

    Returns:
        MonthlySummary. allowance_recorded is False when nothing has been
        recorded in the month yet and the total is a projection.
    """
    if year_month is None:
        period_start = period_start_for(today or date.today())
    else:
        period_start = parse_year_month(year_month)
    start, end = month_bounds(period_start)

    with ledger_session("time_entry.monthly_summary", client_id=client_id) as session:
        total, used, recorded = _allowance_or_projection(session, client_id, start)
        total_minutes, billable_minutes = _period_totals(session, client_id, start, end)

    return MonthlySummary(
        year_month=start.strftime("%Y-%m"),
        period_start=start,
        period_end=end,
        free_minutes_total=total,
        free_minutes_used=used,
        free_minutes_remaining=max(0, total - used),
        total_minutes=total_minutes,
        billable_minutes=billable_minutes,
        allowance_recorded=recorded,
    )


def get_current_allowance(client_id: str, today: Optional[date] = None) -> AllowanceSummary:
    """Allowance for the period containing today, with billable minutes so far."""
    start, end = month_bounds(today or date.today())

    with ledger_session("time_entry.current_allowance", client_id=client_id) as session:
        total, used, _ = _allowance_or_projection(session, client_id, start)
        _, billable_minutes = _period_totals(session, client_id, start, end)

    return AllowanceSummary(
        period_start=start,
        free_minutes_total=total,
        free_minutes_used=used,
        free_minutes_remaining=max(0, total - used),
        billable_minutes_to_date=billable_minutes,
    )


def list_time_entries(
    client_id: str,
    date_from: Optional[DateLike] = None,
    date_to: Optional[DateLike] = None,
    advisor_user_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[TimeEntry], int]:
    """
    List non-deleted entries, newest worked_at first.

    Returns:
        (entries, total_count) where total_count ignores limit/offset
    """
    check_page(limit, offset)
    start = parse_optional_date(date_from, "date_from")
    end = parse_optional_date(date_to, "date_to")
    if start and end and end < start:
        raise ValidationError("date_to must not be before date_from", code="invalid_date")

    conditions = [
        time_entries.c.client_id == client_id,
        time_entries.c.deleted_at.is_(None),
    ]
    if start:
        conditions.append(time_entries.c.worked_at >= start)
    if end:
        conditions.append(time_entries.c.worked_at <= end)
    if advisor_user_id:
        conditions.append(time_entries.c.advisor_user_id == advisor_user_id)

    with ledger_session("time_entry.list", client_id=client_id) as session:
        total = session.execute(
            select(func.count()).select_from(time_entries).where(*conditions)
        ).scalar_one()
        rows = session.execute(
            select(time_entries)
            .where(*conditions)
            .order_by(time_entries.c.worked_at.desc(), time_entries.c.created_at.desc())
            .limit(limit)
            .offset(offset)
        ).all()

    return [_row_to_time_entry(row) for row in rows], int(total)


def _find_live_entry(session: Session, client_id: str, entry_id: str, lock: bool = False):
    query = (
        select(time_entries)
        .where(time_entries.c.id == entry_id)
        .where(time_entries.c.client_id == client_id)
        .where(time_entries.c.deleted_at.is_(None))
    )
    if lock:
        query = query.with_for_update()
    return session.execute(query).first()


def get_time_entry(client_id: str, entry_id: str) -> TimeEntry:
    """
    Get a non-deleted entry.

    Raises:
        NotFoundError: Missing, soft-deleted, or owned by another client
    """
    with ledger_session("time_entry.get", client_id=client_id) as session:
        row = _find_live_entry(session, client_id, entry_id)
    if not row:
        raise NotFoundError(f"Time entry not found: {entry_id}", code="time_entry_not_found")
    return _row_to_time_entry(row)


def update_time_entry(
    client_id: str,
    entry_id: str,
    *,
    minutes: Optional[int] = None,
    task: Optional[str] = None,
    is_billable: Optional[bool] = None,
    worked_at: Optional[DateLike] = None,
    updated_by: Optional[str] = None,
) -> TimeEntry:
    """
    Correct an entry in place.

    A change of minutes gives back the entry's previous free draw to its
    period and re-splits the new duration against what is then remaining,
    in the same transaction. worked_at may move within the month only.

    Raises:
        ValidationError: Non-positive minutes, bad date, or a move to another month
        NotFoundError: Missing or soft-deleted entry
        InternalError: Store failure or exhausted contention retries
    """
    new_minutes = require_positive_minutes(minutes) if minutes is not None else None
    new_day = parse_optional_date(worked_at, "worked_at")

    def _update(session: Session) -> Tuple[TimeEntry, TimeEntry]:
        row = _find_live_entry(session, client_id, entry_id, lock=True)
        if not row:
            raise NotFoundError(f"Time entry not found: {entry_id}", code="time_entry_not_found")
        current = _row_to_time_entry(row)
        period_start = period_start_for(current.worked_at)

        if new_day and period_start_for(new_day) != period_start:
            raise ValidationError(
                "Time entry cannot be moved to a different month",
                code="time_entry_period_change_not_allowed",
            )

        now = datetime.now(timezone.utc)
        changes = {"updated_at": now, "updated_by": updated_by}
        if task is not None:
            changes["task"] = task
        if is_billable is not None:
            changes["is_billable"] = is_billable
        if new_day:
            changes["worked_at"] = new_day

        if new_minutes is not None and new_minutes != current.minutes:
            allowance = _lock_or_open_allowance(session, client_id, period_start)
            refunded = max(0, allowance.free_minutes_used - current.free_minutes_consumed)
            free_draw, billable = _split(new_minutes, allowance.free_minutes_total, refunded)
            _set_used(session, allowance, refunded + free_draw)
            changes.update(
                minutes=new_minutes,
                free_minutes_consumed=free_draw,
                billable_minutes=billable,
            )

        result = session.execute(
            update(time_entries)
            .where(time_entries.c.id == entry_id)
            .where(time_entries.c.deleted_at.is_(None))
            .where(time_entries.c.minutes == current.minutes)
            .where(time_entries.c.free_minutes_consumed == current.free_minutes_consumed)
            .values(**changes)
        )
        if result.rowcount != 1:
            raise StaleWriteError()
        return current.model_copy(update=changes), current

    updated, previous = run_in_transaction("time_entry.update", _update, client_id=client_id)

    log_event(
        "info",
        "time_entry.updated",
        client_id=client_id,
        event_type="time_entry.update",
        extra={
            "entry_id": entry_id,
            "previous_minutes": previous.minutes,
            "minutes": updated.minutes,
            "free_minutes_consumed": updated.free_minutes_consumed,
            "billable_minutes": updated.billable_minutes,
            "updated_by": updated_by,
        },
    )
    return updated


def soft_delete_time_entry(client_id: str, entry_id: str, deleted_by: Optional[str] = None) -> TimeEntry:
    """
    Flag an entry as deleted.

    The entry drops out of every aggregate. Free minutes it consumed stay
    consumed; the allowance row is not touched.

    Raises:
        NotFoundError: Missing or already deleted
    """

    def _delete(session: Session) -> TimeEntry:
        row = _find_live_entry(session, client_id, entry_id)
        if not row:
            raise NotFoundError(f"Time entry not found: {entry_id}", code="time_entry_not_found")
        now = datetime.now(timezone.utc)
        result = session.execute(
            update(time_entries)
            .where(time_entries.c.id == entry_id)
            .where(time_entries.c.deleted_at.is_(None))
            .values(deleted_at=now, deleted_by=deleted_by)
        )
        if result.rowcount != 1:
            raise NotFoundError(f"Time entry not found: {entry_id}", code="time_entry_not_found")
        return _row_to_time_entry(row).model_copy(update={"deleted_at": now, "deleted_by": deleted_by})

    entry = run_in_transaction("time_entry.delete", _delete, client_id=client_id)

    log_event(
        "info",
        "time_entry.deleted",
        client_id=client_id,
        event_type="time_entry.delete",
        extra={
            "entry_id": entry_id,
            "free_minutes_consumed": entry.free_minutes_consumed,
            "deleted_by": deleted_by,
        },
    )
    return entry
