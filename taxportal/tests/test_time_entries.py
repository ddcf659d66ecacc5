"""
Tests for time entry recording against the monthly free-minute allowance.
"""
import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from uuid import uuid4
from sqlalchemy import select

from taxportal.core.database import get_db_session, client_monthly_allowances
from taxportal.core.errors import NotFoundError, ValidationError
from taxportal.features.client_plans.service import assign_plan
from taxportal.features.plan_configs.service import update_plan_config
from taxportal.features.time_entries.service import (
    get_current_allowance,
    get_monthly_summary,
    get_time_entry,
    list_time_entries,
    record_time_entry,
    soft_delete_time_entry,
    update_time_entry,
)

MARCH = date(2026, 3, 1)


def _client_on(plan_code: str, starts: date = MARCH) -> str:
    client_id = f"client-{uuid4()}"
    assign_plan(client_id, plan_code, starts, assigned_by="admin-1", today=starts)
    return client_id


def _allowance_used(client_id: str, period_start: date) -> int:
    with get_db_session() as session:
        return session.execute(
            select(client_monthly_allowances.c.free_minutes_used)
            .where(client_monthly_allowances.c.client_id == client_id)
            .where(client_monthly_allowances.c.period_start == period_start)
        ).scalar_one()


def test_record_draws_from_allowance_then_bills():
    """300 free minutes, three 150-minute entries: the third is fully billable."""
    update_plan_config("BASIC", free_minutes_monthly=300)
    client_id = _client_on("BASIC")

    splits = []
    for day in (2, 9, 16):
        entry = record_time_entry(client_id, "advisor-1", date(2026, 3, day), 150, task="VAT return")
        splits.append((entry.free_minutes_consumed, entry.billable_minutes))

    assert splits == [(150, 0), (150, 0), (0, 150)]
    assert _allowance_used(client_id, MARCH) == 300


def test_entry_straddling_remaining_allowance_is_split():
    client_id = _client_on("BASIC")

    first = record_time_entry(client_id, "advisor-1", "2026-03-03", 200)
    second = record_time_entry(client_id, "advisor-1", "2026-03-04", 100)

    assert (first.free_minutes_consumed, first.billable_minutes) == (200, 0)
    assert (second.free_minutes_consumed, second.billable_minutes) == (40, 60)
    assert second.free_minutes_consumed + second.billable_minutes == second.minutes


def test_client_without_plan_bills_everything():
    client_id = f"client-{uuid4()}"

    entry = record_time_entry(client_id, "advisor-1", "2026-03-03", 45)

    assert entry.free_minutes_consumed == 0
    assert entry.billable_minutes == 45
    assert _allowance_used(client_id, MARCH) == 0


@pytest.mark.parametrize("minutes", [0, -15, 1.5, "30", True])
def test_record_rejects_invalid_minutes(minutes):
    with pytest.raises(ValidationError):
        record_time_entry(f"client-{uuid4()}", "advisor-1", "2026-03-03", minutes)


def test_record_rejects_malformed_date_and_source():
    client_id = f"client-{uuid4()}"
    with pytest.raises(ValidationError):
        record_time_entry(client_id, "advisor-1", "03/03/2026", 30)
    with pytest.raises(ValidationError):
        record_time_entry(client_id, "advisor-1", "2026-03-03", 30, source="calendar")


def test_concurrent_records_never_double_spend(fast_retries):
    """Eight advisors racing on a 240-minute allowance consume exactly 240."""
    client_id = _client_on("BASIC")

    def _record(i):
        return record_time_entry(client_id, f"advisor-{i}", date(2026, 3, 10), 50)

    with ThreadPoolExecutor(max_workers=8) as pool:
        entries = list(pool.map(_record, range(8)))

    assert len(entries) == 8
    assert sum(e.free_minutes_consumed for e in entries) == 240
    assert sum(e.billable_minutes for e in entries) == 400 - 240
    for entry in entries:
        assert entry.free_minutes_consumed + entry.billable_minutes == entry.minutes
    assert _allowance_used(client_id, MARCH) == 240


def test_concurrent_first_entries_open_one_allowance_row(fast_retries):
    client_id = _client_on("PRO")

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(lambda i: record_time_entry(client_id, "advisor-1", date(2026, 3, 5 + i), 30), range(4)))

    with get_db_session() as session:
        rows = session.execute(
            select(client_monthly_allowances).where(client_monthly_allowances.c.client_id == client_id)
        ).all()
    assert len(rows) == 1
    assert rows[0].free_minutes_used == 120


def test_allowance_total_is_snapshotted_at_period_start():
    """A mid-month upgrade does not change the grant for the month already opened."""
    client_id = _client_on("BASIC")
    record_time_entry(client_id, "advisor-1", "2026-03-05", 30)

    assign_plan(client_id, "PRO", date(2026, 3, 15), today=date(2026, 3, 15))
    record_time_entry(client_id, "advisor-1", "2026-03-20", 30)

    march = get_monthly_summary(client_id, "2026-03")
    assert march.free_minutes_total == 240
    assert march.free_minutes_used == 60

    record_time_entry(client_id, "advisor-1", "2026-04-02", 30)
    april = get_monthly_summary(client_id, "2026-04")
    assert april.free_minutes_total == 540


def test_allowance_uses_plan_in_force_on_first_of_month():
    client_id = _client_on("BASIC")
    assign_plan(client_id, "PRO", date(2026, 3, 10), today=date(2026, 3, 10))

    record_time_entry(client_id, "advisor-1", "2026-03-20", 30)

    assert get_monthly_summary(client_id, "2026-03").free_minutes_total == 240


def test_catalog_edit_does_not_touch_opened_period():
    client_id = _client_on("BASIC")
    record_time_entry(client_id, "advisor-1", "2026-03-05", 30)

    update_plan_config("BASIC", free_minutes_monthly=600)

    assert get_monthly_summary(client_id, "2026-03").free_minutes_total == 240


def test_monthly_summary_projects_total_without_creating_row():
    client_id = _client_on("PRO")

    summary = get_monthly_summary(client_id, "2026-03")

    assert summary.allowance_recorded is False
    assert summary.free_minutes_total == 540
    assert summary.free_minutes_remaining == 540
    assert summary.total_minutes == 0
    assert summary.period_end == date(2026, 3, 31)
    with get_db_session() as session:
        assert session.execute(
            select(client_monthly_allowances).where(client_monthly_allowances.c.client_id == client_id)
        ).first() is None


def test_monthly_summary_aggregates_entries():
    client_id = _client_on("BASIC")
    record_time_entry(client_id, "advisor-1", "2026-03-05", 200)
    record_time_entry(client_id, "advisor-2", "2026-03-06", 100)
    record_time_entry(client_id, "advisor-1", "2026-04-01", 15)

    summary = get_monthly_summary(client_id, "2026-03")

    assert summary.allowance_recorded is True
    assert summary.year_month == "2026-03"
    assert summary.total_minutes == 300
    assert summary.billable_minutes == 60
    assert summary.free_minutes_used == 240
    assert summary.free_minutes_remaining == 0


def test_monthly_summary_rejects_bad_year_month():
    with pytest.raises(ValidationError):
        get_monthly_summary("client-x", "2026-13")
    with pytest.raises(ValidationError):
        get_monthly_summary("client-x", "March 2026")


def test_current_allowance_uses_reference_day():
    client_id = _client_on("BASIC")
    record_time_entry(client_id, "advisor-1", "2026-03-05", 250)

    current = get_current_allowance(client_id, today=date(2026, 3, 20))

    assert current.period_start == MARCH
    assert current.free_minutes_used == 240
    assert current.free_minutes_remaining == 0
    assert current.billable_minutes_to_date == 10


def test_soft_delete_hides_entry_but_keeps_consumption():
    client_id = _client_on("BASIC")
    entry = record_time_entry(client_id, "advisor-1", "2026-03-05", 90)

    deleted = soft_delete_time_entry(client_id, entry.id, deleted_by="advisor-1")

    assert deleted.deleted_at is not None
    assert deleted.deleted_by == "advisor-1"
    summary = get_monthly_summary(client_id, "2026-03")
    assert summary.total_minutes == 0
    assert summary.free_minutes_used == 90
    with pytest.raises(NotFoundError):
        get_time_entry(client_id, entry.id)
    with pytest.raises(NotFoundError):
        soft_delete_time_entry(client_id, entry.id)


def test_soft_delete_is_tenant_scoped():
    client_id = _client_on("BASIC")
    entry = record_time_entry(client_id, "advisor-1", "2026-03-05", 30)

    with pytest.raises(NotFoundError):
        soft_delete_time_entry("someone-else", entry.id)


def test_update_minutes_refunds_and_resplits():
    client_id = _client_on("BASIC")
    first = record_time_entry(client_id, "advisor-1", "2026-03-05", 200)
    second = record_time_entry(client_id, "advisor-1", "2026-03-06", 100)

    updated = update_time_entry(client_id, first.id, minutes=100, updated_by="advisor-1")

    assert (updated.free_minutes_consumed, updated.billable_minutes) == (100, 0)
    assert updated.updated_by == "advisor-1"
    assert _allowance_used(client_id, MARCH) == 140
    unchanged = get_time_entry(client_id, second.id)
    assert (unchanged.free_minutes_consumed, unchanged.billable_minutes) == (40, 60)


def test_update_growing_entry_bills_overflow():
    client_id = _client_on("BASIC")
    entry = record_time_entry(client_id, "advisor-1", "2026-03-05", 200)

    updated = update_time_entry(client_id, entry.id, minutes=300)

    assert (updated.free_minutes_consumed, updated.billable_minutes) == (240, 60)
    assert _allowance_used(client_id, MARCH) == 240


def test_update_within_month_keeps_split():
    client_id = _client_on("BASIC")
    entry = record_time_entry(client_id, "advisor-1", "2026-03-05", 60)

    updated = update_time_entry(client_id, entry.id, worked_at="2026-03-28", task="Payroll")

    assert updated.worked_at == date(2026, 3, 28)
    assert updated.task == "Payroll"
    assert updated.free_minutes_consumed == 60
    assert _allowance_used(client_id, MARCH) == 60


def test_update_keeps_callers_billable_flag():
    client_id = _client_on("BASIC")
    entry = record_time_entry(client_id, "advisor-1", "2026-03-05", 60, is_billable=True)

    updated = update_time_entry(client_id, entry.id, minutes=30)
    assert updated.billable_minutes == 0
    assert updated.is_billable is True

    flagged = update_time_entry(client_id, entry.id, minutes=300, is_billable=False)
    assert flagged.billable_minutes == 60
    assert flagged.is_billable is False


def test_update_rejects_move_to_other_month():
    client_id = _client_on("BASIC")
    entry = record_time_entry(client_id, "advisor-1", "2026-03-05", 60)

    with pytest.raises(ValidationError) as exc:
        update_time_entry(client_id, entry.id, worked_at="2026-04-01")
    assert exc.value.code == "time_entry_period_change_not_allowed"


def test_update_missing_entry_not_found():
    with pytest.raises(NotFoundError):
        update_time_entry("client-x", str(uuid4()), minutes=10)


def test_list_time_entries_filters_and_counts():
    client_id = _client_on("BASIC")
    record_time_entry(client_id, "advisor-1", "2026-03-02", 10)
    latest = record_time_entry(client_id, "advisor-2", "2026-03-20", 20)
    gone = record_time_entry(client_id, "advisor-1", "2026-03-10", 30)
    soft_delete_time_entry(client_id, gone.id)
    record_time_entry(f"client-{uuid4()}", "advisor-1", "2026-03-10", 30)

    entries, total = list_time_entries(client_id)
    assert total == 2
    assert entries[0].id == latest.id

    entries, total = list_time_entries(client_id, advisor_user_id="advisor-1")
    assert total == 1

    entries, total = list_time_entries(client_id, date_from="2026-03-05", date_to="2026-03-31")
    assert [e.id for e in entries] == [latest.id]

    entries, total = list_time_entries(client_id, limit=1, offset=1)
    assert total == 2
    assert len(entries) == 1


def test_list_time_entries_rejects_bad_page():
    with pytest.raises(ValidationError):
        list_time_entries("client-x", limit=0)
    with pytest.raises(ValidationError):
        list_time_entries("client-x", date_from="2026-03-10", date_to="2026-03-01")
