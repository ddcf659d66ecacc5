"""
Tests for temporal plan assignment.
"""
import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import date, timedelta
from uuid import uuid4

from taxportal.core.errors import NotFoundError, ValidationError
from taxportal.features.client_plans.service import (
    assign_plan,
    get_current_plan,
    list_plan_history,
)
from taxportal.features.plan_configs.service import update_plan_config
from taxportal.models.plan_config import PlanCode


def _client() -> str:
    return f"client-{uuid4()}"


def _assert_non_overlapping(history):
    open_rows = [p for p in history if p.effective_to is None]
    assert len(open_rows) <= 1
    ordered = sorted(history, key=lambda p: p.effective_from)
    for earlier, later in zip(ordered, ordered[1:]):
        assert earlier.effective_to is not None
        assert earlier.effective_to < later.effective_from


def test_first_assignment_has_no_previous_plan():
    client_id = _client()
    today = date(2026, 3, 1)

    result = assign_plan(client_id, "BASIC", today, assigned_by="admin-1", today=today)

    assert result.previous_plan is None
    assert result.new_plan.plan_code == PlanCode.BASIC
    assert result.new_plan.effective_to is None
    assert result.new_plan.assigned_by == "admin-1"


def test_reassignment_closes_previous_on_day_before():
    client_id = _client()
    assign_plan(client_id, "BASIC", date(2026, 3, 1), today=date(2026, 3, 1))

    result = assign_plan(client_id, "PRO", date(2026, 4, 1), today=date(2026, 3, 28))

    assert result.previous_plan.plan_code == PlanCode.BASIC
    assert result.previous_plan.effective_to == date(2026, 3, 31)
    assert result.new_plan.plan_code == PlanCode.PRO
    _assert_non_overlapping(list_plan_history(client_id))


def test_current_plan_resolves_by_date():
    client_id = _client()
    assign_plan(client_id, "BASIC", date(2026, 3, 1), today=date(2026, 3, 1))
    assign_plan(client_id, "PRO", date(2026, 3, 16), today=date(2026, 3, 16))

    assert get_current_plan(client_id, "2026-02-28") is None
    assert get_current_plan(client_id, "2026-03-15").plan_code == PlanCode.BASIC
    assert get_current_plan(client_id, date(2026, 3, 16)).plan_code == PlanCode.PRO
    assert get_current_plan(client_id, "2031-01-01").plan_code == PlanCode.PRO


def test_history_newest_first_and_non_overlapping():
    client_id = _client()
    for i, code in enumerate(["BASIC", "PRO", "NONE", "BASIC"]):
        day = date(2026, 1, 1) + timedelta(days=10 * i)
        assign_plan(client_id, code, day, today=day)

    history = list_plan_history(client_id)

    assert [p.plan_code.value for p in history] == ["BASIC", "NONE", "PRO", "BASIC"]
    _assert_non_overlapping(history)


def test_retroactive_guard_boundaries():
    today = date.today()

    with pytest.raises(ValidationError) as exc:
        assign_plan(_client(), "BASIC", today - timedelta(days=8))
    assert exc.value.code == "plan_retroactive_not_allowed"

    result = assign_plan(_client(), "BASIC", today - timedelta(days=6))
    assert result.new_plan.effective_from == today - timedelta(days=6)

    assert assign_plan(_client(), "BASIC", today - timedelta(days=7)).previous_plan is None


def test_new_plan_must_start_after_current_one():
    client_id = _client()
    assign_plan(client_id, "BASIC", date(2026, 3, 10), today=date(2026, 3, 10))

    with pytest.raises(ValidationError) as exc:
        assign_plan(client_id, "PRO", date(2026, 3, 10), today=date(2026, 3, 10))
    assert exc.value.code == "plan_invalid_date_range"

    with pytest.raises(ValidationError):
        assign_plan(client_id, "PRO", date(2026, 3, 5), today=date(2026, 3, 10))

    assert len(list_plan_history(client_id)) == 1


def test_unknown_plan_code_rejected():
    with pytest.raises(ValidationError):
        assign_plan(_client(), "ENTERPRISE", date.today())


def test_inactive_plan_not_assignable():
    update_plan_config("PRO", is_active=False)

    with pytest.raises(NotFoundError) as exc:
        assign_plan(_client(), "PRO", date.today())
    assert exc.value.code == "plan_not_found"


def test_concurrent_reassignments_keep_single_open_row(fast_retries):
    client_id = _client()
    start = date(2026, 3, 1)
    assign_plan(client_id, "NONE", start, today=start)

    def _assign(offset):
        day = start + timedelta(days=offset)
        try:
            return assign_plan(client_id, "BASIC" if offset % 2 else "PRO", day, today=day)
        except ValidationError:
            # a later start already committed
            return None

    with ThreadPoolExecutor(max_workers=5) as pool:
        results = list(pool.map(_assign, range(1, 6)))

    assert any(results)
    history = list_plan_history(client_id)
    _assert_non_overlapping(history)
    assert sum(1 for p in history if p.effective_to is None) == 1
