"""
Tests for the plan catalog.
"""
import pytest
from decimal import Decimal

from taxportal.core.errors import NotFoundError, ValidationError
from taxportal.features.plan_configs.service import (
    get_plan_config,
    list_plan_configs,
    seed_plan_configs,
    update_plan_config,
)
from taxportal.models.plan_config import PlanCode


def test_seed_plan_configs_idempotent():
    seed_plan_configs()
    seed_plan_configs()

    configs = list_plan_configs()
    assert [c.plan_code for c in configs] == [PlanCode.BASIC, PlanCode.NONE, PlanCode.PRO]


def test_default_catalog_values():
    assert get_plan_config("NONE").free_minutes_monthly == 0
    assert get_plan_config("BASIC").free_minutes_monthly == 240
    pro = get_plan_config(PlanCode.PRO)
    assert pro.free_minutes_monthly == 540
    assert pro.hourly_rate == Decimal("150.00")
    assert pro.is_active is True


def test_reseed_keeps_admin_edits():
    update_plan_config("BASIC", free_minutes_monthly=300, display_name="Basic+")
    seed_plan_configs()

    basic = get_plan_config("BASIC")
    assert basic.free_minutes_monthly == 300
    assert basic.display_name == "Basic+"


def test_update_plan_config_rate_and_deactivate():
    updated = update_plan_config("PRO", hourly_rate="175.50", is_active=False)

    assert updated.hourly_rate == Decimal("175.50")
    assert updated.is_active is False
    assert PlanCode.PRO not in [c.plan_code for c in list_plan_configs(active_only=True)]


@pytest.mark.parametrize(
    "changes",
    [
        {"free_minutes_monthly": -1},
        {"hourly_rate": "-5"},
        {"hourly_rate": "abc"},
        {"display_name": "   "},
    ],
)
def test_update_plan_config_rejects_invalid_values(changes):
    with pytest.raises(ValidationError):
        update_plan_config("BASIC", **changes)


def test_unknown_plan_code_is_validation_error():
    with pytest.raises(ValidationError):
        get_plan_config("GOLD")


def test_missing_catalog_row_not_found():
    from sqlalchemy import delete
    from taxportal.core.database import get_db_session, plan_configs

    with get_db_session() as session:
        session.execute(delete(plan_configs).where(plan_configs.c.plan_code == "PRO"))

    with pytest.raises(NotFoundError):
        get_plan_config("PRO")
    with pytest.raises(NotFoundError):
        update_plan_config("PRO", free_minutes_monthly=10)
