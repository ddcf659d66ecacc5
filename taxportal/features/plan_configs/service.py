"""
taxportal/features/plan_configs/service.py

Plan catalog service.

Handles:
- Plan catalog seeding (NONE, BASIC, PRO)
- Catalog reads for the allowance and invoice paths
- Admin edits (plans are deactivated, never deleted)
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Union
from sqlalchemy import select, insert, update
from sqlalchemy.orm import Session

from taxportal.core.database import get_db_session, plan_configs
from taxportal.core.errors import NotFoundError, ValidationError
from taxportal.core.logging import log_event
from taxportal.core.transactions import ledger_session
from taxportal.models.plan_config import PlanCode, PlanConfig


# Default catalog; free minutes are per calendar month
DEFAULT_PLAN_CONFIGS = {
    PlanCode.NONE: {
        "display_name": "No Plan",
        "free_minutes_monthly": 0,
        "hourly_rate": Decimal("150.00"),
    },
    PlanCode.BASIC: {
        "display_name": "Basic Plan",
        "free_minutes_monthly": 240,  # 4 hours
        "hourly_rate": Decimal("150.00"),
    },
    PlanCode.PRO: {
        "display_name": "Professional Plan",
        "free_minutes_monthly": 540,  # 9 hours
        "hourly_rate": Decimal("150.00"),
    },
}


def _row_to_plan_config(row) -> PlanConfig:
    return PlanConfig(
        plan_code=row.plan_code,
        display_name=row.display_name,
        free_minutes_monthly=row.free_minutes_monthly,
        hourly_rate=Decimal(str(row.hourly_rate)),
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def parse_plan_code(plan_code: Union[str, PlanCode]) -> PlanCode:
    """Normalize a caller-supplied plan code, rejecting unknown values."""
    try:
        return PlanCode(plan_code)
    except ValueError:
        raise ValidationError(f"Unknown plan code: {plan_code}")


def seed_plan_configs() -> None:
    """
    Seed the default catalog (idempotent).

    Existing rows are left untouched so admin edits survive re-seeding.
    """
    now = datetime.now(timezone.utc)

    with get_db_session() as session:
        for plan_code, config in DEFAULT_PLAN_CONFIGS.items():
            existing = session.execute(
                select(plan_configs.c.plan_code).where(plan_configs.c.plan_code == plan_code.value)
            ).first()

            if not existing:
                session.execute(
                    insert(plan_configs).values(
                        plan_code=plan_code.value,
                        display_name=config["display_name"],
                        free_minutes_monthly=config["free_minutes_monthly"],
                        hourly_rate=config["hourly_rate"],
                        is_active=True,
                        created_at=now,
                        updated_at=now,
                    )
                )


def list_plan_configs(active_only: bool = False) -> List[PlanConfig]:
    """List catalog rows ordered by plan code."""
    with ledger_session("plan_config.list") as session:
        query = select(plan_configs).order_by(plan_configs.c.plan_code)
        if active_only:
            query = query.where(plan_configs.c.is_active == True)
        rows = session.execute(query).all()
        return [_row_to_plan_config(row) for row in rows]


def find_plan_config(session: Session, plan_code: Union[str, PlanCode]) -> Optional[PlanConfig]:
    """Catalog lookup inside the caller's transaction."""
    code = plan_code.value if isinstance(plan_code, PlanCode) else plan_code
    row = session.execute(
        select(plan_configs).where(plan_configs.c.plan_code == code)
    ).first()
    return _row_to_plan_config(row) if row else None


def get_plan_config(plan_code: Union[str, PlanCode]) -> PlanConfig:
    """
    Get catalog row by code.

    Raises:
        ValidationError: If plan_code is not a known code
        NotFoundError: If the catalog has no row for it
    """
    code = parse_plan_code(plan_code)
    with ledger_session("plan_config.get") as session:
        config = find_plan_config(session, code)
    if not config:
        raise NotFoundError(f"Plan config not found: {code.value}", code="plan_not_found")
    return config


def update_plan_config(
    plan_code: Union[str, PlanCode],
    *,
    display_name: Optional[str] = None,
    free_minutes_monthly: Optional[int] = None,
    hourly_rate: Optional[Union[str, Decimal]] = None,
    is_active: Optional[bool] = None,
) -> PlanConfig:
    """
    Edit a catalog row in place.

    Changing free_minutes_monthly affects allowance periods created after the
    edit; periods already opened keep their snapshot.

    Raises:
        ValidationError: Negative minutes or rate, unknown plan code
        NotFoundError: No catalog row for the code
    """
    code = parse_plan_code(plan_code)
    values = {"updated_at": datetime.now(timezone.utc)}

    if display_name is not None:
        if not display_name.strip():
            raise ValidationError("Display name must not be empty")
        values["display_name"] = display_name
    if free_minutes_monthly is not None:
        if free_minutes_monthly < 0:
            raise ValidationError("Free minutes must be non-negative")
        values["free_minutes_monthly"] = free_minutes_monthly
    if hourly_rate is not None:
        try:
            rate = Decimal(str(hourly_rate))
        except InvalidOperation:
            raise ValidationError("Hourly rate must be a non-negative number")
        if not rate.is_finite() or rate < 0:
            raise ValidationError("Hourly rate must be a non-negative number")
        values["hourly_rate"] = rate
    if is_active is not None:
        values["is_active"] = is_active

    with ledger_session("plan_config.update") as session:
        result = session.execute(
            update(plan_configs)
            .where(plan_configs.c.plan_code == code.value)
            .values(**values)
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Plan config not found: {code.value}", code="plan_not_found")
        config = find_plan_config(session, code)

    log_event(
        "info",
        "plan_config.updated",
        event_type="plan_config.update",
        extra={"plan_code": code.value, "fields": sorted(k for k in values if k != "updated_at")},
    )
    return config
