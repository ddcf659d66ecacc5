"""
taxportal/features/client_plans/service.py

Plan assignment ledger.

Handles:
- Temporal plan assignment (close the active row, open a new one)
- Point-in-time plan resolution for allowance and invoice snapshots
- Assignment history
"""

from datetime import date, datetime, timedelta, timezone
from typing import List, Optional, Tuple, Union
from uuid import uuid4
from sqlalchemy import select, insert, update, or_
from sqlalchemy.orm import Session

from taxportal.core.config import settings
from taxportal.core.database import client_plans
from taxportal.core.errors import NotFoundError, ValidationError
from taxportal.core.logging import log_event
from taxportal.core.transactions import StaleWriteError, ledger_session, run_in_transaction
from taxportal.core.validation import DateLike, parse_date, parse_optional_date
from taxportal.features.plan_configs.service import find_plan_config, parse_plan_code
from taxportal.models.client_plan import ClientPlan, PlanAssignment
from taxportal.models.plan_config import PlanCode, PlanConfig


def _row_to_client_plan(row) -> ClientPlan:
    return ClientPlan(
        id=row.id,
        client_id=row.client_id,
        plan_code=row.plan_code,
        effective_from=row.effective_from,
        effective_to=row.effective_to,
        assigned_by=row.assigned_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def find_plan_on(session: Session, client_id: str, day: date) -> Optional[ClientPlan]:
    """Assignment whose [effective_from, effective_to] contains day, inside the caller's transaction."""
    row = session.execute(
        select(client_plans)
        .where(client_plans.c.client_id == client_id)
        .where(client_plans.c.effective_from <= day)
        .where(or_(client_plans.c.effective_to.is_(None), client_plans.c.effective_to >= day))
        .order_by(client_plans.c.effective_from.desc())
        .limit(1)
    ).first()
    return _row_to_client_plan(row) if row else None


def resolve_plan_config_on(session: Session, client_id: str, day: date) -> Tuple[PlanCode, Optional[PlanConfig]]:
    """
    Plan code and catalog row in force on day.

    A client with no assignment is on NONE. The catalog row may be missing
    (unseeded catalog); callers treat that as zero free minutes and no rate.
    """
    assignment = find_plan_on(session, client_id, day)
    code = assignment.plan_code if assignment else PlanCode.NONE
    return code, find_plan_config(session, code)


def assign_plan(
    client_id: str,
    plan_code: Union[str, PlanCode],
    effective_from: DateLike,
    assigned_by: Optional[str] = None,
    *,
    today: Optional[date] = None,
) -> PlanAssignment:
    """
    Assign a plan from effective_from onward.

    The current open-ended assignment (if any) is closed on the day before
    effective_from and the new one is inserted, in one transaction. The
    partial unique index on open rows makes a concurrent assignment lose
    with a unique violation, which is retried from a fresh read.

    Args:
        client_id: Tenant receiving the plan
        plan_code: NONE, BASIC or PRO
        effective_from: First day the plan applies
        assigned_by: Acting admin
        today: Reference date for the retroactive guard (defaults to today)

    Returns:
        PlanAssignment with previous_plan (closed row, or None) and new_plan

    Raises:
        ValidationError: Unknown code, bad date, effective_from more than
            PLAN_RETROACTIVE_GRACE_DAYS in the past, or not after the start
            of the assignment it would supersede
        NotFoundError: No active catalog row for plan_code
        InternalError: Store failure or exhausted contention retries
    """
    code = parse_plan_code(plan_code)
    starts = parse_date(effective_from, "effective_from")
    reference = today or date.today()
    earliest = reference - timedelta(days=settings.PLAN_RETROACTIVE_GRACE_DAYS)

    if starts < earliest:
        raise ValidationError(
            f"Plan effective date cannot be more than {settings.PLAN_RETROACTIVE_GRACE_DAYS} days in the past",
            code="plan_retroactive_not_allowed",
        )

    with ledger_session("plan.assign", client_id=client_id) as session:
        config = find_plan_config(session, code)
    if not config or not config.is_active:
        raise NotFoundError(f"Plan config not found: {code.value}", code="plan_not_found")

    def _assign(session: Session) -> PlanAssignment:
        now = datetime.now(timezone.utc)
        active = session.execute(
            select(client_plans)
            .where(client_plans.c.client_id == client_id)
            .where(client_plans.c.effective_to.is_(None))
            .with_for_update()
        ).first()

        previous_plan = None
        if active:
            if starts <= active.effective_from:
                raise ValidationError(
                    "New plan must start after the current plan's effective date "
                    f"({active.effective_from.isoformat()})",
                    code="plan_invalid_date_range",
                )
            closed_on = starts - timedelta(days=1)
            result = session.execute(
                update(client_plans)
                .where(client_plans.c.id == active.id)
                .where(client_plans.c.effective_to.is_(None))
                .values(effective_to=closed_on, updated_at=now)
            )
            if result.rowcount != 1:
                raise StaleWriteError()
            previous_plan = _row_to_client_plan(active).model_copy(
                update={"effective_to": closed_on, "updated_at": now}
            )

        new_id = str(uuid4())
        session.execute(
            insert(client_plans).values(
                id=new_id,
                client_id=client_id,
                plan_code=code.value,
                effective_from=starts,
                effective_to=None,
                assigned_by=assigned_by,
                created_at=now,
                updated_at=now,
            )
        )
        new_plan = ClientPlan(
            id=new_id,
            client_id=client_id,
            plan_code=code,
            effective_from=starts,
            effective_to=None,
            assigned_by=assigned_by,
            created_at=now,
            updated_at=now,
        )
        return PlanAssignment(previous_plan=previous_plan, new_plan=new_plan)

    assignment = run_in_transaction("plan.assign", _assign, client_id=client_id)

    log_event(
        "info",
        "plan.assigned",
        client_id=client_id,
        event_type="plan.assign",
        extra={
            "plan_code": code.value,
            "effective_from": starts.isoformat(),
            "previous_plan_code": assignment.previous_plan.plan_code.value if assignment.previous_plan else None,
            "assigned_by": assigned_by,
        },
    )
    return assignment


def get_current_plan(client_id: str, as_of: Optional[DateLike] = None) -> Optional[ClientPlan]:
    """
    Get the assignment in force on as_of (default today).

    Returns:
        ClientPlan, or None if the client had no plan that day
    """
    day = parse_optional_date(as_of, "as_of") or date.today()
    with ledger_session("plan.current", client_id=client_id) as session:
        return find_plan_on(session, client_id, day)


def list_plan_history(client_id: str) -> List[ClientPlan]:
    """All assignments for a client, newest first."""
    with ledger_session("plan.history", client_id=client_id) as session:
        rows = session.execute(
            select(client_plans)
            .where(client_plans.c.client_id == client_id)
            .order_by(client_plans.c.effective_from.desc())
        ).all()
        return [_row_to_client_plan(row) for row in rows]
