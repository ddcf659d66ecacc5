"""
taxportal/models/allowance.py

Monthly free-minute allowance records.
"""

from datetime import date
from pydantic import BaseModel, ConfigDict

from taxportal.models.plan_config import PlanCode


class MonthlyAllowance(BaseModel):
    """
    One allowance row per (client_id, period_start).

    free_minutes_total is snapshotted from the plan active on period_start
    and is not changed by later reassignments in the same period.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    client_id: str
    period_start: date
    plan_code: PlanCode
    free_minutes_total: int
    free_minutes_used: int


class MonthlySummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    year_month: str
    period_start: date
    period_end: date
    free_minutes_total: int
    free_minutes_used: int
    free_minutes_remaining: int
    total_minutes: int
    billable_minutes: int
    allowance_recorded: bool


class AllowanceSummary(BaseModel):
    """Current-period allowance as shown on the client billing page."""
    model_config = ConfigDict(frozen=True)

    period_start: date
    free_minutes_total: int
    free_minutes_used: int
    free_minutes_remaining: int
    billable_minutes_to_date: int
