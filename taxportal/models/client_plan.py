"""
taxportal/models/client_plan.py

Temporal plan assignment for a client.
"""

from datetime import date, datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from taxportal.models.plan_config import PlanCode


class ClientPlan(BaseModel):
    """
    ClientPlan covers [effective_from, effective_to] (both inclusive).

    Constraint: per client, at most one row has effective_to = None and the
    closed intervals never overlap.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    client_id: str
    plan_code: PlanCode
    effective_from: date
    effective_to: Optional[date] = None
    assigned_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PlanAssignment(BaseModel):
    """Result of assign_plan: the superseded row (if any) and the new active row."""
    model_config = ConfigDict(frozen=True)

    previous_plan: Optional[ClientPlan] = None
    new_plan: ClientPlan
