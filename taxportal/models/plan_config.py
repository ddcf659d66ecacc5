"""
taxportal/models/plan_config.py

Plan catalog row.

Plans are edited in place by admins and deactivated, never deleted.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class PlanCode(str, Enum):
    NONE = "NONE"
    BASIC = "BASIC"
    PRO = "PRO"


class PlanConfig(BaseModel):
    """
    PlanConfig represents one billing tier.

    Examples:
    - NONE (no included minutes)
    - BASIC
    - PRO
    """
    model_config = ConfigDict(frozen=True)

    plan_code: PlanCode
    display_name: str
    free_minutes_monthly: int
    hourly_rate: Decimal
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
