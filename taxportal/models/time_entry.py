"""
taxportal/models/time_entry.py

Recorded advisor work units and running timers.
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class TimeEntrySource(str, Enum):
    MANUAL = "manual"
    TIMER = "timer"
    IMPORT = "import"


class TimeEntry(BaseModel):
    """
    A single unit of recorded work.

    Invariant: free_minutes_consumed + billable_minutes == minutes.
    Soft-deleted entries keep their row but drop out of every aggregate.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    client_id: str
    advisor_user_id: str
    worked_at: date
    minutes: int
    free_minutes_consumed: int
    billable_minutes: int
    task: Optional[str] = None
    is_billable: bool = True
    source: TimeEntrySource = TimeEntrySource.MANUAL
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None


class ActiveTimer(BaseModel):
    """Running timer; exists only between start and stop."""
    model_config = ConfigDict(frozen=True)

    id: str
    client_id: str
    advisor_user_id: str
    started_at: datetime
    started_by: Optional[str] = None
    task: Optional[str] = None
