"""
Rollup Schemas

Derived, per-editor aggregates. These are caches:
the source of truth is always the current order set.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class MonthlyStat(BaseModel):
    """Counts for orders created in one calendar month."""
    assigned: int = 0
    completed: int = 0


class CompletedOrderRef(BaseModel):
    """A completed order, as listed on an editor's rollup."""
    id: str
    assigned_at: Optional[datetime] = None
    completed_at: datetime


class ActivityEntry(BaseModel):
    """One line of an editor's recent activity feed."""
    description: str
    timestamp: datetime


class EditorRollup(BaseModel):
    """
    Aggregate metrics for one editor.

    Invariant: total_assigned == total_completed + current_workload.
    Recomputed in full from every order snapshot; never patched.
    """
    email: str = Field(
        ...,
        description="Editor email (rollup key)"
    )

    name: str = Field(
        ...,
        description="Editor display name"
    )

    total_assigned: int = Field(
        default=0,
        description="Orders matched to this editor"
    )

    total_completed: int = Field(
        default=0,
        description="Matched orders with status completed"
    )

    current_workload: int = Field(
        default=0,
        description="Matched orders still pending or in progress"
    )

    monthly_stats: dict[str, MonthlyStat] = Field(
        default_factory=dict,
        description="Counts keyed by YYYY-MM of creation"
    )

    completed_orders: list[CompletedOrderRef] = Field(
        default_factory=list,
        description="Completed orders, newest completion first"
    )

    recent_activity: list[ActivityEntry] = Field(
        default_factory=list,
        description="The five most recent completions"
    )


class PendingEntry(BaseModel):
    name: str
    pending: int


class MonthCount(BaseModel):
    month: str
    orders: int


class TeamSummary(BaseModel):
    """Dashboard totals across the whole team."""
    total_orders: int = 0
    orders_this_month: int = 0
    pending_orders: int = 0
    completed_orders: int = 0
    total_assigned: int = 0
    total_completed: int = 0
    total_workload: int = 0
    completion_rate: int = Field(
        default=0,
        description="Completed over assigned, as a rounded percentage"
    )
    pending_per_editor: list[PendingEntry] = Field(default_factory=list)
    orders_per_month: list[MonthCount] = Field(default_factory=list)
