"""
Rollups - per-editor aggregates over a full order snapshot

One routine serves both views. The caller picks a scope:

    AggregationScope.all_editors()          # team leader: whole roster
    AggregationScope.single_editor(ident)   # editor: just themselves

and compute_rollups() does the rest. Everything here is pure:
the same orders and roster always give identical rollups.

MATCHING POLICY:
An order belongs to an editor if its assigned_to_email equals the
editor's email. Legacy records with no email fall back to matching
assigned_to_name against the editor's display name. Orders matching
nobody are counted nowhere.

Known ambiguity: two editors sharing a display name would both match
a legacy name-only order. There is no tie-break; deprecate name
matching once every record carries an email.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional

from app.schemas import (
    ActivityEntry,
    CompletedOrderRef,
    EditorRole,
    EditorRollup,
    Identity,
    MonthCount,
    MonthlyStat,
    Order,
    OrderStatus,
    PendingEntry,
    RosterEditor,
    TeamSummary,
)

RECENT_ACTIVITY_LIMIT = 5

MONTH_NAMES = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
               "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


class ScopeKind(str, Enum):
    ALL_EDITORS = "all_editors"
    SINGLE_EDITOR = "single_editor"


@dataclass(frozen=True)
class AggregationScope:
    """Which editors a rollup set covers."""
    kind: ScopeKind
    identity: Optional[Identity] = None

    @classmethod
    def all_editors(cls) -> "AggregationScope":
        return cls(kind=ScopeKind.ALL_EDITORS)

    @classmethod
    def single_editor(cls, identity: Identity) -> "AggregationScope":
        return cls(kind=ScopeKind.SINGLE_EDITOR, identity=identity)

    @classmethod
    def for_role(cls, role: EditorRole, identity: Identity) -> "AggregationScope":
        if role == EditorRole.TEAM_LEADER:
            return cls.all_editors()
        return cls.single_editor(identity)

    def editors(self, roster: Iterable[RosterEditor]) -> list[RosterEditor]:
        """The editors this scope rolls up, in roster order."""
        roster = list(roster)
        if self.kind == ScopeKind.ALL_EDITORS:
            return roster
        entry = next((e for e in roster if e.email == self.identity.email), None)
        if entry is None:
            entry = RosterEditor(email=self.identity.email, name=display_name_for(self.identity.email))
        return [entry]


def display_name_for(email: str) -> str:
    """Derive a display name from an address: tarun@mm.com -> Tarun."""
    local = email.split("@")[0]
    return local[:1].upper() + local[1:]


def matches_editor(order: Order, editor: RosterEditor) -> bool:
    """Email match first; the name fallback only applies to records without an email."""
    if order.assigned_to_email:
        return order.assigned_to_email == editor.email
    return bool(order.assigned_to_name) and order.assigned_to_name == editor.name


def month_key(moment: datetime) -> str:
    """YYYY-MM in UTC."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return f"{moment.year:04d}-{moment.month:02d}"


def build_rollup(editor: RosterEditor, orders: Iterable[Order]) -> EditorRollup:
    """Compute one editor's rollup from the full order set."""
    matched = [o for o in orders if matches_editor(o, editor)]

    total_completed = sum(1 for o in matched if o.status == OrderStatus.COMPLETED)
    current_workload = sum(1 for o in matched if o.status.is_open)

    monthly: dict[str, MonthlyStat] = {}
    for order in matched:
        if order.created_at is None:
            continue
        stat = monthly.setdefault(month_key(order.created_at), MonthlyStat())
        stat.assigned += 1
        if order.status == OrderStatus.COMPLETED:
            stat.completed += 1

    completed_orders = sorted(
        (
            CompletedOrderRef(id=o.id, assigned_at=o.created_at, completed_at=o.completed_at)
            for o in matched
            if o.status == OrderStatus.COMPLETED and o.completed_at is not None
        ),
        key=lambda ref: ref.completed_at,
        reverse=True,
    )

    recent_activity = [
        ActivityEntry(description=f"Completed order for {ref.id}", timestamp=ref.completed_at)
        for ref in completed_orders[:RECENT_ACTIVITY_LIMIT]
    ]

    return EditorRollup(
        email=editor.email,
        name=editor.name,
        total_assigned=len(matched),
        total_completed=total_completed,
        current_workload=current_workload,
        monthly_stats={key: monthly[key] for key in sorted(monthly)},
        completed_orders=completed_orders,
        recent_activity=recent_activity,
    )


def compute_rollups(
    scope: AggregationScope,
    orders: Iterable[Order],
    roster: Iterable[RosterEditor],
) -> list[EditorRollup]:
    """Rollups for every editor in scope, in roster order."""
    orders = list(orders)
    return [build_rollup(editor, orders) for editor in scope.editors(roster)]


def average_turnaround_hours(rollup: EditorRollup) -> float:
    """Mean hours from assignment to completion, one decimal."""
    durations = [
        (ref.completed_at - ref.assigned_at).total_seconds() / 3600
        for ref in rollup.completed_orders
        if ref.assigned_at is not None
    ]
    if not durations:
        return 0.0
    return round(sum(durations) / len(durations), 1)


def summarize_team(
    rollups: list[EditorRollup],
    orders: list[Order],
    now: datetime,
) -> TeamSummary:
    """Dashboard totals across the team."""
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)

    created = [
        o.created_at.astimezone(timezone.utc) if o.created_at.tzinfo else o.created_at
        for o in orders
        if o.created_at is not None
    ]

    total_assigned = sum(r.total_assigned for r in rollups)
    total_completed = sum(r.total_completed for r in rollups)

    per_month = [0] * 12
    for moment in created:
        if moment.year == now.year:
            per_month[moment.month - 1] += 1

    return TeamSummary(
        total_orders=len(orders),
        orders_this_month=sum(1 for m in created if m.year == now.year and m.month == now.month),
        pending_orders=sum(1 for o in orders if o.status == OrderStatus.PENDING),
        completed_orders=sum(1 for o in orders if o.status == OrderStatus.COMPLETED),
        total_assigned=total_assigned,
        total_completed=total_completed,
        total_workload=sum(r.current_workload for r in rollups),
        completion_rate=round(total_completed / total_assigned * 100) if total_assigned else 0,
        pending_per_editor=[
            PendingEntry(name=r.name, pending=r.current_workload)
            for r in rollups
            if r.current_workload > 0
        ],
        orders_per_month=[
            MonthCount(month=MONTH_NAMES[i], orders=per_month[i]) for i in range(12)
        ],
    )
