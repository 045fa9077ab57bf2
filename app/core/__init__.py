# Core desk services
from .subscriptions import Publisher, Subscription
from .roles import (
    ROLE_CACHE_KEY,
    ROLE_CACHE_TTL,
    RoleResolver,
    RoleUpdate,
    resolve_role,
)
from .rollups import (
    AggregationScope,
    ScopeKind,
    average_turnaround_hours,
    build_rollup,
    compute_rollups,
    display_name_for,
    matches_editor,
    month_key,
    summarize_team,
)
from .engine import (
    ROLLUP_CACHE_KEY,
    AggregationEngine,
    EngineError,
    EngineState,
    RollupSnapshot,
)
from .session import SessionController

__all__ = [
    "Publisher",
    "Subscription",
    "ROLE_CACHE_KEY",
    "ROLE_CACHE_TTL",
    "RoleResolver",
    "RoleUpdate",
    "resolve_role",
    "AggregationScope",
    "ScopeKind",
    "average_turnaround_hours",
    "build_rollup",
    "compute_rollups",
    "display_name_for",
    "matches_editor",
    "month_key",
    "summarize_team",
    "ROLLUP_CACHE_KEY",
    "AggregationEngine",
    "EngineError",
    "EngineState",
    "RollupSnapshot",
    "SessionController",
]
