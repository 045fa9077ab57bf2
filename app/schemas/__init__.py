# Canonical schemas for EditDesk.
# Orders are facts delivered by the stream; rollups are derived from them.

from .order import (
    ALLOWED_TRANSITIONS,
    NewOrder,
    Order,
    OrderStatus,
    as_utc,
    detect_country,
)
from .editor import EditorRole, Identity, RosterEditor, SessionRole, normalize_email
from .rollup import (
    ActivityEntry,
    CompletedOrderRef,
    EditorRollup,
    MonthCount,
    MonthlyStat,
    PendingEntry,
    TeamSummary,
)

__all__ = [
    # Order
    "ALLOWED_TRANSITIONS",
    "NewOrder",
    "Order",
    "OrderStatus",
    "as_utc",
    "detect_country",
    # Editor / session
    "EditorRole",
    "Identity",
    "RosterEditor",
    "SessionRole",
    "normalize_email",
    # Rollups
    "ActivityEntry",
    "CompletedOrderRef",
    "EditorRollup",
    "MonthCount",
    "MonthlyStat",
    "PendingEntry",
    "TeamSummary",
]
