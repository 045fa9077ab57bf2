"""
Canonical Order Schema

An order is one photo-editing job for a client.
It is created by the team leader, assigned to an editor,
and moves forward through its status exactly once:

    pending -> in-progress -> completed

Nothing moves backwards. The writer enforces this;
aggregation assumes it.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .editor import normalize_email


class OrderStatus(str, Enum):
    """
    Order lifecycle states.
    Mutually exclusive and exhaustive.
    """
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"

    @property
    def is_open(self) -> bool:
        """Open orders count towards an editor's current workload."""
        return self in (OrderStatus.PENDING, OrderStatus.IN_PROGRESS)


# Forward-only transitions
ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: (OrderStatus.IN_PROGRESS, OrderStatus.COMPLETED),
    OrderStatus.IN_PROGRESS: (OrderStatus.COMPLETED,),
    OrderStatus.COMPLETED: (),
}


# WhatsApp dialling prefixes used to autofill the client's country.
# Longest prefixes first so "+971" wins over "+9...".
COUNTRY_DIAL_CODES = (
    ("+971", "UAE"),
    ("+966", "Saudi Arabia"),
    ("+91", "India"),
    ("+44", "United Kingdom"),
    ("+61", "Australia"),
    ("+1", "United States"),
)


def detect_country(whatsapp: str) -> Optional[str]:
    """Guess the client's country from a WhatsApp number's dialling prefix."""
    number = (whatsapp or "").strip()
    if not number.startswith("+"):
        return None
    for prefix, country in COUNTRY_DIAL_CODES:
        if number.startswith(prefix):
            return country
    return None


def as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    """Timezone-aware UTC. Naive values are taken to be UTC already."""
    if moment is None:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _optional_email(email: Optional[str]) -> Optional[str]:
    return normalize_email(email) or None


class Order(BaseModel):
    """
    A single order record as delivered by the order stream.

    `assigned_to_name` is a legacy identifier: older records were
    written before the assignee email was stored reliably.
    """
    id: str = Field(
        ...,
        description="Stable identifier"
    )

    status: OrderStatus = Field(
        default=OrderStatus.PENDING,
        description="Lifecycle state"
    )

    assigned_to_email: Optional[str] = Field(
        default=None,
        description="Assignee email (primary match key)"
    )

    assigned_to_name: Optional[str] = Field(
        default=None,
        description="Assignee display name (legacy fallback match key)"
    )

    created_at: Optional[datetime] = Field(
        default=None,
        description="When the order was created"
    )

    completed_at: Optional[datetime] = Field(
        default=None,
        description="When the order was completed (present iff completed)"
    )

    # Client details captured by the order form
    client_name: str = Field(
        default="",
        description="Customer name"
    )

    whatsapp: str = Field(
        default="",
        description="Customer WhatsApp number"
    )

    country: str = Field(
        default="",
        description="Customer country"
    )

    telecaller: str = Field(
        default="",
        description="Telecaller who took the order"
    )

    sample_image_url: Optional[str] = Field(
        default=None,
        description="Reference image for the edit"
    )

    @field_validator("created_at", "completed_at")
    @classmethod
    def timestamps_in_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @field_validator("assigned_to_email")
    @classmethod
    def lower_case_email(cls, v: Optional[str]) -> Optional[str]:
        return _optional_email(v)


class NewOrder(BaseModel):
    """Input for creating an order. Status and timestamps are set by the writer."""
    client_name: str = Field(..., min_length=1)
    whatsapp: str = ""
    country: str = ""
    telecaller: str = ""
    sample_image_url: Optional[str] = None
    assigned_to_email: Optional[str] = None
    assigned_to_name: Optional[str] = None

    @field_validator("assigned_to_email")
    @classmethod
    def lower_case_email(cls, v: Optional[str]) -> Optional[str]:
        return _optional_email(v)
