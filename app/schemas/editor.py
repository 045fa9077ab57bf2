"""
Editor and Session Schemas

Who is signed in, what they may see, and the static editor roster.

Email addresses are compared case-insensitively everywhere, so every
model stores them stripped and lower-cased.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class EditorRole(str, Enum):
    """
    Access roles.

    The team leader sees every editor's rollup and creates orders.
    Editors see only their own backlog.
    """
    TEAM_LEADER = "team-leader"
    EDITOR = "editor"


class Identity(BaseModel):
    """A signed-in identity as delivered by the identity provider."""
    email: str = Field(..., min_length=1)

    class Config:
        frozen = True

    @field_validator("email")
    @classmethod
    def lower_case_email(cls, v: str) -> str:
        return normalize_email(v)


class RosterEditor(BaseModel):
    """One entry of the static editor roster."""
    email: str = Field(..., min_length=3)
    name: str = Field(..., min_length=1)

    class Config:
        frozen = True

    @field_validator("email")
    @classmethod
    def lower_case_email(cls, v: str) -> str:
        return normalize_email(v)


class SessionRole(BaseModel):
    """
    A resolved role, cached so a reload does not wait on sign-in.

    Valid for a fixed window after `cached_at`; expired entries
    are treated as absent.
    """
    email: str
    role: EditorRole
    cached_at: datetime
