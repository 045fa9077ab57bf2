"""
Configuration

Environment-based settings for the desk: who the team leader is,
the static editor roster, role cache lifetime, and which durable
cache backend to use.

Environment Variables:
    EDITDESK_TEAM_LEADER_EMAIL: The single privileged address (default vivek@mm.com)
    EDITDESK_ROSTER: JSON list of {"email", "name"} objects
    EDITDESK_ROSTER_FILE: Path to a JSON roster file (used if EDITDESK_ROSTER unset)
    EDITDESK_ROLE_CACHE_TTL_SECONDS: Role cache validity (default 86400)
    EDITDESK_AUTO_SEED: Seed demo orders on startup (default off)
    EDITDESK_SESSION_IDLE_SECONDS: Close a device session unused for this long (default 8h)
    EDITDESK_SESSION_SECRET: Signing secret for device cookies and the role cache
    EDITDESK_PRODUCTION: Refuse to start without a real secret; secure cookies

    EDITDESK_CACHE_DRIVER: Which durable cache to use
        - "memory" (default if no path configured)
        - "file" (JSON document at EDITDESK_CACHE_PATH)
    EDITDESK_CACHE_PATH: Path for the file driver

The roster is static configuration. Changing it means redeploying
with new values, not calling an API.
"""

import json
import os
import warnings
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from app.schemas import RosterEditor, normalize_email


DEFAULT_TEAM_LEADER_EMAIL = "vivek@mm.com"
DEFAULT_ROLE_CACHE_TTL_SECONDS = 24 * 60 * 60  # 24 hours
DEFAULT_SESSION_IDLE_SECONDS = 8 * 60 * 60

DEFAULT_ROSTER = (
    RosterEditor(email="tarun@mm.com", name="Tarun"),
    RosterEditor(email="gurwinder@mm.com", name="Gurwinder"),
    RosterEditor(email="roop@mm.com", name="Roop"),
    RosterEditor(email="harinder@mm.com", name="Harinder"),
)


class ConfigError(Exception):
    """Raised when configuration values are invalid."""
    pass


class CacheDriver(str, Enum):
    """Supported durable cache drivers."""
    MEMORY = "memory"
    FILE = "file"


def _is_enabled(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


_DEV_SECRET = "editdesk-dev-only-secret-not-for-deployment"


def is_production() -> bool:
    return _is_enabled("EDITDESK_PRODUCTION")


def session_secret() -> str:
    """
    Secret for signed cookies and the signed role cache.

    Read on every call so a changed environment takes effect without
    a restart. Missing or short secrets are fatal in production and fall
    back to a fixed development value otherwise.
    """
    secret = os.environ.get("EDITDESK_SESSION_SECRET", "")
    if len(secret) >= 16:
        return secret
    if is_production():
        raise ConfigError("EDITDESK_SESSION_SECRET must be at least 16 characters in production")
    warnings.warn("EDITDESK_SESSION_SECRET not set; using the development secret", stacklevel=3)
    return _DEV_SECRET


def parse_roster(raw: str) -> tuple[RosterEditor, ...]:
    """
    Parse a JSON roster.

    Format: [{"email": "tarun@mm.com", "name": "Tarun"}, ...]
    Order is preserved; duplicate emails are rejected.
    """
    try:
        entries = json.loads(raw)
    except ValueError as e:
        raise ConfigError(f"Roster is not valid JSON: {e}") from e

    if not isinstance(entries, list):
        raise ConfigError("Roster must be a JSON list of {email, name} objects")

    try:
        roster = tuple(RosterEditor.model_validate(entry) for entry in entries)
    except ValidationError as e:
        raise ConfigError(f"Invalid roster entry: {e}") from e

    seen = set()
    for editor in roster:
        if editor.email in seen:
            raise ConfigError(f"Duplicate roster email: {editor.email}")
        seen.add(editor.email)

    return roster


def load_roster() -> tuple[RosterEditor, ...]:
    """Load the roster from EDITDESK_ROSTER, EDITDESK_ROSTER_FILE, or the default."""
    raw = os.environ.get("EDITDESK_ROSTER")
    if raw:
        return parse_roster(raw)

    roster_file = os.environ.get("EDITDESK_ROSTER_FILE")
    if roster_file:
        try:
            return parse_roster(Path(roster_file).read_text(encoding="utf-8"))
        except OSError as e:
            raise ConfigError(f"Cannot read roster file {roster_file}: {e}") from e

    return DEFAULT_ROSTER


def get_cache_driver() -> CacheDriver:
    """
    Get the durable cache driver to use.

    Checks EDITDESK_CACHE_DRIVER, then falls back to:
    - file if EDITDESK_CACHE_PATH is set
    - memory otherwise
    """
    explicit = os.getenv("EDITDESK_CACHE_DRIVER", "").lower()

    if explicit:
        if explicit == "memory":
            return CacheDriver.MEMORY
        elif explicit == "file":
            return CacheDriver.FILE
        else:
            raise ConfigError(
                f"Unknown EDITDESK_CACHE_DRIVER: {explicit}. "
                f"Valid values: memory, file"
            )

    if os.getenv("EDITDESK_CACHE_PATH"):
        return CacheDriver.FILE

    return CacheDriver.MEMORY


@dataclass
class DeskConfig:
    """Settings for one deployment of the desk."""
    team_leader_email: str = DEFAULT_TEAM_LEADER_EMAIL
    roster: tuple[RosterEditor, ...] = field(default_factory=lambda: DEFAULT_ROSTER)
    role_cache_ttl_seconds: int = DEFAULT_ROLE_CACHE_TTL_SECONDS
    cache_driver: CacheDriver = CacheDriver.MEMORY
    cache_path: Optional[str] = None
    session_idle_seconds: int = DEFAULT_SESSION_IDLE_SECONDS
    auto_seed: bool = False

    def __post_init__(self):
        self.team_leader_email = normalize_email(self.team_leader_email)

    @property
    def role_cache_ttl(self) -> timedelta:
        return timedelta(seconds=self.role_cache_ttl_seconds)

    def known_emails(self) -> set[str]:
        """Every address that may sign in: the roster plus the team leader."""
        return {e.email for e in self.roster} | {self.team_leader_email}

    def roster_entry(self, email: str) -> Optional[RosterEditor]:
        email = normalize_email(email)
        return next((e for e in self.roster if e.email == email), None)

    @classmethod
    def from_env(cls) -> "DeskConfig":
        """Load configuration from environment variables."""
        try:
            ttl = int(os.getenv("EDITDESK_ROLE_CACHE_TTL_SECONDS", str(DEFAULT_ROLE_CACHE_TTL_SECONDS)))
        except ValueError as e:
            raise ConfigError(f"EDITDESK_ROLE_CACHE_TTL_SECONDS must be an integer: {e}") from e
        try:
            idle = int(os.getenv("EDITDESK_SESSION_IDLE_SECONDS", str(DEFAULT_SESSION_IDLE_SECONDS)))
        except ValueError as e:
            raise ConfigError(f"EDITDESK_SESSION_IDLE_SECONDS must be an integer: {e}") from e

        driver = get_cache_driver()
        cache_path = os.getenv("EDITDESK_CACHE_PATH")
        if driver == CacheDriver.FILE and not cache_path:
            raise ConfigError("EDITDESK_CACHE_DRIVER=file requires EDITDESK_CACHE_PATH")

        return cls(
            team_leader_email=os.getenv("EDITDESK_TEAM_LEADER_EMAIL", DEFAULT_TEAM_LEADER_EMAIL),
            roster=load_roster(),
            role_cache_ttl_seconds=ttl,
            session_idle_seconds=idle,
            cache_driver=driver,
            cache_path=cache_path,
            auto_seed=_is_enabled("EDITDESK_AUTO_SEED"),
        )
