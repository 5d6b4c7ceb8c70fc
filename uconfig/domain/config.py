"""Configuration domain models."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

KEY_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def is_valid_key(key: Any) -> bool:
    """Check a configuration key against the allowed pattern."""
    return isinstance(key, str) and KEY_PATTERN.fullmatch(key) is not None


class Category(str, Enum):
    """Category tag of a configuration entry."""

    SYSTEM = "system"
    APPLICATION = "application"
    SECURITY = "security"
    PERFORMANCE = "performance"
    NONE = ""  # no category

    @classmethod
    def parse(cls, value: "Category | str | None") -> "Category":
        """
        Convert user input into a Category.

        None, "" and "none" map to Category.NONE.

        Raises:
            ValueError: If the value names no category
        """
        if value is None or isinstance(value, cls):
            return value or cls.NONE
        name = str(value).strip().lower()
        if name in ("", "none"):
            return cls.NONE
        return cls(name)

    @classmethod
    def options(cls) -> list[str]:
        """Selectable category values (everything except NONE)."""
        return [c.value for c in cls if c is not cls.NONE]


class EntryState(str, Enum):
    """Lifecycle state of a configuration entry."""

    ACTIVE = "active"
    DELETED = "deleted"


class AuditAction(str, Enum):
    """Action recorded in the audit log."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass
class ConfigEntry:
    """Single configuration entry."""

    key: str
    value: Any = None
    category: Category = Category.NONE
    note: str | None = None
    state: EntryState = EntryState.ACTIVE
    deleted_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: int | None = None  # Set by database

    @property
    def is_deleted(self) -> bool:
        """Check if the entry is soft-deleted."""
        return self.state is EntryState.DELETED

    def to_cache_item(self) -> dict[str, Any]:
        """Shape stored in the configuration map."""
        return {"value": self.value, "category": self.category.value}


@dataclass(frozen=True)
class ConfigVersion:
    """Immutable snapshot of an entry at one point in time."""

    config_id: int
    version: int
    key: str
    category: Category = Category.NONE
    note: str | None = None
    value: Any = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    id: int | None = None


@dataclass(frozen=True)
class ConfigAudit:
    """Immutable audit log record."""

    config_id: int
    action: AuditAction
    old_value: Any = None
    new_value: Any = None
    user_id: int | None = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    id: int | None = None
