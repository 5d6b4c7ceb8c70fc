"""Types and constants for structured logging."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Level(str, Enum):
    """Severity of a log entry."""

    TRACE = "trace"
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"  # recoverable
    FATAL = "fatal"  # process exits
    PANIC = "panic"  # raises

    @property
    def severity(self) -> int:
        """Numeric rank used for min-level filtering."""
        return _SEVERITY[self]

    @classmethod
    def parse(cls, value: str | None, default: "Level | None" = None) -> "Level":
        """Parse a level name (case-insensitive), accepting 'warning' as an alias."""
        if not value:
            return default or cls.DEBUG
        name = value.strip().lower()
        if name == "warning":
            name = "warn"
        try:
            return cls(name)
        except ValueError:
            return default or cls.DEBUG


_SEVERITY = {
    Level.TRACE: 0,
    Level.DEBUG: 10,
    Level.INFO: 20,
    Level.WARN: 30,
    Level.ERROR: 40,
    Level.FATAL: 50,
    Level.PANIC: 60,
}


class Category(str, Enum):
    """Groups log events by subsystem."""

    CONFIG = "config"  # Configuration manager
    DATABASE = "database"  # PostgreSQL operations
    CACHE = "cache"  # Cache store and locks
    SECURITY = "security"  # Encryption codec
    CLI = "cli"  # Command line interface


@dataclass
class LogEntry:
    """Single log record destined for the logs table."""

    timestamp: datetime
    service_name: str
    instance_id: str
    environment: str
    level: Level
    message: str
    ingestion_time: datetime = field(default_factory=datetime.utcnow)
    node_name: str | None = None
    category: Category | None = None
    trace_id: str | None = None
    span_id: str | None = None
    request_id: str | None = None
    function_name: str | None = None
    file_path: str | None = None
    line_number: int | None = None
    error_message: str | None = None
    stack_trace: str | None = None
    context: dict[str, Any] | None = None
    duration_ms: int | None = None


@dataclass
class Field:
    """Structured key/value attached to a log entry."""

    key: str
    value: Any


def category(cat: Category) -> Field:
    """Override the logger category for a single entry."""
    return Field(key="_category", value=cat)


def param(key: str, value: Any) -> Field:
    """Generic structured parameter."""
    return Field(key=key, value=value)


def duration_ms(value: int) -> Field:
    """Duration of the logged operation in milliseconds."""
    return Field(key="duration_ms", value=value)


def error(err: Exception) -> Field:
    """Error message as a field, without a stack trace."""
    return Field(key="error", value=str(err))
