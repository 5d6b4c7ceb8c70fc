"""Errors raised by the configuration service.

Every error carries an ``ErrorKind`` so callers can branch on the kind::

    try:
        manager.set(key, value)
    except ConfigError as err:
        match err.kind:
            case ErrorKind.INVALID_INPUT:
                ...
            case ErrorKind.DUPLICATE_KEY:
                ...
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Closed set of failure kinds."""

    INVALID_INPUT = "invalid_input"
    INVALID_ARGUMENT = "invalid_argument"
    NOT_FOUND = "not_found"
    DUPLICATE_KEY = "duplicate_key"
    PERSISTENCE_FAILED = "persistence_failed"


class ConfigError(Exception):
    """Base class for configuration errors."""

    kind: ErrorKind = ErrorKind.PERSISTENCE_FAILED

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class InvalidInputError(ConfigError, ValueError):
    """Key, value, category or audit action failed validation."""

    kind = ErrorKind.INVALID_INPUT


class InvalidArgumentError(ConfigError, ValueError):
    """An argument is outside its domain (e.g. a non-positive config id)."""

    kind = ErrorKind.INVALID_ARGUMENT


class ConfigNotFoundError(ConfigError, LookupError):
    """No configuration entry matches the lookup."""

    kind = ErrorKind.NOT_FOUND


class DuplicateKeyError(ConfigError):
    """An entry with the same key already exists."""

    kind = ErrorKind.DUPLICATE_KEY


class PersistenceError(ConfigError):
    """A storage write or read failed."""

    kind = ErrorKind.PERSISTENCE_FAILED
