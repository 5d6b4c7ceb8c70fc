"""Global fallback constants."""

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from uconfig.domain.errors import InvalidArgumentError
from uconfig.logger.logger import get_logger
from uconfig.logger.types import Category, param

NO_USER = 0
DEFAULT_CATEGORY = "general"

GLOBAL_CONSTANTS: Mapping[str, Any] = MappingProxyType(
    {
        "NO_USER": NO_USER,
        "DEFAULT_CATEGORY": DEFAULT_CATEGORY,
    }
)


def get_constant(name: str, default: Any = None, silent: bool = False) -> Any:
    """
    Look up a global constant by name.

    Args:
        name: Constant name, e.g. "NO_USER"
        default: Returned when the name is unknown
        silent: Suppress the warning for unknown names

    Returns:
        The constant value or default
    """
    if name in GLOBAL_CONSTANTS:
        return GLOBAL_CONSTANTS[name]

    if not silent:
        get_logger().with_category(Category.CONFIG).warn(
            f"Attempted to access undefined constant: {name}",
            param("name", name),
        )
    return default


def validate_constant(name: str) -> None:
    """
    Raise if the name is not a known constant.

    Raises:
        InvalidArgumentError: Listing the valid names
    """
    if name in GLOBAL_CONSTANTS:
        return

    get_logger().with_category(Category.CONFIG).error(
        f"Invalid constant accessed: {name}",
        None,
        param("name", name),
    )
    valid = ", ".join(GLOBAL_CONSTANTS)
    raise InvalidArgumentError(
        f"Constant {name} does not exist. Valid options are: [{valid}]",
        name=name,
    )
