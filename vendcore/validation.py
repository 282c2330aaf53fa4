"""Validation helpers for administrative precondition checks.

Eliminates repeated validation boilerplate across the ledger and inventory
stores.
"""

from collections.abc import Collection
from typing import Any

from .errors import InvalidArgumentError


def require_not_blank(value: str, error_msg: str) -> str:
    """Require a non-empty string, returning it stripped."""
    if value is None or not str(value).strip():
        raise InvalidArgumentError(error_msg)
    return str(value).strip()


def require_int(value: Any, error_msg: str) -> int:
    """Require an integer value (bools are rejected)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgumentError(error_msg, value=value)
    return value


def require_positive(value: int, error_msg: str) -> int:
    """Require an integer greater than zero."""
    value = require_int(value, error_msg)
    if value <= 0:
        raise InvalidArgumentError(error_msg, value=value)
    return value


def require_non_negative(value: int, error_msg: str) -> int:
    """Require an integer that is zero or greater."""
    value = require_int(value, error_msg)
    if value < 0:
        raise InvalidArgumentError(error_msg, value=value)
    return value


def require_one_of(value: Any, allowed: Collection[Any], error_msg: str) -> Any:
    """Require that a value is a member of the allowed set."""
    if value not in allowed:
        raise InvalidArgumentError(error_msg, value=value)
    return value
