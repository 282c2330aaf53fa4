"""Helper functions shared across stores and the transport binding."""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from google.protobuf.timestamp_pb2 import Timestamp

from .errors import InvalidArgumentError


def now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a record identifier."""
    return uuid4().hex


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from a store."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime as an RFC 3339 string, or None."""
    if value is None:
        return None
    ts = Timestamp()
    ts.FromDatetime(ensure_utc(value))
    return ts.ToJsonString()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 string into an aware UTC datetime.

    Raises:
        InvalidArgumentError: If the string is not a valid timestamp.
    """
    if not value:
        return None
    if not isinstance(value, str):
        raise InvalidArgumentError(f"invalid timestamp {value!r}", detail="expected an RFC 3339 string")
    ts = Timestamp()
    try:
        ts.FromJsonString(value)
    except ValueError as e:
        raise InvalidArgumentError(f"invalid timestamp {value!r}", detail=str(e)) from e
    return ts.ToDatetime(tzinfo=timezone.utc)
