"""
Utility functions for the chat service.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


def new_identifier() -> str:
    """Return a fresh store identifier (32-character lowercase hex UUID)."""
    return uuid.uuid4().hex


def is_valid_identifier(value: Any) -> bool:
    """
    Check that a value is a well-formed store identifier.

    Args:
        value: Candidate identifier, usually a path parameter

    Returns:
        True if value is a 32-character hex UUID string, False otherwise
    """
    if not isinstance(value, str) or len(value) != 32:
        return False
    try:
        return uuid.UUID(hex=value).hex == value.lower()
    except ValueError:
        return False


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive timestamps are taken to be UTC.

    Raises:
        ValueError: If value is not a valid ISO-8601 timestamp
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("timestamp must be a non-empty ISO-8601 string")
    text = value.strip()
    if text.endswith("Z"):
        text = text.removesuffix("Z") + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError as e:
        raise ValueError(f"timestamp is out of range in UTC: {value}") from e


def to_iso_utc(value: datetime) -> str:
    """Format a datetime as ISO-8601 UTC with millisecond precision and Z suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def utc_now_iso() -> str:
    """Current server time as an ISO-8601 UTC string."""
    return to_iso_utc(datetime.now(timezone.utc))
