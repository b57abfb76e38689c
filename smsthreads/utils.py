"""
Utility functions shared by the mappers, the store and the remote adapter.
"""

import hashlib
import logging
import time
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


def hash_phone_number(phone_number: str) -> str:
    """
    Derive the stable participant identifier for a phone number.

    The same number always yields the same identifier, across restarts and
    across participants, so it can anchor both a thread's counterpart and
    the local account's own user id.

    Args:
        phone_number: Phone number exactly as the provider reports it

    Returns:
        Hex-encoded MD5 digest of the number
    """
    return hashlib.md5(phone_number.encode("utf-8")).hexdigest()


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def datetime_to_ms(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds (naive values are taken as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return round(value.timestamp() * 1000)


def ms_to_datetime(value: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def parse_cursor(cursor: Optional[str]) -> Optional[int]:
    """
    Resolve a pagination cursor to its timestamp boundary.

    Args:
        cursor: Decimal string of an epoch-millisecond timestamp, or None

    Returns:
        The timestamp, or None when no cursor was given

    Raises:
        ValueError: If the cursor is not a non-negative integer
    """
    if cursor is None or cursor == "":
        return None
    if not cursor.isdigit():
        logger.debug(f"Rejecting malformed cursor: {cursor!r}")
        raise ValueError(f"Invalid cursor: {cursor!r}")
    return int(cursor)


def thread_cursor(timestamp: int, thread_id: str) -> str:
    """Encode a thread's position in the (latest activity, id) ordering."""
    return f"{timestamp}:{thread_id}"


def parse_thread_cursor(cursor: Optional[str]) -> Optional[tuple[int, str]]:
    """
    Resolve a thread-page cursor to its (timestamp, thread id) boundary.

    A bare timestamp is accepted and sorts before every thread id at that
    timestamp, so it excludes all threads last active at that instant.

    Raises:
        ValueError: If the cursor is malformed
    """
    if cursor is None or cursor == "":
        return None
    timestamp, _, thread_id = cursor.partition(":")
    if not timestamp.isdigit():
        raise ValueError(f"Invalid cursor: {cursor!r}")
    return int(timestamp), thread_id
