"""
Utility functions for the task orchestration engine.

Includes:
- Sortable id generation
- UTC datetime helpers
- Billing period keys
"""

import secrets
import string
import time
from datetime import datetime, timezone
from typing import Optional

_BASE36 = string.digits + string.ascii_lowercase


def to_base36(value: int) -> str:
    """Encode a non-negative integer in lowercase base 36."""
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_id(prefix: str) -> str:
    """
    Generate a human-sortable identifier.

    Format is ``{prefix}_{base36 epoch millis}_{6 random base36 chars}``
    so ids of the same prefix sort by creation time.

    Args:
        prefix: Leading tag, e.g. a lowercased task type or ``wf``

    Returns:
        New identifier
    """
    timestamp = to_base36(int(time.time() * 1000))
    random_part = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{prefix}_{timestamp}_{random_part}"


def utc_now() -> datetime:
    """
    Get the current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def month_key(now: Optional[datetime] = None) -> str:
    """Billing period key, e.g. ``2026-10``."""
    now = now or utc_now()
    return f"{now.year}-{now.month:02d}"


def elapsed_ms(start: datetime, end: Optional[datetime] = None) -> int:
    """Milliseconds between two datetimes."""
    end = end or utc_now()
    return int((end - start).total_seconds() * 1000)

