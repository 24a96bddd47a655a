"""
Timestamp utilities for consistent time handling across the system.
"""

from datetime import datetime, timezone


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string.

    Returns:
        Timestamp string such as '2024-05-01T12:00:00.000000+00:00'
    """
    return datetime.now(timezone.utc).isoformat()
