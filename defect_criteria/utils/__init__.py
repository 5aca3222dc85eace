"""
Shared utilities for the defect criteria service.
"""
import uuid
from datetime import datetime, timezone


def generate_id(prefix=None):
    """Generate short UUID for database records.

    Args:
        prefix: Optional prefix for the ID (e.g., 'lib', 'aud')

    Returns:
        String ID like 'lib-a1b2c3d4' or just 'a1b2c3d4' if no prefix
    """
    short_uuid = str(uuid.uuid4())[:8]
    if prefix:
        return f"{prefix}-{short_uuid}"
    return short_uuid


def utc_now():
    """Fixed-width UTC timestamp; sorts the same as text and as time."""
    return datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')
