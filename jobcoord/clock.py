"""
Wall-clock access.

Every component takes a ``Clock`` so lease expiry, staleness and stall
checks can be driven deterministically in tests.
"""

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)
