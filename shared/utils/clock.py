"""
shared/utils/clock.py
Injectable source of "now". Handlers receive it through `Depends(get_clock)`
so tests can pin time with `app.dependency_overrides`.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def get_clock() -> Clock:
    return utc_now


def hours_between(later: datetime, earlier: datetime) -> float:
    """Signed number of hours from `earlier` to `later`."""
    return (later - earlier).total_seconds() / 3600
