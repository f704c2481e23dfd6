"""
Clock Module

Injectable time source. Services never call datetime.now() directly so that
due-date classification and timestamps can be pinned in tests.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
import threading


class Clock(ABC):
    """Abstract time source"""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current timezone-aware UTC time"""
        pass


class SystemClock(Clock):
    """Wall clock in UTC"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Manually controlled clock for tests and batch replays"""

    def __init__(self, current: datetime):
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        self._current = current
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def set(self, current: datetime) -> None:
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        with self._lock:
            self._current = current

    def advance(self, **kwargs) -> datetime:
        """Move the clock forward by a timedelta built from kwargs (days=, hours=, ...)"""
        with self._lock:
            self._current = self._current + timedelta(**kwargs)
            return self._current
