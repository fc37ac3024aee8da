import itertools
import threading
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime, timezone
from typing import Dict, List, Tuple

from errors import InvalidArgument

MAX_KEY_LENGTH = 255
MAX_SUBJECT_LENGTH = 255


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def validate_key(key) -> str:
    if not isinstance(key, str) or not key:
        raise InvalidArgument("key must be a non-empty string")
    if len(key) > MAX_KEY_LENGTH:
        raise InvalidArgument(f"key must be at most {MAX_KEY_LENGTH} characters")
    return key


def validate_value(value) -> int:
    # bool is an int subclass; True is not a count
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument("value must be a non-negative integer")
    if value < 0:
        raise InvalidArgument("value must be a non-negative integer")
    return value


def validate_subject(subject) -> str:
    """Trim and check a click subject; returns the trimmed string."""
    if not isinstance(subject, str):
        raise InvalidArgument("subject must be a string")
    subject = subject.strip()
    if not subject:
        raise InvalidArgument("subject must not be empty")
    if len(subject) > MAX_SUBJECT_LENGTH:
        raise InvalidArgument(f"subject must be at most {MAX_SUBJECT_LENGTH} characters")
    return subject


class CounterStore(ABC):
    """Named non-negative counters. A key that was never written reads as 0."""

    @abstractmethod
    def get(self, key: str) -> int:
        ...

    @abstractmethod
    def set(self, key: str, value: int) -> int:
        ...

    @abstractmethod
    def increment(self, key: str) -> int:
        ...

    def reset(self, key: str) -> int:
        return self.set(key, 0)

    @abstractmethod
    def list_all(self) -> Dict[str, int]:
        ...

    def ranked(self, limit: int | None = None) -> List[Tuple[str, int]]:
        """Counters ordered by descending value."""
        items = sorted(self.list_all().items(), key=lambda kv: (-kv[1], kv[0]))
        return items if limit is None else items[:limit]

    def close(self):
        pass


class MemoryCounterStore(CounterStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._values: Dict[str, int] = {}

    def get(self, key: str) -> int:
        validate_key(key)
        with self._lock:
            return self._values.get(key, 0)

    def set(self, key: str, value: int) -> int:
        validate_key(key)
        validate_value(value)
        with self._lock:
            self._values[key] = value
        return value

    def increment(self, key: str) -> int:
        validate_key(key)
        with self._lock:
            value = self._values.get(key, 0) + 1
            self._values[key] = value
        return value

    def list_all(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._values)


class ClickLog(ABC):
    """Append-only log of click events, aggregated per subject."""

    @abstractmethod
    def record(self, subject: str, ip_address: str | None = None, user_agent: str | None = None) -> dict:
        ...

    @abstractmethod
    def leaderboard(self, limit: int = 10, min_clicks: int = 1) -> List[dict]:
        ...

    @abstractmethod
    def analytics(self, subject: str, recent: int = 10) -> dict:
        ...

    def close(self):
        pass


class MemoryClickLog(ClickLog):
    def __init__(self):
        self._lock = threading.Lock()
        self._events: List[dict] = []
        self._ids = itertools.count(1)

    def record(self, subject: str, ip_address: str | None = None, user_agent: str | None = None) -> dict:
        subject = validate_subject(subject)
        with self._lock:
            event = {
                "id": next(self._ids),
                "subject": subject,
                "clicked_at": utc_now(),
                "ip_address": ip_address,
                "user_agent": user_agent,
            }
            self._events.append(event)
        return dict(event)

    def leaderboard(self, limit: int = 10, min_clicks: int = 1) -> List[dict]:
        with self._lock:
            counts = Counter(e["subject"] for e in self._events)
        rows = [(s, n) for s, n in counts.items() if n >= min_clicks]
        rows.sort(key=lambda r: (-r[1], r[0]))
        return [{"subject": s, "clicks": n} for s, n in rows[:limit]]

    def analytics(self, subject: str, recent: int = 10) -> dict:
        subject = validate_subject(subject)
        with self._lock:
            stamps = [e["clicked_at"] for e in self._events if e["subject"] == subject]
        return {
            "subject": subject,
            "total_clicks": len(stamps),
            "recent_clicks": list(reversed(stamps))[:recent],
            "first_click": stamps[0] if stamps else None,
            "last_click": stamps[-1] if stamps else None,
        }
