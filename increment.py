"""Increment orchestration over a remote row store.

The remote store is expected to offer a single-round-trip atomic increment
(a stored procedure or an ``UPDATE ... RETURNING``). When that path fails
without writing, the orchestrator falls back to reading the row and writing
``value + 1`` back with a compare-and-swap on the old value, retrying a
bounded number of times when another writer got there first.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Tuple

import metrics
from errors import Conflict, IncrementApplied, NotFound, StoreError, StoreUnavailable
from storage import CounterStore, validate_key, validate_value

logger = logging.getLogger(__name__)

FALLBACK_ATTEMPTS = 3


class RowStore(ABC):
    """Row-level operations a remote counter table has to support."""

    @abstractmethod
    def increment_atomic(self, key: str) -> int:
        """Increase the row by one in a single round trip and return the new value.

        Raise IncrementApplied when the write happened but the new value is
        unknown; the fallback is skipped in that case.
        """

    @abstractmethod
    def fetch(self, key: str) -> int:
        """Return the stored value; raise NotFound when no row matches."""

    @abstractmethod
    def insert(self, key: str, value: int) -> int:
        """Create the row; raise Conflict when it already exists."""

    @abstractmethod
    def update(self, key: str, value: int, expected: int | None = None) -> int:
        """Overwrite the row and stamp last modification.

        With ``expected`` the write only applies if the stored value still
        equals it. Raises NotFound when no row was written.
        """

    @abstractmethod
    def fetch_all(self, limit: int | None = None) -> List[Tuple[str, int]]:
        """All rows as (key, value), highest value first."""

    def close(self):
        pass


def increment_with_fallback(rows: RowStore, key: str, attempts: int = FALLBACK_ATTEMPTS) -> int:
    try:
        return rows.increment_atomic(key)
    except IncrementApplied:
        # already counted; a second write would count it twice
        raise
    except (StoreError, NotFound) as e:
        logger.warning("atomic increment failed for %r, using fallback: %s", key, e)
        metrics.incr("increment_fallback")

    for attempt in range(1, attempts + 1):
        try:
            current = rows.fetch(key)
        except NotFound:
            try:
                return rows.insert(key, 1)
            except Conflict:
                logger.info("insert race on %r (attempt %d)", key, attempt)
                continue
        except StoreError as e:
            raise StoreUnavailable(str(e)) from e

        try:
            return rows.update(key, current + 1, expected=current)
        except NotFound:
            logger.info("value of %r changed during fallback (attempt %d)", key, attempt)
            continue
        except StoreError as e:
            raise StoreUnavailable(str(e)) from e

    raise StoreUnavailable(f"could not increment {key!r} after {attempts} attempts")


class RemoteCounterStore(CounterStore):
    """Counter store backed by a RowStore. Every store failure surfaces as StoreUnavailable."""

    def __init__(self, rows: RowStore, attempts: int = FALLBACK_ATTEMPTS):
        self.rows = rows
        self.attempts = attempts

    def get(self, key: str) -> int:
        validate_key(key)
        try:
            return self.rows.fetch(key)
        except NotFound:
            return 0
        except StoreError as e:
            raise StoreUnavailable(str(e)) from e

    def set(self, key: str, value: int) -> int:
        validate_key(key)
        validate_value(value)
        try:
            try:
                return self.rows.update(key, value)
            except NotFound:
                pass
            try:
                return self.rows.insert(key, value)
            except Conflict:
                return self.rows.update(key, value)
        except StoreError as e:
            raise StoreUnavailable(str(e)) from e

    def increment(self, key: str) -> int:
        validate_key(key)
        return increment_with_fallback(self.rows, key, self.attempts)

    def list_all(self) -> Dict[str, int]:
        return dict(self.ranked())

    def ranked(self, limit: int | None = None) -> List[Tuple[str, int]]:
        try:
            return self.rows.fetch_all(limit)
        except StoreError as e:
            raise StoreUnavailable(str(e)) from e

    def close(self):
        self.rows.close()
