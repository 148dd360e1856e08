"""Day-scoped call counters with check-and-increment semantics.

Counters live in a :class:`CounterStore` keyed by ``"<date>:<counter type>"``.
A new day produces a new key, so counters never need an explicit reset.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import date
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

MODEL_CALL = "model-call"

# Bound on re-reads after a lost compare-and-set before giving up.
_MAX_CAS_ATTEMPTS = 5


class CounterStore(Protocol):
    def get(self, key: str) -> int: ...

    def compare_and_set(self, key: str, expected: int, new: int) -> bool: ...


class InMemoryCounterStore:
    """Process-local counter store."""

    def __init__(self, initial: dict[str, int] | None = None) -> None:
        self._values: dict[str, int] = dict(initial or {})

    def get(self, key: str) -> int:
        return self._values.get(key, 0)

    def compare_and_set(self, key: str, expected: int, new: int) -> bool:
        if self._values.get(key, 0) != expected:
            return False
        self._values[key] = new
        return True


class JsonFileCounterStore:
    """Counter store persisted as a single JSON object on disk.

    Every write rewrites the whole file through a temporary file and
    ``os.replace`` so a crash never leaves a half-written file behind.
    Safe for one process at a time only.
    """

    def __init__(self, path: str) -> None:
        self._path = os.path.expanduser(path)

    def _load(self) -> dict[str, int]:
        try:
            with open(self._path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"Counter file {self._path} must contain a JSON object")
        return data

    def _save(self, data: dict[str, int]) -> None:
        directory = os.path.dirname(self._path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".counters-")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path)
        except BaseException:
            os.unlink(tmp_path)
            raise

    def get(self, key: str) -> int:
        return int(self._load().get(key, 0))

    def compare_and_set(self, key: str, expected: int, new: int) -> bool:
        data = self._load()
        if int(data.get(key, 0)) != expected:
            return False
        data[key] = new
        self._save(data)
        return True


class BudgetTracker:
    """Enforces daily limits per counter type.

    Parameters
    ----------
    store:
        Backing :class:`CounterStore`.
    limits:
        Maximum count per day for each counter type. Counter types with
        no entry are counted but never refused.
    today:
        Callable returning the current local date; injectable for tests.
    """

    def __init__(
        self,
        store: CounterStore,
        limits: dict[str, int],
        today: Callable[[], date] = date.today,
    ) -> None:
        self._store = store
        self._limits = dict(limits)
        self._today = today

    def _key(self, counter_type: str) -> str:
        return f"{self._today().isoformat()}:{counter_type}"

    def used(self, counter_type: str) -> int:
        return self._store.get(self._key(counter_type))

    def remaining(self, counter_type: str) -> int | None:
        limit = self._limits.get(counter_type)
        if limit is None:
            return None
        return max(0, limit - self.used(counter_type))

    def try_consume(self, counter_type: str, n: int = 1) -> bool:
        """Consume ``n`` units if that keeps today's count within the limit.

        Returns False, leaving the counter unchanged, when the limit would
        be exceeded.
        """
        if n <= 0:
            raise ValueError(f"n must be positive, got {n}")

        key = self._key(counter_type)
        limit = self._limits.get(counter_type)

        for _ in range(_MAX_CAS_ATTEMPTS):
            current = self._store.get(key)
            if limit is not None and current + n > limit:
                logger.info(
                    "Budget refused: %s at %d/%d (requested %d)", counter_type, current, limit, n
                )
                return False
            if self._store.compare_and_set(key, current, current + n):
                logger.debug("Budget consumed: %s now %d", key, current + n)
                return True

        logger.warning("Budget refused: lost %d compare-and-set races on %s", _MAX_CAS_ATTEMPTS, key)
        return False
