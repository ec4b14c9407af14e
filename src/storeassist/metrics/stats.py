"""Scoped counters owned by each service instance."""

from __future__ import annotations

import threading
from collections import Counter
from typing import Mapping


class StatsCounter:
    """Thread-safe named counters, injected instead of module-level globals."""

    def __init__(self, initial: Mapping[str, float] | None = None) -> None:
        self._lock = threading.Lock()
        self._values: Counter[str] = Counter(initial or {})

    def incr(self, name: str, amount: float = 1) -> None:
        with self._lock:
            self._values[name] += amount

    def get(self, name: str) -> float:
        with self._lock:
            return self._values.get(name, 0)

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            return dict(self._values)

    def reset(self) -> None:
        with self._lock:
            self._values.clear()
