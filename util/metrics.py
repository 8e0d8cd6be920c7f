import time
import threading
from collections import defaultdict
from typing import Dict

# counter families, by name prefix
FAMILIES = ("pairing", "candidates", "messages", "session", "answers")


class CounterStore:
    """Process-wide counters; safe to bump from executor threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: Dict[str, int] = {}

    def inc(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._values[name] = self._values.get(name, 0) + value

    def value(self, name: str) -> int:
        with self._lock:
            return self._values.get(name, 0)

    def copy(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._values)

    def clear(self) -> None:
        with self._lock:
            self._values.clear()


COUNTERS = CounterStore()


def incr(name: str, value: int = 1) -> None:
    COUNTERS.inc(name, value)


def get(name: str) -> int:
    return COUNTERS.value(name)


def snapshot() -> Dict[str, int]:
    return COUNTERS.copy()


def grouped() -> Dict[str, Dict[str, int]]:
    """
    Counters split by family, e.g. ``candidates_ingested`` lands under
    ``candidates`` as ``ingested``. Unknown prefixes go under ``other``.
    """
    out: Dict[str, Dict[str, int]] = defaultdict(dict)
    for name, value in sorted(COUNTERS.copy().items()):
        family, _, rest = name.partition("_")
        if family in FAMILIES and rest:
            out[family][rest] = value
        else:
            out["other"][name] = value
    return dict(out)


def reset() -> None:
    """Drop every counter (tests and fresh CLI runs)."""
    COUNTERS.clear()


def now_ms() -> int:
    return int(time.time() * 1000)
