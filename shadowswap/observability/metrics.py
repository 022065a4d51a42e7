from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


LabelKey = Tuple[Tuple[str, str], ...]

_LOCK = threading.Lock()
_COUNTERS: Dict[str, int] = {}
_COUNTERS_LABELLED: Dict[Tuple[str, LabelKey], int] = {}
_GAUGES: Dict[str, int] = {}


def _label_key(labels: Dict[str, str]) -> LabelKey:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


def inc(name: str, value: int = 1) -> None:
    with _LOCK:
        _COUNTERS[name] = _COUNTERS.get(name, 0) + value


def get_counter(name: str) -> int:
    return _COUNTERS.get(name, 0)


def inc_labelled(name: str, labels: Dict[str, str], value: int = 1) -> None:
    key = (name, _label_key(labels))
    with _LOCK:
        _COUNTERS_LABELLED[key] = _COUNTERS_LABELLED.get(key, 0) + value


def get_counter_labelled(name: str, labels: Dict[str, str]) -> int:
    return _COUNTERS_LABELLED.get((name, _label_key(labels)), 0)


def set_gauge(name: str, value: int) -> None:
    with _LOCK:
        _GAUGES[name] = value


def get_gauge(name: str) -> int:
    return _GAUGES.get(name, 0)


def list_counters() -> List[Tuple[str, int]]:
    with _LOCK:
        return sorted(_COUNTERS.items())


def list_counters_labelled() -> List[Tuple[str, LabelKey, int]]:
    with _LOCK:
        return sorted((name, labels, val) for (name, labels), val in _COUNTERS_LABELLED.items())


def list_gauges() -> List[Tuple[str, int]]:
    with _LOCK:
        return sorted(_GAUGES.items())


@dataclass
class Timer:
    """Accumulate ``<name>_ms_sum`` / ``<name>_count``, optionally labelled."""

    name: str
    labels: Optional[Dict[str, str]] = None
    start: float = 0.0
    elapsed_ms: int = field(default=0)

    def __enter__(self):
        self.start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.elapsed_ms = int((time.perf_counter() - self.start) * 1000)
        if self.labels:
            inc_labelled(f"{self.name}_ms_sum", self.labels, self.elapsed_ms)
            inc_labelled(f"{self.name}_count", self.labels, 1)
        else:
            inc(f"{self.name}_ms_sum", self.elapsed_ms)
            inc(f"{self.name}_count", 1)


def reset() -> None:
    """Reset all in-process metrics (for tests)."""
    with _LOCK:
        _COUNTERS.clear()
        _COUNTERS_LABELLED.clear()
        _GAUGES.clear()
