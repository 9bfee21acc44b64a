"""In-process counters, gauges, latency histograms and a recent-event ring."""
from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterator, List, Optional, Tuple

MetricKey = Tuple[str, Tuple[Tuple[str, str], ...]]

_MAX_EVENTS = 100
_MAX_SAMPLES = 500


def _labels_tuple(labels: Optional[Dict[str, Any]]) -> Tuple[Tuple[str, str], ...]:
    if not labels:
        return ()
    return tuple(sorted((str(key), str(value)) for key, value in labels.items()))


@dataclass
class Histogram:
    count: int = 0
    total: float = 0.0
    min_value: float = field(default=float("inf"))
    max_value: float = field(default=float("-inf"))
    samples: Deque[float] = field(default_factory=lambda: deque(maxlen=_MAX_SAMPLES))

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.min_value = min(self.min_value, value)
        self.max_value = max(self.max_value, value)
        self.samples.append(value)

    def percentile(self, fraction: float) -> Optional[float]:
        if not self.samples:
            return None
        ordered = sorted(self.samples)
        index = min(len(ordered) - 1, int(round(fraction * (len(ordered) - 1))))
        return ordered[index]

    def snapshot(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "avg": self.total / self.count if self.count else 0.0,
            "min": None if self.count == 0 else self.min_value,
            "max": None if self.count == 0 else self.max_value,
            "p50": self.percentile(0.5),
            "p95": self.percentile(0.95),
        }


_lock = threading.Lock()
_counters: Dict[MetricKey, float] = defaultdict(float)
_gauges: Dict[MetricKey, float] = {}
_histograms: Dict[MetricKey, Histogram] = {}
_events: Deque[Dict[str, Any]] = deque(maxlen=_MAX_EVENTS)


def increment_counter(name: str, amount: float = 1.0, labels: Optional[Dict[str, Any]] = None) -> None:
    with _lock:
        _counters[(name, _labels_tuple(labels))] += amount


def set_gauge(name: str, value: float, labels: Optional[Dict[str, Any]] = None) -> None:
    with _lock:
        _gauges[(name, _labels_tuple(labels))] = value


def observe_latency(name: str, value: float, labels: Optional[Dict[str, Any]] = None) -> None:
    with _lock:
        histogram = _histograms.setdefault((name, _labels_tuple(labels)), Histogram())
        histogram.observe(value)


@contextmanager
def timed(name: str, labels: Optional[Dict[str, Any]] = None) -> Iterator[None]:
    """Observe the wall time of the wrapped block in milliseconds."""
    started = time.perf_counter()
    try:
        yield
    finally:
        observe_latency(name, (time.perf_counter() - started) * 1000, labels)


def record_event(name: str, payload: Dict[str, Any]) -> None:
    with _lock:
        _events.append({"name": name, "timestamp": time.time(), "payload": payload})


def get_counter_value(name: str, labels: Optional[Dict[str, Any]] = None) -> float:
    """Sum of a counter, restricted to series carrying every given label."""
    wanted = set(_labels_tuple(labels))
    with _lock:
        return sum(
            value
            for (counter_name, counter_labels), value in _counters.items()
            if counter_name == name and wanted.issubset(set(counter_labels))
        )


def _group(items, render) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for (name, labels), value in items:
        grouped.setdefault(name, []).append({"labels": dict(labels), **render(value)})
    return grouped


def get_metrics_snapshot() -> Dict[str, Any]:
    with _lock:
        return {
            "counters": _group(_counters.items(), lambda value: {"value": value}),
            "gauges": _group(_gauges.items(), lambda value: {"value": value}),
            "histograms": _group(_histograms.items(), lambda hist: {"stats": hist.snapshot()}),
            "events": list(_events),
        }


def reset_metrics() -> None:
    """Testing helper."""
    with _lock:
        _counters.clear()
        _gauges.clear()
        _histograms.clear()
        _events.clear()
