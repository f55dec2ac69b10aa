"""
In-process metrics rendered in the Prometheus text exposition format.

    from .metrics import METRICS
    METRICS.inc("toolgate_invoke_total")
    METRICS.inc("toolgate_error_total", labels={"code": "Forbidden"})
    with METRICS.timer("toolgate_invoke_duration_seconds"):
        ...
"""

from __future__ import annotations

import bisect
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

LabelKey = tuple[tuple[str, str], ...]

DEFAULT_BUCKETS = (0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


def _key(labels: dict[str, str] | None) -> LabelKey:
    return tuple(sorted((labels or {}).items()))


def _fmt_labels(key: LabelKey) -> str:
    if not key:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in key) + "}"


@dataclass
class _HistogramSeries:
    bounds: tuple[float, ...]
    buckets: list[int] = field(default_factory=list)
    total: float = 0.0
    count: int = 0

    def __post_init__(self) -> None:
        if not self.buckets:
            self.buckets = [0] * len(self.bounds)

    def observe(self, value: float) -> None:
        # Non-cumulative per bucket; cumulated at render time.
        idx = bisect.bisect_left(self.bounds, value)
        if idx < len(self.bounds):
            self.buckets[idx] += 1
        self.total += value
        self.count += 1


class Registry:
    """Thread-safe counters, gauges and histograms keyed by (name, labels)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._kinds: dict[str, str] = {}
        self._help: dict[str, str] = {}
        self._values: dict[str, dict[LabelKey, int]] = {}
        self._bounds: dict[str, tuple[float, ...]] = {}
        self._hists: dict[str, dict[LabelKey, _HistogramSeries]] = {}

    def describe(self, name: str, help_text: str, metric_type: str = "counter") -> None:
        self._kinds[name] = metric_type
        self._help[name] = help_text

    def register_histogram(self, name: str, help_text: str, buckets: tuple[float, ...] = DEFAULT_BUCKETS) -> None:
        self.describe(name, help_text, "histogram")
        self._bounds[name] = tuple(sorted(buckets))
        self._hists.setdefault(name, {})

    # counters & gauges share storage; the declared kind decides rendering

    def _add(self, name: str, labels: dict[str, str] | None, delta: int) -> None:
        with self._lock:
            series = self._values.setdefault(name, {})
            k = _key(labels)
            series[k] = series.get(k, 0) + delta

    def _read(self, name: str, labels: dict[str, str] | None) -> int:
        with self._lock:
            return self._values.get(name, {}).get(_key(labels), 0)

    def inc(self, name: str, *, labels: dict[str, str] | None = None, delta: int = 1) -> None:
        self._add(name, labels, delta)

    def get(self, name: str, *, labels: dict[str, str] | None = None) -> int:
        return self._read(name, labels)

    def gauge_inc(self, name: str, *, labels: dict[str, str] | None = None) -> None:
        self._add(name, labels, 1)

    def gauge_dec(self, name: str, *, labels: dict[str, str] | None = None) -> None:
        self._add(name, labels, -1)

    def gauge_get(self, name: str, *, labels: dict[str, str] | None = None) -> int:
        return self._read(name, labels)

    def observe(self, name: str, value: float, *, labels: dict[str, str] | None = None) -> None:
        bounds = self._bounds.get(name)
        if bounds is None:
            return
        with self._lock:
            series = self._hists[name].setdefault(_key(labels), _HistogramSeries(bounds))
            series.observe(value)

    def histogram_count(self, name: str, *, labels: dict[str, str] | None = None) -> int:
        with self._lock:
            series = self._hists.get(name, {}).get(_key(labels))
            return series.count if series else 0

    @contextmanager
    def timer(self, name: str, *, labels: dict[str, str] | None = None) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, time.perf_counter() - started, labels=labels)

    def reset(self) -> None:
        with self._lock:
            self._values.clear()
            for name in self._hists:
                self._hists[name] = {}

    def render(self) -> str:
        with self._lock:
            values = {n: dict(s) for n, s in self._values.items()}
            hists = {
                n: {k: (list(s.buckets), s.total, s.count) for k, s in series.items()}
                for n, series in self._hists.items()
            }

        out: list[str] = []

        def header(name: str, kind: str) -> None:
            if name in self._help:
                out.append(f"# HELP {name} {self._help[name]}")
            out.append(f"# TYPE {name} {kind}")

        for name in sorted(values):
            header(name, self._kinds.get(name, "counter"))
            for k in sorted(values[name]):
                out.append(f"{name}{_fmt_labels(k)} {values[name][k]}")

        for name in sorted(hists):
            if not hists[name]:
                continue
            header(name, "histogram")
            bounds = self._bounds[name]
            for k in sorted(hists[name]):
                buckets, total, count = hists[name][k]
                running = 0
                for bound, n in zip(bounds, buckets):
                    running += n
                    out.append(f"{name}_bucket{_fmt_labels((*k, ('le', str(bound))))} {running}")
                out.append(f"{name}_bucket{_fmt_labels((*k, ('le', '+Inf')))} {count}")
                out.append(f"{name}_sum{_fmt_labels(k)} {total:.6f}")
                out.append(f"{name}_count{_fmt_labels(k)} {count}")

        out.append("")
        return "\n".join(out)


METRICS = Registry()

METRICS.describe("toolgate_invoke_total", "Tool invocation requests received.")
METRICS.describe("toolgate_invoke_outcome_total", "Tool invocations by terminal outcome.")
METRICS.describe("toolgate_error_total", "Failed invocations by error code.")
METRICS.describe("toolgate_policy_decision_total", "Policy engine decisions by effect.")
METRICS.describe("toolgate_pending_created_total", "Pending operations created.")
METRICS.describe("toolgate_confirmation_total", "Confirmation attempts by result.")
METRICS.describe("toolgate_audit_failure_total", "Audit appends that failed.")
METRICS.describe("toolgate_llm_error_total", "Text generation / embedding errors by kind.")
METRICS.describe("toolgate_invoke_in_flight", "Invocations currently being processed.", metric_type="gauge")
METRICS.register_histogram(
    "toolgate_invoke_duration_seconds",
    "Latency of tool invocations in seconds.",
)
