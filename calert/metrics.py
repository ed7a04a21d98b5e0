"""In-process counters, gauges and histograms rendered in Prometheus text format."""

from __future__ import annotations

import os
import re
import threading
import time
from typing import Any, Callable, TextIO

_NAME_RE = re.compile(r"^([a-zA-Z_:][a-zA-Z0-9_:]*)(\{.*\})?$")


def _split_label(label: str) -> tuple[str, str]:
    """Split ``name{labels}`` into the bare name and the label block."""
    match = _NAME_RE.match(label)
    if match is None:
        raise ValueError(f"invalid metric name: {label!r}")
    return match.group(1), match.group(2) or ""


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(float(value))


class MetricsManager:
    """A namespaced store of metrics that can be flushed as Prometheus text."""

    def __init__(self, namespace: str = "") -> None:
        self.namespace = namespace
        self._lock = threading.Lock()
        self._kinds: dict[str, str] = {}
        self._values: dict[str, Any] = {}
        self._start_wall = time.time()
        self._start_monotonic = time.monotonic()

    def _update(self, label: str, kind: str, update: Callable[[Any], Any]) -> None:
        name = f"{self.namespace}_{label}" if self.namespace else label
        _split_label(name)
        with self._lock:
            existing = self._kinds.setdefault(name, kind)
            if existing != kind:
                raise ValueError(f"metric {name!r} is already registered as a {existing}")
            self._values[name] = update(self._values.get(name))

    def increment(self, label: str) -> None:
        """Add one to the counter ``label``."""
        self._update(label, "counter", lambda v: (v or 0) + 1)

    def decrement(self, label: str) -> None:
        """Subtract one from the counter ``label``."""
        self._update(label, "counter", lambda v: (v or 0) - 1)

    def duration(self, label: str, start_time: float) -> None:
        """Record the seconds elapsed since ``start_time`` (a ``time.monotonic()`` value)."""
        elapsed = max(0.0, time.monotonic() - start_time)
        self._update(
            label,
            "histogram",
            lambda v: (v[0] + 1, v[1] + elapsed) if v else (1, elapsed),
        )

    def set(self, label: str, value: float) -> None:
        """Set the gauge ``label`` to ``value``."""
        self._update(label, "gauge", lambda _: float(value))

    def flush_metrics(self, out: TextIO) -> None:
        """Write process metrics, stored metrics, start time and uptime to ``out``."""
        times = os.times()
        lines = [
            f"process_cpu_seconds_system_total {_format_number(times.system)}",
            f"process_cpu_seconds_total {_format_number(times.user + times.system)}",
            f"process_cpu_seconds_user_total {_format_number(times.user)}",
            f"process_num_threads {threading.active_count()}",
        ]
        with self._lock:
            for name in sorted(self._kinds):
                kind, value = self._kinds[name], self._values[name]
                if kind == "counter":
                    lines.append(f"{name} {value}")
                elif kind == "gauge":
                    lines.append(f"{name} {_format_number(value)}")
                else:
                    base, labels = _split_label(name)
                    lines.append(f"{base}_sum{labels} {_format_number(value[1])}")
                    lines.append(f"{base}_count{labels} {value[0]}")
        lines.append(f"calert_start_timestamp {int(self._start_wall)}")
        lines.append(f"calert_uptime_seconds {int(time.monotonic() - self._start_monotonic)}")
        out.write("".join(f"{line}\n" for line in lines))