"""In-process counters and latency observations with a text exposition."""

from __future__ import annotations

import math
import threading
from collections.abc import Mapping

LabelSet = tuple[tuple[str, str], ...]

_QUANTILES = (0.0, 0.5, 0.9, 0.95, 0.99, 0.999, 1.0)


def _label_key(labels: Mapping[str, str] | None) -> LabelSet:
    return tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items()))


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format_labels(labels: LabelSet) -> str:
    if not labels:
        return ""
    inner = ",".join(f'{name}="{_escape(value)}"' for name, value in labels)
    return "{" + inner + "}"


def _format_value(value: float) -> str:
    if isinstance(value, int):
        return str(value)
    if math.isfinite(value) and value.is_integer():
        return str(int(value))
    return repr(value)


def _quantile(ordered: list[float], q: float) -> float:
    index = max(math.ceil(q * len(ordered)) - 1, 0)
    return ordered[min(index, len(ordered) - 1)]


class MetricsRegistry:
    """Thread-safe store of labelled counters and value observations."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, dict[LabelSet, int]] = {}
        self._histograms: dict[str, dict[LabelSet, list[float]]] = {}

    def increment(self, name: str, labels: Mapping[str, str] | None = None, amount: int = 1) -> None:
        """Add ``amount`` to the counter ``name`` with ``labels``."""
        if amount < 0:
            raise ValueError("counters can only increase")
        key = _label_key(labels)
        with self._lock:
            series = self._counters.setdefault(name, {})
            series[key] = series.get(key, 0) + amount

    def observe(self, name: str, labels: Mapping[str, str] | None, value: float) -> None:
        """Record one observation of ``value`` for ``name`` with ``labels``."""
        key = _label_key(labels)
        with self._lock:
            self._histograms.setdefault(name, {}).setdefault(key, []).append(float(value))

    def counter_value(self, name: str, labels: Mapping[str, str] | None = None) -> int:
        """Current value of a counter; zero if it was never incremented."""
        with self._lock:
            return self._counters.get(name, {}).get(_label_key(labels), 0)

    def observations(self, name: str, labels: Mapping[str, str] | None = None) -> list[float]:
        """All values observed for a series, in recording order."""
        with self._lock:
            return list(self._histograms.get(name, {}).get(_label_key(labels), []))

    def render(self) -> str:
        """Render all series in the Prometheus text exposition format."""
        lines: list[str] = []
        with self._lock:
            for name in sorted(self._counters):
                lines.append(f"# TYPE {name} counter")
                for labels, value in sorted(self._counters[name].items()):
                    lines.append(f"{name}{_format_labels(labels)} {value}")
                lines.append("")
            for name in sorted(self._histograms):
                lines.append(f"# TYPE {name} summary")
                for labels, values in sorted(self._histograms[name].items()):
                    ordered = sorted(values)
                    for q in _QUANTILES:
                        q_labels = labels + (("quantile", str(q)),)
                        lines.append(
                            f"{name}{_format_labels(q_labels)} {_format_value(_quantile(ordered, q))}"
                        )
                    lines.append(f"{name}_sum{_format_labels(labels)} {_format_value(sum(values))}")
                    lines.append(f"{name}_count{_format_labels(labels)} {len(values)}")
                lines.append("")
        return "\n".join(lines)

    def reset(self) -> None:
        """Drop every recorded series."""
        with self._lock:
            self._counters.clear()
            self._histograms.clear()


METRICS = MetricsRegistry()