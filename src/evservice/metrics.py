from __future__ import annotations

from collections import defaultdict, deque
from typing import Any

QUANTILES = (0.5, 0.9, 0.95, 0.99)


def _quantile(sorted_vals: list[float], q: float) -> float:
    return sorted_vals[min(int(len(sorted_vals) * q), len(sorted_vals) - 1)]


def _metric_name(name: str) -> str:
    return name.replace(".", "_").replace("-", "_")


class ServiceMetrics:
    """Request counters and recent latency samples, rendered as JSON or Prometheus text.

    Latency quantiles cover the last ``max_samples`` observations per histogram;
    the ``<name>_count`` counter keeps the lifetime total.
    """

    def __init__(self, prefix: str = "evvalue", max_samples: int = 2048) -> None:
        self.prefix = prefix
        self.counters: dict[str, int] = defaultdict(int)
        self.histograms: dict[str, deque[float]] = defaultdict(lambda: deque(maxlen=max_samples))

    def increment(self, name: str, amount: int = 1) -> None:
        self.counters[name] += amount

    def record_latency(self, name: str, seconds: float) -> None:
        self.histograms[name].append(seconds)
        self.counters[f"{name}_count"] += 1

    def latency_summary(self, name: str) -> dict[str, Any]:
        vals = sorted(self.histograms.get(name, ()))
        if not vals:
            return {"count": 0, "p50_ms": 0, "p95_ms": 0, "p99_ms": 0}
        return {
            "count": len(vals),
            **{f"p{int(q * 100)}_ms": round(_quantile(vals, q) * 1000, 1) for q in (0.5, 0.95, 0.99)},
        }

    def as_dict(self) -> dict[str, Any]:
        return {
            "counters": dict(self.counters),
            "estimate_latency": self.latency_summary("estimate"),
        }

    def prometheus_text(self) -> str:
        lines: list[str] = []
        for name, value in sorted(self.counters.items()):
            metric = f"{self.prefix}_{_metric_name(name)}"
            lines += [f"# TYPE {metric} counter", f"{metric} {value}"]

        for name, samples in sorted(self.histograms.items()):
            if not samples:
                continue
            vals = sorted(samples)
            metric = f"{self.prefix}_{_metric_name(name)}_seconds"
            lines.append(f"# TYPE {metric} summary")
            lines += [f'{metric}{{quantile="{q}"}} {_quantile(vals, q):.6f}' for q in QUANTILES]
            lines += [f"{metric}_count {len(vals)}", f"{metric}_sum {sum(vals):.6f}"]

        return "\n".join(lines) + "\n"
