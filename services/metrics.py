from __future__ import annotations

from threading import Lock
from typing import Tuple


LabelKey = Tuple[Tuple[str, str], ...]


class MetricsRegistry:
    """
    Process-local counters rendered as Prometheus text.
    One instance per app (app.state.metrics); workers and scripts make their own.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, dict[LabelKey, int]] = {}

    def inc(self, name: str, labels: dict[str, str] | None = None, value: int = 1) -> None:
        key = tuple(sorted((labels or {}).items()))
        with self._lock:
            series = self._counters.setdefault(name, {})
            series[key] = int(series.get(key, 0)) + int(value)

    def get(self, name: str, labels: dict[str, str] | None = None) -> int:
        key = tuple(sorted((labels or {}).items()))
        with self._lock:
            return int(self._counters.get(name, {}).get(key, 0))

    def increment_http_requests(self, route: str, status: int) -> None:
        self.inc("http_requests_total", {"route": route, "status": str(status)})

    def increment_settlement_attempt(self, kind: str, result: str) -> None:
        self.inc("settlement_attempts_total", {"kind": kind, "result": result})

    def increment_stale_reset(self, kind: str) -> None:
        self.inc("settlement_stale_resets_total", {"kind": kind})

    def increment_sweep_run(self, outcome: str) -> None:
        self.inc("settlement_sweeps_total", {"outcome": outcome})

    def increment_manual_retry(self, kind: str, result: str) -> None:
        self.inc("settlement_manual_retries_total", {"kind": kind, "result": result})

    def render_prometheus(self) -> str:
        lines: list[str] = []
        with self._lock:
            for name, series in sorted(self._counters.items()):
                lines.append(f"# TYPE {name} counter")
                for labels, value in sorted(series.items()):
                    if labels:
                        label_str = ",".join(f'{k}="{v}"' for k, v in labels)
                        lines.append(f"{name}{{{label_str}}} {value}")
                    else:
                        lines.append(f"{name} {value}")
        return "\n".join(lines) + ("\n" if lines else "")
