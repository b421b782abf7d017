from __future__ import annotations

import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional


class Metrics:
    """Process-local counters for RPC and explorer traffic.

    Only ever read back into the deployment record; nothing decides on it.
    """

    def __init__(self, max_samples: int = 500) -> None:
        self._counters: Dict[str, int] = defaultdict(int)
        self._reasons: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._samples: Dict[str, List[float]] = defaultdict(list)
        self._max_samples = int(max_samples)

    def reset(self) -> None:
        self._counters.clear()
        self._reasons.clear()
        self._samples.clear()

    def inc(self, name: str, n: int = 1) -> None:
        if name:
            self._counters[str(name)] += int(n)

    def inc_reason(self, group: str, reason: str, n: int = 1) -> None:
        if group and reason:
            self._reasons[str(group)][str(reason)] += int(n)

    def observe(self, name: str, value: float) -> None:
        try:
            v = float(value)
        except (TypeError, ValueError):
            return
        if not name or v != v:  # NaN
            return
        bucket = self._samples[str(name)]
        bucket.append(v)
        if len(bucket) > self._max_samples:
            del bucket[: len(bucket) - self._max_samples]

    @contextmanager
    def timed(self, name: str) -> Iterator[None]:
        """Observe the wall time of the block in ms, also when it raises."""
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, (time.perf_counter() - t0) * 1000.0)

    def outcome(self, action: str, result: str) -> None:
        """Count one explorer or chain step by how it ended, e.g. ``verifysourcecode:rejected``."""
        self.inc_reason("outcomes", f"{action}:{result}", 1)

    def outcomes(self, action: str) -> Dict[str, int]:
        prefix = f"{action}:"
        return {k[len(prefix) :]: v for k, v in self._reasons.get("outcomes", {}).items() if k.startswith(prefix)}

    def counter(self, name: str) -> int:
        return int(self._counters.get(str(name), 0))

    @staticmethod
    def _percentile(vals: List[float], pct: float) -> Optional[float]:
        if not vals:
            return None
        v = sorted(vals)
        k = max(0, min(len(v) - 1, int(round((pct / 100.0) * (len(v) - 1)))))
        return float(v[k])

    def snapshot(self) -> Dict[str, Any]:
        return {
            "counters": dict(self._counters),
            "reason_counters": {g: dict(c) for g, c in self._reasons.items()},
            "latency_ms": {
                name: {"count": len(vals), "p50": self._percentile(vals, 50.0), "p95": self._percentile(vals, 95.0)}
                for name, vals in self._samples.items()
            },
        }


METRICS = Metrics()
