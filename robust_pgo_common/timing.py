"""Per-stage timing statistics for the robust solver pipeline."""
from __future__ import annotations

import json
import statistics
import time
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional

STAGES = ("ingest", "consistency", "max_clique", "gnc", "optimize")


def _percentile(values: List[float], pct: float) -> Optional[float]:
    if not values:
        return None
    if pct <= 0:
        return values[0]
    if pct >= 100:
        return values[-1]
    rank = (pct / 100.0) * (len(values) - 1)
    lower = int(rank)
    upper = min(lower + 1, len(values) - 1)
    weight = rank - lower
    return values[lower] * (1 - weight) + values[upper] * weight


def _stats(values: Iterable[float]) -> Dict[str, Optional[float]]:
    vals = sorted(values)
    if not vals:
        return {"count": 0}
    out: Dict[str, Optional[float]] = {
        "count": len(vals),
        "min": vals[0],
        "max": vals[-1],
        "mean": statistics.mean(vals),
        "median": statistics.median(vals),
        "p90": _percentile(vals, 90.0),
        "p95": _percentile(vals, 95.0),
        "p99": _percentile(vals, 99.0),
    }
    if len(vals) > 1:
        out["stdev"] = statistics.pstdev(vals)
    return out


class StageTimer:
    """Collect wall-clock durations per named pipeline stage.

    Durations are only recorded for stages that complete; a stage that
    raises is not counted.
    """

    def __init__(self, stages: Iterable[str] = STAGES):
        self._samples: Dict[str, List[float]] = {name: [] for name in stages}

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        start = time.perf_counter()
        yield
        self.record(name, time.perf_counter() - start)

    def record(self, name: str, duration_s: float) -> None:
        self._samples.setdefault(name, []).append(float(duration_s))

    def last(self, name: str) -> Optional[float]:
        samples = self._samples.get(name)
        return samples[-1] if samples else None

    def summary(self) -> Dict[str, Dict[str, Optional[float]]]:
        return {name: _stats(samples) for name, samples in self._samples.items()}

    def export_json(self, path: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"stages": self.summary()}, f, indent=2, sort_keys=True)
            f.write("\n")

    def log_summary(self, logger) -> None:
        summary = self.summary()
        logger.info(
            "Stage timing (mean s) | ingest=%.4f | consistency=%.4f | max_clique=%.4f | gnc=%.4f | optimize=%.4f",
            *[summary.get(name, {}).get("mean") or 0.0 for name in STAGES],
        )
