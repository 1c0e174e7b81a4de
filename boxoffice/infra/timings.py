# boxoffice/infra/timings.py
"""
In-process latency probes.

Hot paths only append a duration to a bounded per-operation buffer; the
aggregation happens when someone reads `/api/timings`.
"""
from __future__ import annotations
import statistics
import time
from collections import deque
from typing import Any, Deque, Dict, Iterable, List

# keep the newest samples per operation
MAX_SAMPLES = 10_000

_SAMPLES: Dict[str, Deque[float]] = {}


def record_timing(op: str, seconds: float) -> None:
    buf = _SAMPLES.get(op)
    if buf is None:
        buf = _SAMPLES[op] = deque(maxlen=MAX_SAMPLES)
    buf.append(float(seconds))


class timeit:
    """
        async with timeit("holds.reserve"):
            ...

    The duration is recorded whether the block succeeds or raises.
    """
    __slots__ = ("op", "started")

    def __init__(self, op: str):
        self.op = op
        self.started = 0.0

    async def __aenter__(self) -> "timeit":
        self.started = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        record_timing(self.op, time.perf_counter() - self.started)


def _pct(ordered: List[float], p: float) -> float:
    k = round(p / 100.0 * (len(ordered) - 1))
    return ordered[max(0, min(len(ordered) - 1, k))]


def _ms(seconds: float) -> float:
    return round(seconds * 1000.0, 3)


def summarize(samples: Iterable[float]) -> Dict[str, Any]:
    """{"n", "mean_ms", "std_ms", "p50_ms", "p99_ms", "max_ms"} of seconds."""
    vals = sorted(samples)
    if not vals:
        return {"n": 0}
    std = statistics.stdev(vals) if len(vals) > 1 else 0.0
    return {
        "n": len(vals),
        "mean_ms": _ms(statistics.fmean(vals)),
        "std_ms": _ms(std),
        "p50_ms": _ms(_pct(vals, 50)),
        "p99_ms": _ms(_pct(vals, 99)),
        "max_ms": _ms(vals[-1]),
    }


def snapshot() -> Dict[str, Dict[str, Any]]:
    return {op: summarize(buf) for op, buf in sorted(_SAMPLES.items()) if buf}


def reset() -> None:
    _SAMPLES.clear()
