# campustix/infra/timings.py
from __future__ import annotations
import logging
import statistics
import time
from collections import deque
from typing import Deque, Dict

logger = logging.getLogger(__name__)

# most recent samples per kind; no locks, single-threaded event loop
MAX_SAMPLES = 1000
_TIMINGS: Dict[str, Deque[float]] = {}
_COUNTS: Dict[str, int] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    lst = _TIMINGS.get(kind)
    if lst is None:
        lst = deque(maxlen=MAX_SAMPLES)
        _TIMINGS[kind] = lst
    lst.append(float(value))
    _COUNTS[kind] = _COUNTS.get(kind, 0) + 1


class timeit:
    """async usage:
        async with timeit("gateway.verify_transaction"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        kind = self._kind if exc_type is None else f"{self._kind}.error"
        record_timing(kind, now_ts() - self._t0)


def _mean_std(values: Deque[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


def snapshot() -> Dict[str, Dict[str, float]]:
    """
    {kind: {"n", "window", "mean_ms", "std_ms"}} for every recorded kind.

    `n` counts every sample since the last reset; mean and std cover only
    the last `window` of them.
    """
    out = {}
    for kind, vals in sorted(_TIMINGS.items()):
        mean, std = _mean_std(vals)
        out[kind] = {
            "n": _COUNTS.get(kind, len(vals)),
            "window": len(vals),
            "mean_ms": round(mean * 1000, 3),
            "std_ms": round(std * 1000, 3),
        }
    return out


def log_and_reset() -> None:
    for kind, rec in snapshot().items():
        logger.info(
            "timing %s n=%d mean=%.3fms std=%.3fms",
            kind, rec["n"], rec["mean_ms"], rec["std_ms"],
        )
    _TIMINGS.clear()
    _COUNTS.clear()
