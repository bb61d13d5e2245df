"""
Lightweight helpers for measuring per-stage timings in the pipeline.

Stage timers accumulate elapsed wall-clock time per named stage so the
orchestrator can attach duration fields to each result.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Dict


class StageTimers:
    """
    Accumulate elapsed time per logical stage name.

    Use `timer(name)` as a context manager around stage blocks;
    each exit adds the elapsed seconds to `totals[name]`.
    """

    def __init__(self) -> None:
        self.totals: Dict[str, float] = {}
        self._started = time.perf_counter()

    @contextmanager
    def timer(self, name: str):
        start_time = time.perf_counter()
        try:
            yield
        finally:
            elapsed_time = time.perf_counter() - start_time
            self.totals[name] = self.totals.get(name, 0.0) + elapsed_time

    def as_ms(self) -> Dict[str, float]:
        return {name: round(seconds * 1000.0, 2) for name, seconds in self.totals.items()}

    def elapsed_ms(self) -> float:
        """Wall-clock milliseconds since the timers were created."""
        return round((time.perf_counter() - self._started) * 1000.0, 2)
