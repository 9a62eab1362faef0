from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Dict


@contextmanager
def timed_step(timings: Dict[str, float], key: str):
    start = time.perf_counter()
    try:
        yield
    finally:
        timings[key] = time.perf_counter() - start


def format_duration(seconds: float) -> str:
    """Formatea segundos como ``1h 02m 03s`` / ``2m 05s`` / ``0.35s``."""

    if seconds < 60:
        return f"{seconds:.2f}s"
    minutes, secs = divmod(int(round(seconds)), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    return f"{minutes}m {secs:02d}s"
