"""
Shared utility functions for TivaSim.
"""

import math
from contextlib import contextmanager

from .errors import SessionBusyError


def clamp(value: float, low: float, high: float) -> float:
    """
    Clamp value to the inclusive range [low, high].
    """
    if low > high:
        low, high = high, low
    return max(low, min(high, value))


def is_finite_number(value) -> bool:
    """True for real numbers that are neither NaN nor infinite."""
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


@contextmanager
def exclusive(lock, owner: str = "Session"):
    """Hold `lock` for the block or raise SessionBusyError if already held."""
    if not lock.acquire(blocking=False):
        raise SessionBusyError(f"{owner} is busy")
    try:
        yield
    finally:
        lock.release()
