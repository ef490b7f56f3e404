"""
Exception taxonomy for the dosing engine.

- ValidationError: malformed or out-of-range input. Raised before any state
  is touched.
- NumericalError: non-convergence or non-finite values. Recovered locally by
  fallback chains where one exists.
- SafetyThresholdError: a computed dose or concentration exceeds a hard
  bound. Always surfaced to the caller.
"""

from typing import Any, List, Optional


class TivaSimError(Exception):
    """Base class for all engine errors."""


class ValidationError(TivaSimError, ValueError):
    """Invalid input (lengths, ranges, missing parameters)."""


class NumericalError(TivaSimError, ArithmeticError):
    """Integrator or solver failure (NaN/Inf, too many rejections)."""

    def __init__(self, message: str, method: Optional[str] = None):
        super().__init__(message)
        self.method = method


class SafetyThresholdError(TivaSimError):
    """A hard physiological or dosing limit was exceeded."""

    def __init__(self, violations: List[str], result: Any = None):
        self.violations = list(violations)
        self.result = result
        super().__init__("Safety threshold exceeded: " + "; ".join(self.violations))


class SessionBusyError(TivaSimError, RuntimeError):
    """A session was re-entered while a call was still outstanding."""
