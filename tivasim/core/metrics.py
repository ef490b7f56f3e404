from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .constants import (
    ACCURACY_BAND,
    CONVERGENCE_SEARCH_START,
    FAST_CONVERGENCE_TIME,
    MAINTENANCE_START,
    OVERSHOOT_ALLOWANCE,
    OVERSHOOT_PENALTY,
    SCORE_WEIGHT_ACCURACY,
    SCORE_WEIGHT_CONVERGENCE,
    SCORE_WEIGHT_STABILITY,
    TIME_IN_TARGET_BAND,
)


def compute_performance_error(measured: np.ndarray, target: float) -> np.ndarray:
    """
    Compute Performance Error (PE) = (Measured - Target) / Target * 100.
    """
    measured = np.asarray(measured, dtype=float)
    if target == 0:
        return np.zeros_like(measured)
    return (measured - target) / target * 100.0


def compute_mdpe(pe: np.ndarray) -> float:
    return float(np.median(pe))


def compute_mdape(pe: np.ndarray) -> float:
    return float(np.median(np.abs(pe)))


def compute_wobble(pe: np.ndarray, mdpe: float = None) -> float:
    if mdpe is None:
        mdpe = np.median(pe)
    return float(np.median(np.abs(pe - mdpe)))


@dataclass(frozen=True)
class PerformanceMetrics:
    """Maintenance-window quality of a dosing protocol (percentages 0-100)."""
    final_ce: float = 0.0
    max_ce: float = 0.0
    target_accuracy: float = 0.0  # % of samples within +-10%
    time_in_target: float = 0.0  # % within +-5%
    stability_index: float = 0.0
    convergence_time: Optional[float] = None  # min, None if never within +-5%
    overshoot_percent: float = 0.0
    overall_score: float = 0.0
    avg_deviation: float = 0.0  # ug/mL
    total_adjustments: int = 0
    mdpe: float = 0.0
    mdape: float = 0.0
    wobble: float = 0.0


def compute_protocol_performance(time: Sequence[float], ce: Sequence[float], target: float,
                                 total_adjustments: int = 0,
                                 maintenance_start: float = MAINTENANCE_START) -> PerformanceMetrics:
    """
    Score a Ce trajectory against a constant target.

    Score = 0.4 accuracy + 0.3 stability + 0.3 convergence - overshoot penalty,
    clamped to [0, 100].

    Args:
        time: Sample times (min).
        ce: Effect-site concentrations (ug/mL).
        target: Target Ce (ug/mL).
        total_adjustments: Number of rate changes made.
        maintenance_start: Start of the evaluation window (min).
    """
    t_arr = np.asarray(time, dtype=float)
    ce_arr = np.asarray(ce, dtype=float)
    mask = t_arr >= maintenance_start
    if t_arr.size == 0 or not np.any(mask) or target <= 0:
        return PerformanceMetrics(total_adjustments=total_adjustments)

    window = ce_arr[mask]
    deviation = np.abs(window - target)

    target_accuracy = float(np.mean(deviation <= target * ACCURACY_BAND) * 100.0)
    time_in_target = float(np.mean(deviation <= target * TIME_IN_TARGET_BAND) * 100.0)
    avg_deviation = float(np.mean(deviation))
    stability = max(0.0, 100.0 - avg_deviation * 1000.0)

    convergence_time = None
    converged = (np.abs(ce_arr - target) <= target * TIME_IN_TARGET_BAND) & (t_arr > CONVERGENCE_SEARCH_START)
    if np.any(converged):
        convergence_time = float(t_arr[np.argmax(converged)])

    max_ce = float(np.max(ce_arr))
    overshoot = (max_ce - target) / target * 100.0 if max_ce > target else 0.0

    if convergence_time is None:
        convergence_score = 0.0
    elif convergence_time < FAST_CONVERGENCE_TIME:
        convergence_score = 100.0
    else:
        convergence_score = max(0.0, 100.0 - (convergence_time - FAST_CONVERGENCE_TIME) * 2.0)

    penalty = max(0.0, overshoot - OVERSHOOT_ALLOWANCE) * OVERSHOOT_PENALTY
    score = (
        min(100.0, target_accuracy) * SCORE_WEIGHT_ACCURACY
        + stability * SCORE_WEIGHT_STABILITY
        + convergence_score * SCORE_WEIGHT_CONVERGENCE
        - penalty
    )

    pe = compute_performance_error(window, target)
    mdpe = compute_mdpe(pe)

    return PerformanceMetrics(
        final_ce=float(ce_arr[-1]),
        max_ce=max_ce,
        target_accuracy=target_accuracy,
        time_in_target=time_in_target,
        stability_index=stability,
        convergence_time=convergence_time,
        overshoot_percent=overshoot,
        overall_score=min(100.0, max(0.0, score)),
        avg_deviation=avg_deviation,
        total_adjustments=total_adjustments,
        mdpe=mdpe,
        mdape=compute_mdape(pe),
        wobble=compute_wobble(pe, mdpe),
    )
