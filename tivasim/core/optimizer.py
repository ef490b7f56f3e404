"""
Bolus + continuous infusion protocol optimizer.

1. Rate search: binary search for the constant rate whose simulated Ce at the
   target time matches the target. Bounds and tolerance depend on the target
   concentration category.
2. Schedule: forward simulation at the optimized rate with a step-down
   controller (reactive threshold reductions, optional look-ahead).
3. Performance: maintenance-window scoring of the resulting trajectory.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .constants import BOLUS_BASE, BOLUS_CAP, BOLUS_SCALE
from .enums import AdjustmentReason, ConcentrationCategory
from .errors import SafetyThresholdError, ValidationError
from .integrators import effect_site_rk4_step, rk4_step
from .metrics import PerformanceMetrics, compute_protocol_performance
from .state import (
    CompartmentState,
    DosageAdjustment,
    ProtocolSettings,
    SafetyLimits,
    TimeSeriesPoint,
)
from .units import mg_kg_hr_to_mg_min
from .utils import is_finite_number

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CategoryProfile:
    """Search behaviour for one target-concentration band."""
    max_target: float  # ug/mL, inclusive upper edge of the band
    bolus_factor: float
    min_rate: float  # mg/kg/hr
    max_rate: float  # mg/kg/hr
    tolerance: float  # ug/mL


CATEGORY_PROFILES: Dict[ConcentrationCategory, CategoryProfile] = {
    ConcentrationCategory.ULTRA_LOW: CategoryProfile(0.5, 0.3, 0.05, 3.0, 0.005),
    ConcentrationCategory.LOW: CategoryProfile(1.5, 0.6, 0.1, 8.0, 0.01),
    ConcentrationCategory.MEDIUM: CategoryProfile(3.0, 0.8, 0.2, 12.0, 0.015),
    ConcentrationCategory.HIGH: CategoryProfile(math.inf, 1.0, 0.5, 15.0, 0.02),
}

# Dynamic bounds relative to the steady-state rate.
SS_LOWER_FACTOR = 0.1
SS_UPPER_FACTOR = 5.0
ABSOLUTE_MIN_RATE = 0.01  # mg/kg/hr
ABSOLUTE_MAX_RATE = 20.0  # mg/kg/hr


def concentration_category(target_ce: float) -> ConcentrationCategory:
    for category, profile in CATEGORY_PROFILES.items():
        if target_ce <= profile.max_target:
            return category
    return ConcentrationCategory.HIGH


@dataclass(frozen=True)
class RateSearchResult:
    rate: float  # mg/kg/hr
    bolus: float  # mg
    predicted_ce: float  # ug/mL at the target time
    converged: bool
    iterations: int = 0
    category: Optional[ConcentrationCategory] = None
    bounds: Tuple[float, float] = (0.0, 0.0)


@dataclass
class ProtocolResult:
    optimized_rate: float
    bolus_mg: float
    target_ce: float
    time_series: List[TimeSeriesPoint]
    adjustments: List[DosageAdjustment]
    performance: PerformanceMetrics
    rate_search: RateSearchResult
    evaluation_points: Dict[float, float] = field(default_factory=dict)  # time -> Ce
    calculation_method: str = "RK4"


class ProtocolOptimizer:
    """
    Rate search and step-down schedule generation for one patient.
    """
    def __init__(self, pk, patient, settings: Optional[ProtocolSettings] = None,
                 safety: Optional[SafetyLimits] = None):
        if pk is None:
            raise ValidationError("PK parameters must be set before optimization")
        if patient is None:
            raise ValidationError("Patient must be set before optimization")
        self.pk = pk
        self.patient = patient
        self.settings = (settings or ProtocolSettings()).validate()
        self.safety = safety or SafetyLimits()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _advance(self, state: CompartmentState, ce: float, rate_mg_min: float,
                 dt: float) -> Tuple[CompartmentState, float]:
        """One fixed RK4 step; Ce follows the plasma level at the end of the step."""
        state = rk4_step(state, rate_mg_min, dt, self.pk)
        ce = effect_site_rk4_step(ce, max(0.0, state.plasma_concentration(self.pk)), self.pk.ke0, dt)
        return state, ce

    def steady_state_rate(self, target_ce: float) -> float:
        """Rate (mg/kg/hr) that holds Cp at target_ce once equilibrated."""
        return target_ce * self.pk.cl * 60.0 / self.patient.weight

    def rate_bounds(self, target_ce: float) -> Tuple[float, float]:
        profile = CATEGORY_PROFILES[concentration_category(target_ce)]
        ss = self.steady_state_rate(target_ce)
        lower = max(profile.min_rate, max(ss * SS_LOWER_FACTOR, ABSOLUTE_MIN_RATE))
        upper = min(profile.max_rate, ss * SS_UPPER_FACTOR, ABSOLUTE_MAX_RATE)
        if upper <= lower:
            # Very small steady-state rates collapse the interval; keep the static band.
            lower, upper = profile.min_rate, profile.max_rate
        return lower, upper

    def recommended_bolus(self, target_ce: float) -> float:
        profile = CATEGORY_PROFILES[concentration_category(target_ce)]
        return min(BOLUS_CAP, BOLUS_BASE + BOLUS_SCALE * profile.bolus_factor)

    def simulate_ce_at(self, bolus_mg: float, rate: float, target_time: float) -> float:
        """Ce (ug/mL) at target_time after a t=0 bolus and a constant rate (mg/kg/hr)."""
        dt = self.settings.time_step
        steps = int(math.floor(target_time / dt + 1e-9))
        rate_mg_min = mg_kg_hr_to_mg_min(rate, self.patient.weight)
        state = CompartmentState(a1=bolus_mg)
        ce = 0.0
        for _ in range(steps):
            state, ce = self._advance(state, ce, rate_mg_min, dt)
        return ce

    # -------------------------------------------------------------------------
    # Rate search
    # -------------------------------------------------------------------------

    def optimize_rate(self, bolus_mg: float, target_ce: float,
                      target_time: Optional[float] = None) -> RateSearchResult:
        """
        Binary search for the constant rate hitting target_ce at target_time.

        Always returns the best rate seen; converged is False when the
        iteration limit was reached first.
        """
        if not is_finite_number(target_ce) or target_ce < 0:
            raise ValidationError(f"Target Ce must be a non-negative number, got {target_ce!r}")
        if not is_finite_number(bolus_mg) or bolus_mg < 0:
            raise ValidationError(f"Bolus must be a non-negative number, got {bolus_mg!r}")
        if target_ce == 0:
            return RateSearchResult(rate=0.0, bolus=0.0, predicted_ce=0.0, converged=True)

        target_time = self.settings.target_reach_time if target_time is None else target_time
        if target_time <= 0:
            raise ValidationError(f"Target time must be positive, got {target_time}")

        category = concentration_category(target_ce)
        tolerance = CATEGORY_PROFILES[category].tolerance
        lo, hi = self.rate_bounds(target_ce)
        bounds = (lo, hi)

        best_rate = lo
        best_error = math.inf
        converged = False
        iterations = 0
        for iterations in range(1, self.settings.max_iterations + 1):
            mid = (lo + hi) / 2.0
            ce = self.simulate_ce_at(bolus_mg, mid, target_time)
            error = abs(ce - target_ce)
            if error < best_error:
                best_rate, best_error = mid, error
            logger.debug("Rate search %d: rate=%.4f Ce=%.4f err=%.5f", iterations, mid, ce, error)
            if error < tolerance:
                converged = True
                break
            if ce < target_ce:
                lo = mid
            else:
                hi = mid

        predicted = self.simulate_ce_at(bolus_mg, best_rate, target_time)
        if not converged:
            logger.warning(
                "Rate search did not converge after %d iterations (best rate %.3f, error %.4f)",
                iterations, best_rate, best_error,
            )
        return RateSearchResult(
            rate=best_rate,
            bolus=bolus_mg,
            predicted_ce=predicted,
            converged=converged,
            iterations=iterations,
            category=category,
            bounds=bounds,
        )

    # -------------------------------------------------------------------------
    # Schedule generation
    # -------------------------------------------------------------------------

    def predict_ce(self, state: CompartmentState, ce: float, rate: float) -> float:
        """Highest Ce over the look-ahead horizon at a constant rate."""
        s = self.settings
        rate_mg_min = mg_kg_hr_to_mg_min(rate, self.patient.weight)
        peak = ce
        for _ in range(int(math.floor(s.prediction_time / s.time_step + 1e-9))):
            state, ce = self._advance(state, ce, rate_mg_min, s.time_step)
            peak = max(peak, ce)
        return peak

    def generate_schedule(self, bolus_mg: float, initial_rate: float,
                          target_ce: Optional[float] = None
                          ) -> Tuple[List[TimeSeriesPoint], List[DosageAdjustment]]:
        """
        Simulate the step-down protocol from t=0.

        Every reduction multiplies the rate by reduction_factor, floored at
        minimum_rate, and is recorded as a DosageAdjustment.
        """
        s = self.settings
        target_ce = s.target_ce if target_ce is None else target_ce
        upper = s.upper_threshold(target_ce)
        dt = s.time_step
        n_steps = int(math.floor(s.simulation_duration / dt + 1e-9)) + 1
        steps_per_interval = max(1, int(round(s.adjustment_interval / dt)))

        state = CompartmentState(a1=bolus_mg)
        ce = 0.0
        rate = initial_rate
        last_adjustment = -s.adjustment_interval
        points: List[TimeSeriesPoint] = []
        adjustments: List[DosageAdjustment] = []

        def reduce(t, reason):
            nonlocal rate, last_adjustment
            new_rate = max(s.minimum_rate, rate * s.reduction_factor)
            adjustments.append(DosageAdjustment(t, rate, new_rate, ce, reason))
            logger.debug("%.2f min: %s Ce=%.3f rate %.3f -> %.3f", t, reason.value, ce, rate, new_rate)
            rate = new_rate
            last_adjustment = t

        for i in range(n_steps):
            t = i * dt
            cp = max(0.0, state.plasma_concentration(self.pk))
            if i > 0:
                ce = effect_site_rk4_step(ce, cp, self.pk.ke0, dt)

            elapsed = t - last_adjustment + 1e-9
            if rate > s.minimum_rate and upper > 0:
                if (s.predictive and i > 0 and i % steps_per_interval == 0
                        and elapsed >= s.adjustment_interval and ce < upper
                        and self.predict_ce(state, ce, rate) >= upper):
                    reduce(t, AdjustmentReason.PREDICTIVE_ADJUSTMENT)
                elif ce >= upper:
                    if elapsed >= s.adjustment_interval:
                        reduce(t, AdjustmentReason.THRESHOLD_REDUCTION)
                    elif s.predictive and elapsed >= s.emergency_interval:
                        reduce(t, AdjustmentReason.EMERGENCY_REDUCTION)

            points.append(TimeSeriesPoint(t, cp, ce, rate, len(adjustments)))
            if i < n_steps - 1:
                state = rk4_step(state, mg_kg_hr_to_mg_min(rate, self.patient.weight), dt, self.pk)

        return points, adjustments

    # -------------------------------------------------------------------------
    # Full run
    # -------------------------------------------------------------------------

    def evaluate_performance(self, points: List[TimeSeriesPoint], target_ce: Optional[float] = None,
                             total_adjustments: int = 0) -> PerformanceMetrics:
        target_ce = self.settings.target_ce if target_ce is None else target_ce
        return compute_protocol_performance(
            [p.time for p in points],
            [p.effect_conc for p in points],
            target_ce,
            total_adjustments=total_adjustments,
            maintenance_start=self.settings.maintenance_start,
        )

    def concentration_at_time_points(self, points: List[TimeSeriesPoint]) -> Dict[float, float]:
        """Ce at each evaluation time (nearest sample)."""
        result = {}
        if not points:
            return result
        for target_time in self.settings.evaluation_time_points:
            nearest = min(points, key=lambda p: abs(p.time - target_time))
            result[target_time] = nearest.effect_conc
        return result

    def check_safety(self, result: ProtocolResult) -> List[str]:
        violations = []
        if result.bolus_mg > self.safety.max_bolus_total:
            violations.append(
                f"Bolus dose {result.bolus_mg:.2f} mg exceeds limit {self.safety.max_bolus_total} mg"
            )
        max_rate = max([result.optimized_rate] + [a.new_rate for a in result.adjustments])
        if max_rate > self.safety.max_continuous_rate:
            violations.append(
                f"Continuous rate {max_rate:.2f} mg/kg/hr exceeds limit "
                f"{self.safety.max_continuous_rate} mg/kg/hr"
            )
        max_cp = max((p.plasma_conc for p in result.time_series), default=0.0)
        if max_cp > self.safety.max_plasma_concentration:
            violations.append(
                f"Plasma concentration {max_cp:.2f} ug/mL exceeds limit "
                f"{self.safety.max_plasma_concentration} ug/mL"
            )
        return violations

    def run(self, target_ce: Optional[float] = None, bolus_mg: Optional[float] = None,
            target_time: Optional[float] = None) -> ProtocolResult:
        """
        Optimize the rate, generate the step-down schedule and score it.

        Raises SafetyThresholdError (with the result attached) when the
        protocol breaches a safety limit.
        """
        target_ce = self.settings.target_ce if target_ce is None else target_ce
        if bolus_mg is None:
            bolus_mg = self.recommended_bolus(target_ce) if target_ce > 0 else 0.0

        search = self.optimize_rate(bolus_mg, target_ce, target_time)
        points, adjustments = self.generate_schedule(search.bolus, search.rate, target_ce)
        performance = self.evaluate_performance(points, target_ce, len(adjustments))
        result = ProtocolResult(
            optimized_rate=search.rate,
            bolus_mg=search.bolus,
            target_ce=target_ce,
            time_series=points,
            adjustments=adjustments,
            performance=performance,
            rate_search=search,
            evaluation_points=self.concentration_at_time_points(points),
            calculation_method="RK4 + predictive step-down" if self.settings.predictive else "RK4 + step-down",
        )
        logger.info(
            "Protocol: target %.2f ug/mL, bolus %.1f mg, rate %.3f mg/kg/hr, %d adjustments, score %.1f",
            target_ce, search.bolus, search.rate, len(adjustments), performance.overall_score,
        )

        violations = self.check_safety(result)
        if violations:
            raise SafetyThresholdError(violations, result)
        return result
