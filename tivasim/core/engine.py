import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from .adaptive import AdaptiveState, AdaptiveStepSolver
from .effect_site import EffectSiteSolver, VerificationReport, verify_against_reference
from .enums import EffectSiteMethod, IntegratorMethod
from .errors import NumericalError, SafetyThresholdError, ValidationError
from .integrators import get_integrator
from .state import AdaptiveStepStats, CompartmentState, SimulationConfig, TimeSeriesPoint
from .timeline import DoseEvent, DoseTimeline
from .units import mg_kg_hr_to_mg_min
from .utils import exclusive

logger = logging.getLogger(__name__)

# Ordered fallback chains, resolved once per orchestrator.
FALLBACK_CHAINS: Dict[IntegratorMethod, Tuple[IntegratorMethod, ...]] = {
    IntegratorMethod.ADAPTIVE_RK4: (IntegratorMethod.ADAPTIVE_RK4, IntegratorMethod.RK4),
    IntegratorMethod.RK4: (IntegratorMethod.RK4,),
    IntegratorMethod.EULER: (IntegratorMethod.EULER,),
}


@dataclass
class IntegrationAttempt:
    """Outcome of one method in the fallback chain."""
    method: IntegratorMethod
    plasma: Optional[np.ndarray] = None
    stats: Optional[AdaptiveStepStats] = None
    failure: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.failure is None


@dataclass
class SimulationResult:
    """Down-sampled trajectory and provenance of a monitoring run."""
    points: List[TimeSeriesPoint]
    method: IntegratorMethod
    requested_method: IntegratorMethod
    calculation_method: str
    duration: float
    fallback_applied: bool = False
    fallback_reason: Optional[str] = None
    effect_site_check: Optional[VerificationReport] = None
    adaptive_stats: Optional[AdaptiveStepStats] = None
    infusion_events: List[Tuple[float, float]] = field(default_factory=list)  # (time, mg/kg/hr)

    @property
    def times(self) -> np.ndarray:
        return np.array([p.time for p in self.points])

    @property
    def plasma(self) -> np.ndarray:
        return np.array([p.plasma_conc for p in self.points])

    @property
    def effect(self) -> np.ndarray:
        return np.array([p.effect_conc for p in self.points])

    @property
    def max_plasma(self) -> float:
        return float(self.plasma.max()) if self.points else 0.0

    @property
    def max_effect(self) -> float:
        return float(self.effect.max()) if self.points else 0.0


class SimulationOrchestrator:
    """
    Simulates an arbitrary dose timeline over a full horizon.

    Plasma is integrated on a fixed high-resolution grid (or adaptively and
    resampled onto it), Ce is derived by the effect-site solver, and the
    result is down-sampled to the reporting interval.
    """
    def __init__(self, pk, patient, config: Optional[SimulationConfig] = None):
        if pk is None or patient is None:
            raise ValidationError("PK parameters and patient are required")
        self.pk = pk
        self.patient = patient
        self.config = (config or SimulationConfig()).validate()
        if self.config.method not in FALLBACK_CHAINS:
            raise ValidationError(f"Unknown integrator method: {self.config.method!r}")
        self.method = self.config.method
        self._chain = FALLBACK_CHAINS[self.method]
        self.effect_site = EffectSiteSolver(self.config.effect_site_method, self.config.discrete_substep)
        pk.validate_clinical_ranges()
        logger.debug("PK parameters: %s", pk.summary())

    # -------------------------------------------------------------------------
    # Grid construction
    # -------------------------------------------------------------------------

    def _grid(self, duration: float) -> np.ndarray:
        """Uniform grid from 0; a shorter final interval ends it exactly at duration."""
        n = int(math.floor(duration / self.config.time_step + 1e-9))
        times = np.arange(n + 1) * self.config.time_step
        if duration - times[-1] > 1e-9:
            times = np.append(times, duration)
        return times

    def _index_of(self, t: float, n_points: int) -> int:
        """Nearest grid index, never past the last point."""
        return min(int(round(t / self.config.time_step)), n_points - 1)

    def _rate_schedule(self, timeline: DoseTimeline, n_points: int) -> np.ndarray:
        """Rate (mg/kg/hr) in force at each grid index."""
        rates = np.zeros(n_points)
        for event in timeline:
            rates[self._index_of(event.time_minutes, n_points):] = event.continuous_rate_mg_kg_hr
        return rates

    def _bolus_schedule(self, timeline: DoseTimeline, n_points: int) -> Dict[int, float]:
        boluses: Dict[int, float] = {}
        for event in timeline:
            if event.is_bolus:
                idx = self._index_of(event.time_minutes, n_points)
                boluses[idx] = boluses.get(idx, 0.0) + event.bolus_mg
        return boluses

    # -------------------------------------------------------------------------
    # Plasma integration
    # -------------------------------------------------------------------------

    def _integrate_fixed(self, method: IntegratorMethod, timeline: DoseTimeline,
                         times: np.ndarray, rates: np.ndarray) -> np.ndarray:
        step = get_integrator(method)
        boluses = self._bolus_schedule(timeline, times.shape[0])

        # t=0 bolus is an initial condition, later ones are applied on their grid index.
        state = CompartmentState(a1=boluses.pop(0, 0.0))
        plasma = np.empty(times.shape[0])
        last = times.shape[0] - 1
        for i in range(times.shape[0]):
            if i in boluses:
                state = state.with_bolus(boluses[i])
            plasma[i] = state.plasma_concentration(self.pk)
            if i < last:
                rate_mg_min = mg_kg_hr_to_mg_min(rates[i], self.patient.weight)
                state = step(state, rate_mg_min, times[i + 1] - times[i], self.pk)
        return plasma

    def _integrate_adaptive(self, timeline: DoseTimeline, duration: float) -> Tuple[np.ndarray, AdaptiveStepStats]:
        solver = AdaptiveStepSolver(self.pk, self.config.adaptive)
        result = solver.solve(
            AdaptiveState(),
            timeline.to_adaptive_events(self.patient.weight),
            duration,
            output_interval=self.config.time_step,
        )
        return result.field("a1") / self.pk.v1, result.stats

    def _attempt(self, method: IntegratorMethod, timeline: DoseTimeline, times: np.ndarray,
                 rates: np.ndarray, duration: float) -> IntegrationAttempt:
        stats = None
        try:
            if method is IntegratorMethod.ADAPTIVE_RK4:
                plasma, stats = self._integrate_adaptive(timeline, duration)
            else:
                plasma = self._integrate_fixed(method, timeline, times, rates)
        except NumericalError as exc:
            return IntegrationAttempt(method, failure=str(exc))
        if plasma.shape != times.shape:
            return IntegrationAttempt(method, failure=f"grid mismatch ({plasma.shape[0]} vs {times.shape[0]})")
        if not np.all(np.isfinite(plasma)):
            return IntegrationAttempt(method, failure="non-finite plasma concentration")
        return IntegrationAttempt(method, plasma=plasma, stats=stats)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def default_duration(self, timeline: DoseTimeline) -> float:
        return timeline.last_event_time + self.config.horizon_padding

    def run(self, timeline: DoseTimeline, duration: Optional[float] = None) -> SimulationResult:
        """
        Simulate the timeline and return a down-sampled trajectory.

        Raises:
            ValidationError: empty timeline or horizon shorter than the last event.
            NumericalError: every method in the fallback chain failed.
            SafetyThresholdError: plasma concentration above the hard limit
                (the result is attached to the exception).
        """
        if len(timeline) == 0:
            raise ValidationError("At least one dose event is required")
        duration = self.default_duration(timeline) if duration is None else float(duration)
        if duration <= 0 or duration < timeline.last_event_time:
            raise ValidationError(
                f"Duration {duration} min must cover the last dose event at {timeline.last_event_time} min"
            )

        times = self._grid(duration)
        rates = self._rate_schedule(timeline, times.shape[0])

        failures = []
        attempt = None
        for method in self._chain:
            attempt = self._attempt(method, timeline, times, rates, duration)
            if attempt.succeeded:
                break
            failures.append(f"{method.value}: {attempt.failure}")
            logger.warning(
                "Integration failed, method=%s reason=%s remaining=%d",
                method.value, attempt.failure, len(self._chain) - len(failures),
            )
        if attempt is None or not attempt.succeeded:
            raise NumericalError("All integration methods failed: " + "; ".join(failures), method=self.method.value)

        fallback_applied = attempt.method is not self.method
        if fallback_applied:
            logger.warning("Fell back from %s to %s", self.method.value, attempt.method.value)

        effect = self.effect_site.solve(attempt.plasma, times, self.pk.ke0)
        check = None
        if self.config.verify_effect_site and self.effect_site.method is EffectSiteMethod.HYBRID:
            check = verify_against_reference(
                attempt.plasma, times, self.pk.ke0,
                self.config.effect_site_tolerance, self.config.discrete_substep,
            )

        result = SimulationResult(
            points=self._downsample(times, attempt.plasma, effect, rates),
            method=attempt.method,
            requested_method=self.method,
            calculation_method=f"{attempt.method.value} + {self.effect_site.method.value}",
            duration=duration,
            fallback_applied=fallback_applied,
            fallback_reason="; ".join(failures) or None,
            effect_site_check=check,
            adaptive_stats=attempt.stats,
            infusion_events=self._infusion_events(timeline),
        )
        logger.info(
            "Simulated %.1f min with %s: max Cp %.3f, max Ce %.3f ug/mL",
            duration, result.calculation_method, result.max_plasma, result.max_effect,
        )

        limit = self.config.safety.max_plasma_concentration
        if result.max_plasma > limit:
            raise SafetyThresholdError(
                [f"Plasma concentration {result.max_plasma:.2f} ug/mL exceeds limit {limit} ug/mL"],
                result,
            )
        return result

    def _downsample(self, times, plasma, effect, rates) -> List[TimeSeriesPoint]:
        stride = max(1, int(round(self.config.output_interval / self.config.time_step)))
        indices = list(range(0, times.shape[0], stride))
        if indices[-1] != times.shape[0] - 1:
            indices.append(times.shape[0] - 1)
        return [
            TimeSeriesPoint(
                time=round(float(times[i]), 6),
                plasma_conc=float(plasma[i]),
                effect_conc=float(effect[i]),
                infusion_rate=float(rates[i]),
            )
            for i in indices
        ]

    @staticmethod
    def _infusion_events(timeline: DoseTimeline) -> List[Tuple[float, float]]:
        """Rate changes only, starting from 0 before the first event."""
        events = []
        current = 0.0
        for event in timeline:
            if event.continuous_rate_mg_kg_hr != current:
                events.append((event.time_minutes, event.continuous_rate_mg_kg_hr))
                current = event.continuous_rate_mg_kg_hr
        return events


class SimulationSession:
    """
    Caller-owned session: a dose timeline plus an orchestrator.

    Not re-entrant. A call made while another is outstanding raises
    SessionBusyError.
    """
    def __init__(self, pk, patient, config: Optional[SimulationConfig] = None):
        self.orchestrator = SimulationOrchestrator(pk, patient, config)
        self.timeline = DoseTimeline()
        self.last_result: Optional[SimulationResult] = None
        self._lock = threading.Lock()

    def add_event(self, time_minutes: float, bolus_mg: float = 0.0,
                  continuous_rate_mg_kg_hr: float = 0.0) -> DoseEvent:
        with exclusive(self._lock, "Simulation session"):
            return self.timeline.add(DoseEvent(time_minutes, bolus_mg, continuous_rate_mg_kg_hr))

    def remove_event(self, time_minutes: float) -> DoseEvent:
        with exclusive(self._lock, "Simulation session"):
            return self.timeline.remove(time_minutes)

    def clear(self):
        with exclusive(self._lock, "Simulation session"):
            self.timeline.clear()
            self.last_result = None

    def run(self, duration: Optional[float] = None) -> SimulationResult:
        with exclusive(self._lock, "Simulation session"):
            try:
                self.last_result = self.orchestrator.run(self.timeline, duration)
            except SafetyThresholdError as exc:
                self.last_result = exc.result
                raise
            return self.last_result
