"""
Event-aware adaptive step-size control for the PK/effect-site system.

The controller picks step sizes (event proximity, rapid Ce change, clinical
thresholds), estimates local error by step doubling and decides acceptance.
The solver drives the controller across a horizon and resamples the accepted
trajectory onto a fixed reporting grid.
"""

import bisect
import logging
import math
from dataclasses import dataclass, fields, replace
from typing import Callable, List, Optional, Sequence

import numpy as np

from .constants import (
    CE_FLOOR_FOR_RELATIVE_RATE,
    ERROR_EPSILON,
    EVENT_TIME_EPSILON,
    RAPID_CHANGE_THRESHOLD,
    RK4_DOUBLING_FACTOR,
    RK4_ORDER,
)
from .effect_site import hybrid_step
from .enums import EventType
from .errors import NumericalError, ValidationError
from .integrators import rk4_step
from .state import AdaptiveSettings, AdaptiveStepStats, CompartmentState
from .utils import clamp

logger = logging.getLogger(__name__)

# Fields compared by the step-doubling error estimate.
ERROR_FIELDS = ("a1", "a2", "a3", "ce")


@dataclass(frozen=True, slots=True)
class AdaptiveState:
    """Full integration state carried by the adaptive solver."""
    a1: float = 0.0  # mg
    a2: float = 0.0  # mg
    a3: float = 0.0  # mg
    ce: float = 0.0  # ug/mL
    rate_mg_min: float = 0.0  # Active infusion rate

    @property
    def compartments(self) -> CompartmentState:
        return CompartmentState(self.a1, self.a2, self.a3)


@dataclass(frozen=True)
class AdaptiveEvent:
    """Scheduled discontinuity. value is mg for a bolus, mg/min for a rate change."""
    time: float
    event_type: EventType
    value: float


@dataclass(frozen=True)
class StepDecision:
    accepted: bool
    error: float
    next_step: float


@dataclass
class AdaptiveResult:
    """Resampled trajectory plus controller statistics."""
    times: np.ndarray
    states: List[AdaptiveState]
    stats: AdaptiveStepStats
    step_times: np.ndarray  # Accepted step end times (unresampled)

    def field(self, name: str) -> np.ndarray:
        return np.array([getattr(s, name) for s in self.states], dtype=float)


def apply_event(state: AdaptiveState, event: AdaptiveEvent) -> AdaptiveState:
    if event.event_type is EventType.BOLUS:
        return replace(state, a1=state.a1 + event.value)
    return replace(state, rate_mg_min=event.value)


def make_pk_update(pk) -> Callable[[AdaptiveState, float], AdaptiveState]:
    """
    Standard update: RK4 on the compartments, exact effect-site update for
    Cp varying linearly across the step.
    """
    def _update(state: AdaptiveState, dt: float) -> AdaptiveState:
        start = state.compartments
        end = rk4_step(start, state.rate_mg_min, dt, pk)
        ce = hybrid_step(state.ce, start.plasma_concentration(pk), end.plasma_concentration(pk), pk.ke0, dt)
        return AdaptiveState(end.a1, end.a2, end.a3, ce, state.rate_mg_min)

    return _update


class AdaptiveStepController:
    """
    Step-size policy and step-doubling error control.

    Statistics are updated only through evaluate_step(), register_event() and
    interpolate_state(), so accepted + rejected == total at all times.
    """
    def __init__(self, settings: Optional[AdaptiveSettings] = None):
        self.settings = (settings or AdaptiveSettings()).validate()
        self.stats = AdaptiveStepStats()
        self._consecutive_rejections = 0

    def reset(self):
        self.stats.reset()
        self._consecutive_rejections = 0

    # -------------------------------------------------------------------------
    # Step proposal
    # -------------------------------------------------------------------------

    def clinical_multiplier(self, ce: float) -> float:
        """Shrink factor near the sedation/awakening thresholds."""
        c = self.settings.clinical
        if abs(ce - c.sedation) < c.critical_range or abs(ce - c.awakening) < c.critical_range:
            return c.critical_multiplier
        if ce < c.awakening * c.near_awakening_factor:
            return c.near_awakening_multiplier
        return 1.0

    def event_step(self, t: float, next_event: Optional[AdaptiveEvent]) -> Optional[float]:
        """Type-specific precision step when an event is imminent, else None."""
        if next_event is None:
            return None
        s = self.settings
        distance = next_event.time - t
        if next_event.event_type is EventType.BOLUS:
            window, step = s.bolus_window, s.bolus_step
        else:
            window, step = s.rate_change_window, s.rate_change_step
        if distance <= window:
            return step
        return None

    def propose_step(self, t: float, ce: float, cp: float, ke0: float,
                     next_event: Optional[AdaptiveEvent], horizon: float,
                     nominal: Optional[float] = None) -> float:
        """
        Next step size from the active constraints.

        Args:
            t: Current time (min).
            ce: Effect-site concentration (ug/mL).
            cp: Plasma concentration (ug/mL).
            ke0: Equilibration constant (1/min).
            next_event: First event strictly after t, if any.
            horizon: End of the simulation (min).
            nominal: Step suggested by the error controller; default_step if None.
        """
        s = self.settings
        base = s.default_step if nominal is None else nominal
        candidates = [base]

        precise = self.event_step(t, next_event)
        if precise is not None:
            candidates.append(precise)

        relative_rate = abs(ke0 * (cp - ce)) / max(ce, CE_FLOOR_FOR_RELATIVE_RATE)
        if relative_rate > RAPID_CHANGE_THRESHOLD:
            candidates.append(s.rate_of_change_tolerance / relative_rate)

        if s.clinical_weighting:
            candidates.append(base * self.clinical_multiplier(ce))

        step = clamp(min(candidates), s.min_step, s.max_step)
        return self.clip_step(step, t, next_event, horizon)

    @staticmethod
    def clip_step(step: float, t: float, next_event: Optional[AdaptiveEvent], horizon: float) -> float:
        """Never step past the next event or the horizon."""
        limit = horizon - t
        if next_event is not None:
            limit = min(limit, next_event.time - t)
        return min(step, limit)

    # -------------------------------------------------------------------------
    # Error control
    # -------------------------------------------------------------------------

    def estimate_error(self, full: AdaptiveState, half: AdaptiveState) -> float:
        """
        Step-doubling error: one full step vs. two half steps.

        Scaled per field by |v1| + |v2| + absolute_tolerance and divided by
        2^4 - 1 for RK4.
        """
        abs_tol = self.settings.absolute_tolerance
        worst = 0.0
        for name in ERROR_FIELDS:
            v1 = getattr(full, name)
            v2 = getattr(half, name)
            scaled = abs(v1 - v2) / (abs(v1) + abs(v2) + abs_tol)
            if not math.isfinite(scaled):
                return math.inf
            worst = max(worst, scaled)
        return worst / RK4_DOUBLING_FACTOR

    def next_step_size(self, step: float, error: float) -> float:
        s = self.settings
        if not math.isfinite(error):
            return s.min_step
        new_step = s.safety_factor * step * (s.tolerance / (error + ERROR_EPSILON)) ** (1.0 / (RK4_ORDER + 1))
        return clamp(new_step, s.min_step, s.max_step)

    def evaluate_step(self, error: float, step: float) -> StepDecision:
        """
        Accept iff error <= tolerance. Raises NumericalError after
        max_rejections consecutive rejections.
        """
        accepted = math.isfinite(error) and error <= self.settings.tolerance
        self.stats.total_steps += 1
        if accepted:
            self.stats.accepted_steps += 1
            self._consecutive_rejections = 0
        else:
            self.stats.rejected_steps += 1
            self._consecutive_rejections += 1
            if self._consecutive_rejections >= self.settings.max_rejections:
                raise NumericalError(
                    f"Step rejected {self._consecutive_rejections} times in a row "
                    f"(error={error:.3g}, step={step:.3g})",
                    method="Adaptive RK4",
                )
        return StepDecision(accepted, error, self.next_step_size(step, error))

    # -------------------------------------------------------------------------
    # Events and interpolation
    # -------------------------------------------------------------------------

    def register_event(self):
        self.stats.event_count += 1

    def interpolate_state(self, t1: float, s1: AdaptiveState, t2: float, s2: AdaptiveState,
                          t: float) -> AdaptiveState:
        """Linear interpolation of every numeric field."""
        self.stats.interpolation_count += 1
        if t2 == t1:
            return s2
        alpha = (t - t1) / (t2 - t1)
        values = {}
        for f in fields(s1):
            a = getattr(s1, f.name)
            b = getattr(s2, f.name)
            values[f.name] = a + (b - a) * alpha
        return AdaptiveState(**values)


class AdaptiveStepSolver:
    """
    Drives an AdaptiveStepController across a horizon.
    """
    def __init__(self, pk, settings: Optional[AdaptiveSettings] = None):
        self.pk = pk
        self.controller = AdaptiveStepController(settings)

    @property
    def stats(self) -> AdaptiveStepStats:
        return self.controller.stats

    def solve(self, initial_state: AdaptiveState, events: Sequence[AdaptiveEvent], duration: float,
              update_fn: Optional[Callable[[AdaptiveState, float], AdaptiveState]] = None,
              output_interval: float = 1.0) -> AdaptiveResult:
        """
        Integrate from t=0 to duration and resample every output_interval,
        ending on duration itself.

        Events at t=0 are applied as initial conditions. Raises NumericalError
        when the controller aborts.
        """
        if duration <= 0 or output_interval <= 0:
            raise ValidationError("duration and output_interval must be positive")
        update = update_fn or make_pk_update(self.pk)
        controller = self.controller
        controller.reset()

        schedule = sorted(events, key=lambda e: e.time)
        if schedule and (schedule[0].time < -EVENT_TIME_EPSILON or schedule[-1].time > duration + EVENT_TIME_EPSILON):
            raise ValidationError("Events must lie within [0, duration]")

        t = 0.0
        state = initial_state
        idx = 0
        while idx < len(schedule) and abs(schedule[idx].time - t) < EVENT_TIME_EPSILON:
            state = apply_event(state, schedule[idx])
            controller.register_event()
            idx += 1

        # (time, state before events, state after events)
        step_times = [t]
        before = [state]
        after = [state]
        nominal = controller.settings.default_step

        while t < duration - EVENT_TIME_EPSILON:
            next_event = schedule[idx] if idx < len(schedule) else None
            cp = state.a1 / self.pk.v1
            step = controller.propose_step(t, state.ce, cp, self.pk.ke0, next_event, duration, nominal)

            while True:
                full = update(state, step)
                half = update(update(state, 0.5 * step), 0.5 * step)
                decision = controller.evaluate_step(controller.estimate_error(full, half), step)
                if decision.accepted:
                    break
                step = controller.clip_step(decision.next_step, t, next_event, duration)

            t_new = t + step
            if next_event is not None and abs(t_new - next_event.time) < 1e-9:
                t_new = next_event.time
            elif abs(t_new - duration) < 1e-9:
                t_new = duration
            state = half
            pre_event = state

            while idx < len(schedule) and abs(schedule[idx].time - t_new) < EVENT_TIME_EPSILON:
                state = apply_event(state, schedule[idx])
                controller.register_event()
                idx += 1

            step_times.append(t_new)
            before.append(pre_event)
            after.append(state)
            t = t_new
            nominal = decision.next_step

        out_times, out_states = self._resample(step_times, before, after, duration, output_interval)
        logger.debug(
            "Adaptive run: %d steps (%d rejected), %d events, %d interpolations",
            controller.stats.total_steps, controller.stats.rejected_steps,
            controller.stats.event_count, controller.stats.interpolation_count,
        )
        return AdaptiveResult(
            times=np.array(out_times),
            states=out_states,
            stats=controller.stats.copy(),
            step_times=np.array(step_times),
        )

    def _resample(self, step_times, before, after, duration, output_interval):
        n = int(math.floor(duration / output_interval + 1e-9))
        out_times = [k * output_interval for k in range(n + 1)]
        if duration - out_times[-1] > 1e-9:
            out_times.append(duration)
        out_states = []
        for target in out_times:
            j = bisect.bisect_left(step_times, target - 1e-12)
            if j < len(step_times) and abs(step_times[j] - target) <= 1e-12:
                out_states.append(after[j])
            elif j >= len(step_times):
                out_states.append(after[-1])
            else:
                out_states.append(self.controller.interpolate_state(
                    step_times[j - 1], after[j - 1], step_times[j], before[j], target
                ))
        return out_times, out_states
