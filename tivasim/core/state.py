from dataclasses import dataclass, field, fields, is_dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .constants import (
    DEFAULT_HORIZON_PADDING,
    DEFAULT_OUTPUT_INTERVAL,
    DEFAULT_TIME_STEP,
    DISCRETE_SUBSTEP,
    EFFECT_SITE_TOLERANCE,
    MAINTENANCE_START,
)
from .enums import AdjustmentReason, EffectSiteMethod, IntegratorMethod
from .errors import ValidationError


# =============================================================================
# CONFIGURATION
# =============================================================================

def _coerce(field_type, value):
    """Convert plain JSON values into enum / nested config values."""
    if isinstance(field_type, type):
        if issubclass(field_type, Enum) and not isinstance(value, field_type):
            for member in field_type:
                if value in (member.value, member.name):
                    return member
            raise ValidationError(f"Unknown {field_type.__name__}: {value!r}")
        if is_dataclass(field_type) and isinstance(value, dict):
            return config_from_dict(field_type, value)
    if isinstance(value, list):
        return tuple(value)
    return value


def config_from_dict(cls, data: Optional[Dict[str, Any]]):
    """
    Build a config dataclass from a (JSON) dict.

    Unknown keys raise ValidationError so typos in config files do not pass
    silently.
    """
    data = dict(data or {})
    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ValidationError(f"Unknown {cls.__name__} keys: {', '.join(unknown)}")
    kwargs = {name: _coerce(known[name].type, value) for name, value in data.items()}
    return cls(**kwargs)


@dataclass(frozen=True)
class ClinicalThresholds:
    """Effect-site bands that attract finer integration steps (ug/mL)."""
    sedation: float = 3.0
    awakening: float = 1.5
    critical_range: float = 0.5  # Half-width of the band around each threshold
    critical_multiplier: float = 0.1  # Step multiplier inside a critical band
    near_awakening_factor: float = 1.2  # Ce below awakening * factor
    near_awakening_multiplier: float = 0.5


@dataclass(frozen=True)
class AdaptiveSettings:
    """Step-size policy for the adaptive RK4 controller (times in minutes)."""
    min_step: float = 0.001
    max_step: float = 1.0
    default_step: float = 0.1
    tolerance: float = 1e-3  # Relative local error accepted per step
    rate_of_change_tolerance: float = 0.01
    absolute_tolerance: float = 1e-6
    safety_factor: float = 0.9
    max_rejections: int = 10  # Consecutive rejections before aborting

    # Event precision windows.
    bolus_window: float = 5.0 / 60.0  # 5 s before a bolus
    bolus_step: float = 0.001
    rate_change_window: float = 2.0 / 60.0  # 2 s before a rate change
    rate_change_step: float = 0.01

    clinical_weighting: bool = True
    clinical: ClinicalThresholds = field(default_factory=ClinicalThresholds)

    def validate(self):
        if not (0 < self.min_step <= self.default_step <= self.max_step):
            raise ValidationError(
                f"Step bounds must satisfy 0 < min <= default <= max, got "
                f"{self.min_step}/{self.default_step}/{self.max_step}"
            )
        if self.tolerance <= 0 or self.absolute_tolerance < 0:
            raise ValidationError("Tolerances must be positive")
        if not (0 < self.safety_factor <= 1.0):
            raise ValidationError(f"safety_factor must be in (0, 1], got {self.safety_factor}")
        if self.max_rejections < 1:
            raise ValidationError("max_rejections must be >= 1")
        return self


@dataclass(frozen=True)
class SafetyLimits:
    """Hard limits. Exceeding any of these is never silently clamped."""
    max_bolus_total: float = 10.0  # mg
    max_continuous_rate: float = 20.0  # mg/kg/hr
    max_plasma_concentration: float = 10.0  # ug/mL


@dataclass(frozen=True)
class ProtocolSettings:
    """Step-down protocol parameters (concentrations ug/mL, times min)."""
    target_ce: float = 1.0
    upper_threshold_ratio: float = 1.2  # Reduction trigger as a multiple of the target Ce
    reduction_factor: float = 0.70
    minimum_rate: float = 0.1  # mg/kg/hr floor after a reduction
    time_step: float = 0.01
    simulation_duration: float = 180.0
    target_reach_time: float = 20.0
    adjustment_interval: float = 5.0
    emergency_interval: float = 1.0  # Predictive mode: minimum gap for threshold reductions
    prediction_time: float = 5.0
    predictive: bool = False
    maintenance_start: float = MAINTENANCE_START
    evaluation_time_points: Tuple[float, ...] = (30.0, 60.0, 90.0, 120.0, 150.0, 180.0)
    max_iterations: int = 75

    def validate(self):
        if self.target_ce < 0:
            raise ValidationError(f"target_ce must be >= 0, got {self.target_ce}")
        if self.upper_threshold_ratio <= 1:
            raise ValidationError(f"upper_threshold_ratio must be > 1, got {self.upper_threshold_ratio}")
        if not (0 < self.reduction_factor < 1):
            raise ValidationError(f"reduction_factor must be in (0, 1), got {self.reduction_factor}")
        if self.time_step <= 0 or self.simulation_duration <= 0:
            raise ValidationError("time_step and simulation_duration must be positive")
        if self.adjustment_interval <= 0 or self.prediction_time <= 0:
            raise ValidationError("adjustment_interval and prediction_time must be positive")
        if self.max_iterations < 1:
            raise ValidationError("max_iterations must be >= 1")
        return self

    def upper_threshold(self, target_ce: Optional[float] = None) -> float:
        """Ce (ug/mL) at which the step-down controller reduces the rate."""
        target_ce = self.target_ce if target_ce is None else target_ce
        return target_ce * self.upper_threshold_ratio


@dataclass(frozen=True)
class SimulationConfig:
    """Configuration for the simulation orchestrator."""
    method: IntegratorMethod = IntegratorMethod.RK4
    effect_site_method: EffectSiteMethod = EffectSiteMethod.HYBRID
    time_step: float = DEFAULT_TIME_STEP  # min
    output_interval: float = DEFAULT_OUTPUT_INTERVAL  # min
    horizon_padding: float = DEFAULT_HORIZON_PADDING  # min past last event
    discrete_substep: float = DISCRETE_SUBSTEP
    verify_effect_site: bool = False  # Cross-check VHAC against the discrete rule
    effect_site_tolerance: float = EFFECT_SITE_TOLERANCE
    adaptive: AdaptiveSettings = field(default_factory=AdaptiveSettings)
    safety: SafetyLimits = field(default_factory=SafetyLimits)

    def validate(self):
        if self.time_step <= 0:
            raise ValidationError(f"time_step must be positive, got {self.time_step}")
        if self.output_interval < self.time_step:
            raise ValidationError("output_interval must be >= time_step")
        self.adaptive.validate()
        return self


# =============================================================================
# ENGINE STATE
# =============================================================================

@dataclass(frozen=True, slots=True)
class CompartmentState:
    """Drug amounts (mg) in the three PK compartments."""
    a1: float = 0.0  # Central
    a2: float = 0.0  # Fast peripheral
    a3: float = 0.0  # Slow peripheral

    def plasma_concentration(self, pk) -> float:
        """Central concentration in ug/mL (mg/L)."""
        return self.a1 / pk.v1

    def clamped(self) -> "CompartmentState":
        # Masks instability under large steps; a non-negativity-preserving
        # scheme would make this unnecessary.
        return CompartmentState(max(0.0, self.a1), max(0.0, self.a2), max(0.0, self.a3))

    def with_bolus(self, bolus_mg: float) -> "CompartmentState":
        return CompartmentState(self.a1 + bolus_mg, self.a2, self.a3)


@dataclass(frozen=True, slots=True)
class TimeSeriesPoint:
    """One output sample."""
    time: float
    plasma_conc: float  # ug/mL
    effect_conc: float  # ug/mL
    infusion_rate: float  # mg/kg/hr
    adjustment_count: int = 0


@dataclass(frozen=True, slots=True)
class DosageAdjustment:
    """Audit record of a rate change made by the step-down controller."""
    time: float
    old_rate: float
    new_rate: float
    triggering_ce: float
    reason: AdjustmentReason


@dataclass
class AdaptiveStepStats:
    """Counters owned by the adaptive controller, reset per run."""
    total_steps: int = 0
    accepted_steps: int = 0
    rejected_steps: int = 0
    event_count: int = 0
    interpolation_count: int = 0

    @property
    def acceptance_rate(self) -> float:
        if self.total_steps == 0:
            return 0.0
        return self.accepted_steps / self.total_steps

    def reset(self):
        self.total_steps = 0
        self.accepted_steps = 0
        self.rejected_steps = 0
        self.event_count = 0
        self.interpolation_count = 0

    def copy(self) -> "AdaptiveStepStats":
        return replace(self)
