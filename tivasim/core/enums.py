from enum import Enum


class IntegratorMethod(Enum):
    """Compartment integration method, resolved once per session."""
    EULER = "Euler"
    RK4 = "RK4"
    ADAPTIVE_RK4 = "Adaptive RK4"


class EffectSiteMethod(Enum):
    HYBRID = "VHAC"
    DISCRETE = "Discrete"


class AdjustmentReason(Enum):
    """Why the step-down controller changed the rate."""
    THRESHOLD_REDUCTION = "threshold_reduction"
    PREDICTIVE_ADJUSTMENT = "predictive_adjustment"
    EMERGENCY_REDUCTION = "emergency_reduction"


class EventType(Enum):
    BOLUS = "bolus"
    RATE_CHANGE = "rate_change"


class ConcentrationCategory(Enum):
    ULTRA_LOW = "ultra_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
