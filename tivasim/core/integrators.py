"""
Pure step functions for the 3-compartment model.

All functions take (state, rate, dt, pk) and return a new state; no hidden
state is kept, so identical inputs always produce identical outputs.
Rates are in mg/min, times in minutes.
"""

from typing import Callable, Tuple

from .enums import IntegratorMethod
from .errors import ValidationError
from .state import CompartmentState

StepFunction = Callable[[CompartmentState, float, float, object], CompartmentState]


def derivatives(a1: float, a2: float, a3: float, rate_mg_min: float, pk) -> Tuple[float, float, float]:
    """Right-hand side of the amount ODE."""
    k10, k12, k13, k21, k31 = pk.k10, pk.k12, pk.k13, pk.k21, pk.k31
    da1 = rate_mg_min - (k10 + k12 + k13) * a1 + k21 * a2 + k31 * a3
    da2 = k12 * a1 - k21 * a2
    da3 = k13 * a1 - k31 * a3
    return da1, da2, da3


def euler_step(state: CompartmentState, rate_mg_min: float, dt: float, pk) -> CompartmentState:
    """Explicit Euler. O(dt) global error, kept as a baseline."""
    d1, d2, d3 = derivatives(state.a1, state.a2, state.a3, rate_mg_min, pk)
    return CompartmentState(
        state.a1 + dt * d1,
        state.a2 + dt * d2,
        state.a3 + dt * d3,
    ).clamped()


def rk4_step(state: CompartmentState, rate_mg_min: float, dt: float, pk) -> CompartmentState:
    """Classical 4-stage Runge-Kutta with the rate held over the step."""
    a1, a2, a3 = state.a1, state.a2, state.a3
    half = 0.5 * dt

    k1 = derivatives(a1, a2, a3, rate_mg_min, pk)
    k2 = derivatives(a1 + half * k1[0], a2 + half * k1[1], a3 + half * k1[2], rate_mg_min, pk)
    k3 = derivatives(a1 + half * k2[0], a2 + half * k2[1], a3 + half * k2[2], rate_mg_min, pk)
    k4 = derivatives(a1 + dt * k3[0], a2 + dt * k3[1], a3 + dt * k3[2], rate_mg_min, pk)

    sixth = dt / 6.0
    return CompartmentState(
        a1 + sixth * (k1[0] + 2.0 * k2[0] + 2.0 * k3[0] + k4[0]),
        a2 + sixth * (k1[1] + 2.0 * k2[1] + 2.0 * k3[1] + k4[1]),
        a3 + sixth * (k1[2] + 2.0 * k2[2] + 2.0 * k3[2] + k4[2]),
    ).clamped()


# -----------------------------------------------------------------------------
# Effect site (Cp held constant across the step)
# -----------------------------------------------------------------------------

def effect_site_euler_step(ce: float, cp: float, ke0: float, dt: float) -> float:
    return max(0.0, ce + dt * ke0 * (cp - ce))


def effect_site_rk4_step(ce: float, cp: float, ke0: float, dt: float) -> float:
    """
    RK4 update of dCe/dt = ke0 (Cp - Ce) for constant Cp.

    Args:
        ce: Effect-site concentration at the start of the step (ug/mL).
        cp: Plasma concentration, constant over the step (ug/mL).
        ke0: Equilibration rate constant (1/min).
        dt: Step in minutes.
    """
    k1 = ke0 * (cp - ce)
    k2 = ke0 * (cp - (ce + 0.5 * dt * k1))
    k3 = ke0 * (cp - (ce + 0.5 * dt * k2))
    k4 = ke0 * (cp - (ce + dt * k3))
    return max(0.0, ce + dt / 6.0 * (k1 + 2.0 * k2 + 2.0 * k3 + k4))


_STEP_FUNCTIONS = {
    IntegratorMethod.EULER: euler_step,
    IntegratorMethod.RK4: rk4_step,
    # The adaptive controller drives RK4 steps of varying size.
    IntegratorMethod.ADAPTIVE_RK4: rk4_step,
}


def get_integrator(method: IntegratorMethod) -> StepFunction:
    """Resolve a method tag to its step function."""
    try:
        return _STEP_FUNCTIONS[method]
    except KeyError:
        raise ValidationError(f"Unknown integrator method: {method!r}") from None
