"""
Integrator accuracy and invariants.

Effect-site checks use the analytical solution for constant Cp:
Ce(t) = Cp + (Ce0 - Cp) exp(-ke0 t).
"""

import math

import numpy as np
import pytest

from tivasim.core.comparator import exact_plasma
from tivasim.core.enums import IntegratorMethod
from tivasim.core.errors import ValidationError
from tivasim.core.integrators import (
    derivatives,
    effect_site_euler_step,
    effect_site_rk4_step,
    euler_step,
    get_integrator,
    rk4_step,
)
from tivasim.core.state import CompartmentState


def integrate_ce(step_fn, ce0, cp, ke0, dt, duration):
    ce = ce0
    for _ in range(int(round(duration / dt))):
        ce = step_fn(ce, cp, ke0, dt)
    return ce


def analytic_ce(ce0, cp, ke0, t):
    return cp + (ce0 - cp) * math.exp(-ke0 * t)


class TestEffectSiteStep:
    """Single-compartment effect-site update with Cp held constant."""

    def test_rk4_matches_analytical_constant_cp(self):
        cp, ke0, dt = 2.0, 0.456, 0.1
        ce = 0.0
        max_error = 0.0
        for i in range(1, 101):
            ce = effect_site_rk4_step(ce, cp, ke0, dt)
            max_error = max(max_error, abs(ce - analytic_ce(0.0, cp, ke0, i * dt)))
        assert max_error < 1e-6, f"RK4 max error {max_error:.2e} over 10 min"

    def test_fourth_order_convergence(self):
        """Halving dt should cut the final error by ~16x."""
        cp, ke0, duration = 1.0, 1.0, 2.0
        exact = analytic_ce(0.0, cp, ke0, duration)
        errors = [
            abs(integrate_ce(effect_site_rk4_step, 0.0, cp, ke0, dt, duration) - exact)
            for dt in (0.2, 0.1, 0.05, 0.025)
        ]
        for coarse, fine in zip(errors, errors[1:]):
            ratio = coarse / fine
            assert 8.0 <= ratio <= 24.0, f"Error ratio {ratio:.1f} not ~16 (errors={errors})"

    def test_rk4_much_more_accurate_than_euler(self):
        cp, ke0, dt, duration = 2.0, 0.456, 0.1, 10.0
        exact = analytic_ce(0.0, cp, ke0, duration)
        euler_err = abs(integrate_ce(effect_site_euler_step, 0.0, cp, ke0, dt, duration) - exact)
        rk4_err = abs(integrate_ce(effect_site_rk4_step, 0.0, cp, ke0, dt, duration) - exact)
        assert rk4_err * 10 <= euler_err, f"RK4 {rk4_err:.2e} vs Euler {euler_err:.2e}"

    def test_decay_without_plasma(self):
        """Cp=0, Ce0=1: strictly decreasing and inside [0, 1)."""
        ce = 1.0
        for _ in range(200):
            new = effect_site_rk4_step(ce, 0.0, 0.456, 0.1)
            assert new < ce
            assert 0.0 <= new < 1.0
            ce = new

    def test_equilibrium_is_fixed_point(self):
        assert effect_site_rk4_step(1.5, 1.5, 0.456, 0.1) == 1.5
        assert effect_site_euler_step(1.5, 1.5, 0.456, 0.1) == 1.5

    def test_negative_plasma_never_drives_ce_negative(self):
        ce = 0.05
        for _ in range(100):
            ce = effect_site_rk4_step(ce, -5.0, 2.0, 0.5)
            assert ce >= 0.0


class TestCompartmentSteps:

    def test_derivatives_mass_flow(self, pk):
        """Intercompartmental flows cancel; only elimination and input remain."""
        d1, d2, d3 = derivatives(10.0, 3.0, 1.0, 2.0, pk)
        assert d1 + d2 + d3 == pytest.approx(2.0 - pk.k10 * 10.0)

    def test_rk4_tracks_exact_solution(self, pk):
        dt = 0.1
        times = np.arange(301) * dt
        exact = exact_plasma(pk, 5.0, 1.2, times)
        state = CompartmentState(a1=5.0)
        max_error = 0.0
        for i in range(times.shape[0]):
            max_error = max(max_error, abs(state.plasma_concentration(pk) - exact[i]))
            state = rk4_step(state, 1.2, dt, pk)
        assert max_error < 1e-5, f"RK4 plasma error {max_error:.2e}"

    def test_rk4_beats_euler_on_compartments(self, pk):
        dt = 0.1
        times = np.arange(201) * dt
        exact = exact_plasma(pk, 8.0, 0.0, times)
        s_euler = s_rk4 = CompartmentState(a1=8.0)
        for _ in range(200):
            s_euler = euler_step(s_euler, 0.0, dt, pk)
            s_rk4 = rk4_step(s_rk4, 0.0, dt, pk)
        err_euler = abs(s_euler.plasma_concentration(pk) - exact[-1])
        err_rk4 = abs(s_rk4.plasma_concentration(pk) - exact[-1])
        assert err_rk4 * 10 <= err_euler

    def test_amounts_clamped_non_negative(self, pk):
        """A huge Euler step overshoots below zero and is clamped."""
        state = euler_step(CompartmentState(a1=10.0), 0.0, 50.0, pk)
        assert state.a1 >= 0.0 and state.a2 >= 0.0 and state.a3 >= 0.0

    def test_steps_are_pure(self, pk):
        start = CompartmentState(4.0, 1.0, 0.5)
        assert rk4_step(start, 1.0, 0.01, pk) == rk4_step(start, 1.0, 0.01, pk)
        assert start == CompartmentState(4.0, 1.0, 0.5)

    def test_empty_system_stays_empty(self, pk):
        assert rk4_step(CompartmentState(), 0.0, 1.0, pk) == CompartmentState()


class TestIntegratorRegistry:

    @pytest.mark.parametrize("method, expected", [
        (IntegratorMethod.EULER, euler_step),
        (IntegratorMethod.RK4, rk4_step),
        (IntegratorMethod.ADAPTIVE_RK4, rk4_step),
    ])
    def test_resolves_methods(self, method, expected):
        assert get_integrator(method) is expected

    def test_unknown_method_rejected(self):
        with pytest.raises(ValidationError):
            get_integrator("LSODA")
