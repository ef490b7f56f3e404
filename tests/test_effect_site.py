import math

import numpy as np
import pytest

from tivasim.core.effect_site import (
    EffectSiteSolver,
    calculate_discrete,
    calculate_hybrid,
    hybrid_step,
    verify_against_reference,
)
from tivasim.core.enums import EffectSiteMethod
from tivasim.core.errors import ValidationError


def ramp_solution(slope, ke0, t):
    """Exact Ce for Cp = slope * t, Ce(0) = 0."""
    return slope * (t - (1.0 - math.exp(-ke0 * t)) / ke0)


class TestHybridRule:
    """The VHAC update is exact for piecewise-linear plasma input."""

    def test_constant_plasma_on_coarse_grid(self):
        times = np.array([0.0, 0.5, 5.0, 20.0, 60.0])
        plasma = np.full(times.shape, 2.0)
        ce = calculate_hybrid(plasma, times, 0.3)
        # Ce(0) is 0 even though Cp(0) > 0; from then on Cp is constant.
        for i in range(1, times.shape[0]):
            assert ce[i] == pytest.approx(2.0 * (1 - math.exp(-0.3 * times[i])), abs=1e-12)

    def test_linear_ramp_irregular_grid(self):
        ke0, slope = 0.456, 0.2
        times = np.array([0.0, 0.3, 1.1, 1.2, 4.0, 9.5, 15.0])
        ce = calculate_hybrid(slope * times, times, ke0)
        expected = [ramp_solution(slope, ke0, t) for t in times]
        np.testing.assert_allclose(ce, expected, atol=1e-12)

    def test_series_branch_for_tiny_steps(self):
        ke0, slope = 0.2, 1.0
        times = np.arange(0, 1001) * 1e-5
        ce = calculate_hybrid(slope * times, times, ke0)
        assert ce[-1] == pytest.approx(ramp_solution(slope, ke0, times[-1]), rel=1e-6)

    def test_stable_for_huge_steps(self):
        ce = hybrid_step(0.0, 1.0, 1.0, 5.0, 1000.0)
        assert ce == pytest.approx(1.0)

    def test_first_value_is_zero(self):
        ce = calculate_hybrid([3.0, 3.0], [0.0, 1.0], 0.2)
        assert ce[0] == 0.0

    def test_monotone_input_gives_bounded_monotone_output(self):
        times = np.linspace(0, 30, 121)
        plasma = 2.5 * (1 - np.exp(-0.3 * times)) + 0.01 * times
        ce = calculate_hybrid(plasma, times, 0.22)
        assert np.all(np.diff(ce) >= 0), "Ce must not decrease for increasing Cp"
        assert np.all(ce <= np.maximum.accumulate(plasma) + 1e-12)

    def test_result_never_negative(self):
        times = np.array([0.0, 1.0, 2.0])
        ce = calculate_hybrid([0.0, -3.0, -3.0], times, 1.0)
        assert np.all(ce >= 0.0)


class TestDiscreteReference:

    def test_single_substep_when_interval_small(self):
        ce = calculate_discrete([1.0, 1.0], [0.0, 0.05], 0.5, substep=0.1)
        # One Euler substep with midpoint Cp = 1.0
        assert ce[1] == pytest.approx(0.05 * 0.5 * 1.0)

    def test_hybrid_agrees_with_reference(self):
        times = np.arange(0, 31, 1.0)
        plasma = 1.0 - np.exp(-0.1 * times)
        report = verify_against_reference(plasma, times, 0.22, tolerance=5e-3, substep=0.01)
        assert report.within_tolerance, f"max abs error {report.max_abs_error:.2e}"
        assert report.max_rel_error < 0.01

    def test_reference_converges_to_hybrid(self):
        times = np.arange(0, 11, 1.0)
        plasma = 0.3 * times
        hybrid = calculate_hybrid(plasma, times, 0.5)
        coarse = np.max(np.abs(calculate_discrete(plasma, times, 0.5, substep=0.1) - hybrid))
        fine = np.max(np.abs(calculate_discrete(plasma, times, 0.5, substep=0.01) - hybrid))
        assert fine < coarse

    def test_out_of_tolerance_is_reported(self, caplog):
        times = np.array([0.0, 10.0])
        report = verify_against_reference([5.0, 5.0], times, 1.0, tolerance=1e-9, substep=5.0)
        assert not report.within_tolerance
        assert "deviates" in caplog.text


class TestValidation:

    @pytest.mark.parametrize("plasma, times, ke0", [
        ([1.0, 2.0], [0.0], 0.2),            # length mismatch
        ([], [], 0.2),                        # empty
        ([1.0, 2.0], [0.0, 1.0], 0.0),        # ke0 zero
        ([1.0, 2.0], [0.0, 1.0], -0.1),       # ke0 negative
        ([1.0, 2.0], [1.0, 1.0], 0.2),        # non-increasing time
        ([1.0, 2.0, 3.0], [0.0, 2.0, 1.0], 0.2),
        ([1.0, float("nan")], [0.0, 1.0], 0.2),
        ([1.0, 2.0], [0.0, 1.0], float("inf")),
    ])
    def test_invalid_inputs_raise(self, plasma, times, ke0):
        with pytest.raises(ValidationError):
            calculate_hybrid(plasma, times, ke0)
        with pytest.raises(ValidationError):
            calculate_discrete(plasma, times, ke0)

    def test_single_point(self):
        assert calculate_hybrid([2.0], [0.0], 0.2).tolist() == [0.0]


class TestEffectSiteSolver:

    def test_default_is_hybrid(self):
        times = np.array([0.0, 1.0, 2.0])
        solver = EffectSiteSolver()
        np.testing.assert_array_equal(solver.solve([1, 1, 1], times, 0.3), calculate_hybrid([1, 1, 1], times, 0.3))

    def test_discrete_selection(self):
        times = np.array([0.0, 1.0, 2.0])
        solver = EffectSiteSolver(EffectSiteMethod.DISCRETE, substep=0.25)
        np.testing.assert_array_equal(
            solver.solve([1, 1, 1], times, 0.3), calculate_discrete([1, 1, 1], times, 0.3, 0.25)
        )

    def test_unknown_method(self):
        with pytest.raises(ValidationError):
            EffectSiteSolver("VHAC")
