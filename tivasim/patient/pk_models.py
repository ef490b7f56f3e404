import logging
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np

from tivasim.core.constants import KE0_WARN_RANGE, V1_WARN_RANGE
from tivasim.core.errors import ValidationError
from tivasim.core.utils import is_finite_number

logger = logging.getLogger(__name__)

# =============================================================================
# PHARMACOKINETIC PARAMETERS
# =============================================================================
#
# 3-compartment mammillary model on drug AMOUNTS (mg):
#
#   da1/dt = R(t) - (k10 + k12 + k13) a1 + k21 a2 + k31 a3
#   da2/dt = k12 a1 - k21 a2
#   da3/dt = k13 a1 - k31 a3
#   dCe/dt = ke0 (Cp - Ce),   Cp = a1 / V1
#
# Parameters are supplied by an external population-PK calculator (e.g.
# Masui et al. Br J Anaesth. 2022 for remimazolam) and are consumed as-is.
#
# Units:
#   - Volumes: L
#   - Clearances: L/min
#   - Rate constants (k10, k12, ...): min^-1
#   - Effect-site equilibration (ke0): min^-1
#   - Concentrations: ug/mL (== mg/L)
# =============================================================================


@dataclass(frozen=True)
class PKParameterSet:
    """
    Immutable per-patient PK parameter bundle.

    All volumes, clearances and ke0 must be strictly positive.
    """
    v1: float
    v2: float
    v3: float
    cl: float
    q2: float
    q3: float
    ke0: float

    def __post_init__(self):
        for name in ("v1", "v2", "v3", "cl", "q2", "q3", "ke0"):
            value = getattr(self, name)
            if not is_finite_number(value) or value <= 0:
                raise ValidationError(f"PK parameter {name} must be positive and finite, got {value!r}")

    @classmethod
    def from_rate_constants(cls, v1: float, k10: float, k12: float, k13: float,
                            k21: float, k31: float, ke0: float) -> "PKParameterSet":
        """Build from V1 and micro rate constants (min^-1)."""
        for name, value in (("k10", k10), ("k12", k12), ("k13", k13), ("k21", k21), ("k31", k31)):
            if not is_finite_number(value) or value <= 0:
                raise ValidationError(f"Rate constant {name} must be positive, got {value!r}")
        if not is_finite_number(v1) or v1 <= 0:
            raise ValidationError(f"PK parameter v1 must be positive and finite, got {v1!r}")
        q2 = k12 * v1
        q3 = k13 * v1
        return cls(
            v1=v1,
            v2=q2 / k21,
            v3=q3 / k31,
            cl=k10 * v1,
            q2=q2,
            q3=q3,
            ke0=ke0,
        )

    # Rate constants (min^-1)
    @property
    def k10(self) -> float:
        return self.cl / self.v1

    @property
    def k12(self) -> float:
        return self.q2 / self.v1

    @property
    def k21(self) -> float:
        return self.q2 / self.v2

    @property
    def k13(self) -> float:
        return self.q3 / self.v1

    @property
    def k31(self) -> float:
        return self.q3 / self.v3

    def state_space_matrices(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Continuous state-space (A, B) for x = [a1, a2, a3] (mg).

        Input u is an infusion rate in mg/min into the central compartment.
        """
        k10, k12, k13, k21, k31 = self.k10, self.k12, self.k13, self.k21, self.k31
        A = np.array([
            [-(k10 + k12 + k13), k21, k31],
            [k12, -k21, 0.0],
            [k13, 0.0, -k31],
        ])
        B = np.array([[1.0], [0.0], [0.0]])
        return A, B

    def validate_clinical_ranges(self) -> List[str]:
        """
        Return warnings for parameters outside typical adult ranges.

        These are advisory; out-of-range values are still simulated.
        """
        warnings = []
        lo, hi = V1_WARN_RANGE
        if not (lo <= self.v1 <= hi):
            warnings.append(f"V1 {self.v1:.2f} L outside typical range {lo}-{hi} L")
        lo, hi = KE0_WARN_RANGE
        if not (lo <= self.ke0 <= hi):
            warnings.append(f"ke0 {self.ke0:.3f} /min outside typical range {lo}-{hi} /min")
        for message in warnings:
            logger.warning("PK parameter check: %s", message)
        return warnings

    def summary(self) -> dict:
        return {
            "V1": self.v1, "V2": self.v2, "V3": self.v3,
            "CL": self.cl, "Q2": self.q2, "Q3": self.q3,
            "k10": self.k10, "k12": self.k12, "k21": self.k21,
            "k13": self.k13, "k31": self.k31, "ke0": self.ke0,
        }
