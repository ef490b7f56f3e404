from pathlib import Path
import sys

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest

from tivasim.core.state import ProtocolSettings
from tivasim.patient.patient import Patient
from tivasim.patient.pk_models import PKParameterSet


DEFAULT_PATIENT = dict(age=40, weight=70, height=170, sex="male")

# Typical adult remimazolam parameter set.
DEFAULT_PK = dict(v1=3.57, v2=11.3, v3=27.2, cl=1.03, q2=1.10, q3=0.401, ke0=0.22)


@pytest.fixture
def patient():
    """Standard adult patient used across most tests."""
    return Patient(**DEFAULT_PATIENT)


@pytest.fixture
def pk():
    """PK parameters for the standard patient."""
    return PKParameterSet(**DEFAULT_PK)


@pytest.fixture
def pk_factory():
    """Build PK parameter sets with selected overrides."""
    def _factory(**overrides):
        params = dict(DEFAULT_PK)
        params.update(overrides)
        return PKParameterSet(**params)

    return _factory


@pytest.fixture
def fast_settings():
    """Protocol settings with a coarser grid to keep optimizer tests quick."""
    return ProtocolSettings(time_step=0.05, simulation_duration=120.0)
