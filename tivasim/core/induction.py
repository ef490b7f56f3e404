import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from .constants import SNAPSHOT_LIMIT, TICK_TIME_STEP
from .errors import ValidationError
from .integrators import effect_site_rk4_step, rk4_step
from .state import CompartmentState
from .units import mg_kg_hr_to_mg_min
from .utils import exclusive

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class InductionState:
    """Read-only view of a running induction."""
    elapsed: float  # min
    plasma_conc: float  # ug/mL
    effect_conc: float  # ug/mL
    bolus_mg: float
    continuous_rate: float  # mg/kg/hr
    is_running: bool

    @property
    def elapsed_string(self) -> str:
        total_seconds = int(round(self.elapsed * 60.0))
        return f"{total_seconds // 60:02d}:{total_seconds % 60:02d}"


class InductionSession:
    """
    Real-time induction tracker driven by a fixed-cadence tick loop.

    Each tick advances simulated time by one step (default 0.01 min). The
    state update of a tick is committed in one assignment, so observers never
    see a half-updated state. Stopping is allowed at any tick boundary.
    """
    def __init__(self, pk, patient, dt: float = TICK_TIME_STEP):
        if pk is None or patient is None:
            raise ValidationError("PK parameters and patient are required")
        if dt <= 0:
            raise ValidationError(f"Tick step must be positive, got {dt}")
        self.pk = pk
        self.patient = patient
        self.dt = dt
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[InductionState], None]] = []
        self.snapshots: List[InductionState] = []
        self._reset_state()

    def _reset_state(self):
        self.compartments = CompartmentState()
        self.ce = 0.0
        self.elapsed = 0.0
        self.bolus_mg = 0.0
        self.continuous_rate = 0.0
        self.is_running = False
        self.ticks = 0

    # Observers
    def add_update_callback(self, callback: Callable[[InductionState], None]):
        self._callbacks.append(callback)

    def remove_update_callback(self, callback: Callable[[InductionState], None]):
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify(self):
        state = self.state()
        for callback in list(self._callbacks):
            callback(state)

    def start(self, bolus_mg: float, continuous_rate: float):
        """Begin a new induction: bolus at t=0 then a constant rate (mg/kg/hr)."""
        if bolus_mg < 0 or continuous_rate < 0:
            raise ValidationError("Bolus and continuous rate must be non-negative")
        with exclusive(self._lock, "Induction session"):
            self._reset_state()
            self.snapshots = []
            self.bolus_mg = bolus_mg
            self.continuous_rate = continuous_rate
            self.compartments = CompartmentState(a1=bolus_mg)
            self.is_running = True
        logger.info("Induction started: bolus %.1f mg, rate %.2f mg/kg/hr", bolus_mg, continuous_rate)
        self._notify()

    def stop(self):
        self.is_running = False
        logger.info("Induction stopped at %.2f min", self.elapsed)

    def tick(self) -> InductionState:
        """Advance one step. No-op when stopped."""
        if not self.is_running:
            return self.state()
        with exclusive(self._lock, "Induction session"):
            rate_mg_min = mg_kg_hr_to_mg_min(self.continuous_rate, self.patient.weight)
            compartments = rk4_step(self.compartments, rate_mg_min, self.dt, self.pk)
            cp = compartments.plasma_concentration(self.pk)
            ce = effect_site_rk4_step(self.ce, cp, self.pk.ke0, self.dt)
            self.compartments, self.ce = compartments, ce
            self.ticks += 1
            self.elapsed = self.ticks * self.dt
        self._notify()
        return self.state()

    def run_for(self, minutes: float) -> InductionState:
        """Tick until `minutes` of simulated time have passed."""
        for _ in range(int(round(minutes / self.dt))):
            self.tick()
        return self.state()

    def update_dose(self, bolus_mg: float = 0.0, continuous_rate: Optional[float] = None):
        """Give an additional bolus and/or change the running rate."""
        if bolus_mg < 0 or (continuous_rate is not None and continuous_rate < 0):
            raise ValidationError("Bolus and continuous rate must be non-negative")
        with exclusive(self._lock, "Induction session"):
            if bolus_mg > 0:
                self.compartments = self.compartments.with_bolus(bolus_mg)
                self.bolus_mg += bolus_mg
            if continuous_rate is not None:
                self.continuous_rate = continuous_rate

    def take_snapshot(self) -> InductionState:
        """Record the current state; newest first, at most 10 kept."""
        snapshot = self.state()
        self.snapshots.insert(0, snapshot)
        del self.snapshots[SNAPSHOT_LIMIT:]
        return snapshot

    def reset(self):
        with exclusive(self._lock, "Induction session"):
            self._reset_state()
            self.snapshots = []

    @property
    def plasma_concentration(self) -> float:
        return self.compartments.plasma_concentration(self.pk)

    def state(self) -> InductionState:
        return InductionState(
            elapsed=self.elapsed,
            plasma_conc=self.plasma_concentration,
            effect_conc=self.ce,
            bolus_mg=self.bolus_mg,
            continuous_rate=self.continuous_rate,
            is_running=self.is_running,
        )
