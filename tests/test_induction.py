"""
Real-time induction session and data recording.
"""

import numpy as np
import pytest

from tivasim.core.comparator import exact_plasma
from tivasim.core.enums import AdjustmentReason
from tivasim.core.errors import SessionBusyError, ValidationError
from tivasim.core.induction import InductionSession, InductionState
from tivasim.core.recorder import DataRecorder, adjustments_to_dataframe, points_to_dataframe
from tivasim.core.state import DosageAdjustment, TimeSeriesPoint
from tivasim.core.units import mg_kg_hr_to_mg_min


@pytest.fixture
def session(pk, patient):
    return InductionSession(pk, patient)


class TestInductionSession:

    def test_initial_state(self, session):
        state = session.state()
        assert state.elapsed == 0.0
        assert state.plasma_conc == 0.0
        assert not state.is_running
        assert state.elapsed_string == "00:00"

    def test_start_applies_bolus(self, session, pk):
        session.start(bolus_mg=5.0, continuous_rate=1.0)
        assert session.is_running
        assert session.plasma_concentration == pytest.approx(5.0 / pk.v1)
        assert session.ce == 0.0

    def test_ticks_advance_time(self, session):
        session.start(5.0, 1.0)
        state = session.run_for(1.0)
        assert session.ticks == 100
        assert state.elapsed == pytest.approx(1.0)
        assert state.elapsed_string == "01:00"
        assert 0.0 < state.effect_conc < state.plasma_conc

    def test_plasma_matches_exact_solution(self, session, pk, patient):
        session.start(5.0, 1.0)
        state = session.run_for(10.0)
        times = np.arange(1001) * 0.01
        exact = exact_plasma(pk, 5.0, mg_kg_hr_to_mg_min(1.0, patient.weight), times)
        assert state.plasma_conc == pytest.approx(exact[-1], rel=1e-6)

    def test_tick_is_noop_when_stopped(self, session):
        session.start(5.0, 1.0)
        session.run_for(0.5)
        session.stop()
        before = session.state()
        after = session.tick()
        assert after == before
        assert not after.is_running

    def test_update_dose(self, session, pk):
        session.start(5.0, 1.0)
        session.run_for(2.0)
        cp_before = session.plasma_concentration
        session.update_dose(bolus_mg=3.0, continuous_rate=0.5)
        assert session.plasma_concentration == pytest.approx(cp_before + 3.0 / pk.v1)
        assert session.bolus_mg == 8.0
        assert session.continuous_rate == 0.5

    def test_update_dose_keeps_rate_when_omitted(self, session):
        session.start(5.0, 1.0)
        session.update_dose(bolus_mg=1.0)
        assert session.continuous_rate == 1.0

    def test_snapshots_newest_first_and_capped(self, session):
        session.start(5.0, 1.0)
        for _ in range(12):
            session.run_for(0.1)
            session.take_snapshot()
        assert len(session.snapshots) == 10
        elapsed = [s.elapsed for s in session.snapshots]
        assert elapsed == sorted(elapsed, reverse=True)
        assert elapsed[0] == pytest.approx(1.2)

    def test_reset(self, session):
        session.start(5.0, 1.0)
        session.run_for(0.5)
        session.take_snapshot()
        session.reset()
        assert session.state() == InductionState(0.0, 0.0, 0.0, 0.0, 0.0, False)
        assert session.snapshots == []

    def test_callbacks(self, session):
        seen = []
        session.add_update_callback(seen.append)
        session.start(5.0, 1.0)
        session.run_for(0.05)
        assert len(seen) == 6
        assert all(isinstance(s, InductionState) for s in seen)
        session.remove_update_callback(seen.append)
        session.tick()
        assert len(seen) == 6

    def test_busy_session(self, session):
        session.start(5.0, 1.0)
        session._lock.acquire()
        try:
            with pytest.raises(SessionBusyError):
                session.tick()
            with pytest.raises(SessionBusyError):
                session.update_dose(bolus_mg=1.0)
        finally:
            session._lock.release()
        assert session.tick().elapsed == pytest.approx(0.01)

    @pytest.mark.parametrize("bolus, rate", [(-1.0, 1.0), (5.0, -0.5)])
    def test_negative_doses_rejected(self, session, bolus, rate):
        with pytest.raises(ValidationError):
            session.start(bolus, rate)

    def test_invalid_construction(self, pk, patient):
        with pytest.raises(ValidationError):
            InductionSession(pk, patient, dt=0.0)
        with pytest.raises(ValidationError):
            InductionSession(None, patient)


class TestDataRecorder:

    def test_samples_at_interval(self, session):
        recorder = DataRecorder(sample_interval_min=0.5)
        recorder.start()
        session.add_update_callback(recorder.log)
        session.start(5.0, 1.0)
        session.run_for(2.0)
        recorder.stop()
        df = recorder.to_dataframe()
        assert df["elapsed"].tolist() == pytest.approx([0.0, 0.5, 1.0, 1.5, 2.0])
        assert {"plasma_conc", "effect_conc", "is_running"} <= set(df.columns)

    def test_ignores_states_when_not_recording(self, session):
        recorder = DataRecorder()
        recorder.log(session.state())
        assert recorder.to_dataframe().empty

    def test_zero_interval_logs_everything(self, session):
        recorder = DataRecorder(sample_interval_min=0.0)
        recorder.start()
        session.add_update_callback(recorder.log)
        session.start(5.0, 1.0)
        session.run_for(0.1)
        assert len(recorder.rows) == 11

    def test_trajectory_frames(self):
        points = [TimeSeriesPoint(0.0, 1.4, 0.0, 1.0), TimeSeriesPoint(1.0, 1.1, 0.3, 1.0, 1)]
        adjustments = [DosageAdjustment(1.0, 1.0, 0.7, 1.25, AdjustmentReason.THRESHOLD_REDUCTION)]
        points_df = points_to_dataframe(points)
        adj_df = adjustments_to_dataframe(adjustments)
        assert points_df["adjustment_count"].tolist() == [0, 1]
        assert adj_df.loc[0, "reason"] == "threshold_reduction"

    def test_empty_frames_keep_columns(self):
        assert list(points_to_dataframe([]).columns) == [
            "time", "plasma_conc", "effect_conc", "infusion_rate", "adjustment_count"
        ]
