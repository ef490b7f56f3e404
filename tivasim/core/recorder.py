from dataclasses import asdict
from enum import Enum
from typing import Iterable, List, Optional

import pandas as pd

from .state import DosageAdjustment, TimeSeriesPoint


def _row(record) -> dict:
    row = asdict(record)
    # Enums become their string value for tabular output.
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in row.items()}


def points_to_dataframe(points: Iterable[TimeSeriesPoint]) -> pd.DataFrame:
    columns = ["time", "plasma_conc", "effect_conc", "infusion_rate", "adjustment_count"]
    return pd.DataFrame([_row(p) for p in points], columns=columns)


def adjustments_to_dataframe(adjustments: Iterable[DosageAdjustment]) -> pd.DataFrame:
    columns = ["time", "old_rate", "new_rate", "triggering_ce", "reason"]
    return pd.DataFrame([_row(a) for a in adjustments], columns=columns)


class DataRecorder:
    """
    Collects session states at a fixed simulated-time interval.

    Attach `log` as an induction-session update callback, then export with
    to_dataframe().
    """
    def __init__(self, sample_interval_min: float = 1.0):
        self.sample_interval_min = max(0.0, sample_interval_min)
        self.rows: List[dict] = []
        self.is_recording = False
        self._last_sample_time: Optional[float] = None

    def start(self):
        self.rows = []
        self._last_sample_time = None
        self.is_recording = True

    def log(self, state):
        if not self.is_recording:
            return

        if self.sample_interval_min > 0.0:
            now = getattr(state, "elapsed", None)
            if now is not None:
                if (self._last_sample_time is not None
                        and (now - self._last_sample_time) < self.sample_interval_min - 1e-9):
                    return
                self._last_sample_time = now

        self.rows.append(_row(state))

    def stop(self):
        self.is_recording = False

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(self.rows)
