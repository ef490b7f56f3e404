"""
Numerical and clinical constants for TivaSim.

This module centralizes magic numbers used by the engine.

NOTE: Only add constants here that are ACTIVELY IMPORTED elsewhere.
"""

# Integration grid (minutes).
DEFAULT_TIME_STEP = 0.01  # High-resolution orchestrator step
DEFAULT_OUTPUT_INTERVAL = 1.0  # Reporting grid
DEFAULT_HORIZON_PADDING = 120.0  # Minutes simulated past the last dose event
TICK_TIME_STEP = 0.01  # One real-time tick (~0.6 s wall time)

# Effect-site solver.
VHAC_SERIES_THRESHOLD = 1e-3  # ke0*dt below this uses the series expansion
DISCRETE_SUBSTEP = 0.1  # Reference rule substep (min)
EFFECT_SITE_TOLERANCE = 1e-3  # Hybrid vs discrete agreement (ug/mL)

# Adaptive controller.
EVENT_TIME_EPSILON = 1e-10  # Event coincides with current time (min)
RAPID_CHANGE_THRESHOLD = 0.1  # Relative Ce change rate (1/min)
CE_FLOOR_FOR_RELATIVE_RATE = 0.1  # ug/mL, avoids division by ~0
ERROR_EPSILON = 1e-15
RK4_DOUBLING_FACTOR = 15.0  # 2^4 - 1
RK4_ORDER = 4
SNAPSHOT_LIMIT = 10

# Dose event validation limits.
MAX_EVENT_TIME = 1440.0  # min (24 h)
MAX_BOLUS_DOSE = 100.0  # mg
MAX_CONTINUOUS_RATE = 20.0  # mg/kg/hr

# Protocol performance scoring.
MAINTENANCE_START = 60.0  # min
ACCURACY_BAND = 0.10  # +-10% of target
TIME_IN_TARGET_BAND = 0.05  # +-5% of target
CONVERGENCE_SEARCH_START = 10.0  # min
FAST_CONVERGENCE_TIME = 30.0  # min, full convergence score below this
SCORE_WEIGHT_ACCURACY = 0.4
SCORE_WEIGHT_STABILITY = 0.3
SCORE_WEIGHT_CONVERGENCE = 0.3
OVERSHOOT_ALLOWANCE = 10.0  # % overshoot before penalty
OVERSHOOT_PENALTY = 2.0  # score points per % overshoot above allowance

# Recommended bolus (mg).
BOLUS_BASE = 2.0
BOLUS_SCALE = 5.0
BOLUS_CAP = 10.0

# Clinical range checks for PK parameters (warnings only).
V1_WARN_RANGE = (1.0, 50.0)  # L
KE0_WARN_RANGE = (0.01, 2.0)  # 1/min
