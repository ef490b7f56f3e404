from dataclasses import dataclass

from tivasim.core.errors import ValidationError

# Accepted demographic ranges.
AGE_RANGE = (18, 100)  # years
WEIGHT_RANGE = (30.0, 200.0)  # kg
HEIGHT_RANGE = (120.0, 220.0)  # cm
ASA_RANGE = (1, 4)


@dataclass
class Patient:
    """
    Patient demographics. Weight drives the mg/kg/hr <-> mg/min conversion.
    """
    age: float = 40.0       # years
    weight: float = 70.0    # kg
    height: float = 170.0   # cm
    sex: str = "male"       # "male" or "female"
    asa: int = 1            # ASA physical status 1-4
    patient_id: str = ""

    # Derived parameters (computed post-init)
    bmi: float = 0.0

    def __post_init__(self):
        self._validate()
        self.bmi = self.weight / ((self.height / 100.0) ** 2)

    def _validate(self):
        """Reject demographics outside the supported adult ranges."""
        checks = (
            ("age", self.age, AGE_RANGE),
            ("weight", self.weight, WEIGHT_RANGE),
            ("height", self.height, HEIGHT_RANGE),
            ("asa", self.asa, ASA_RANGE),
        )
        for name, value, (lo, hi) in checks:
            try:
                value = float(value)
            except (TypeError, ValueError):
                raise ValidationError(f"{name} must be numeric, got {value!r}")
            if not (lo <= value <= hi):
                raise ValidationError(f"{name} {value} outside supported range {lo}-{hi}")
        if str(self.sex).lower() not in ("male", "female"):
            raise ValidationError(f"sex must be 'male' or 'female', got {self.sex!r}")
        self.sex = str(self.sex).lower()
