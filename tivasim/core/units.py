"""
Unit conversion helpers for infusion rates.

Internal convention: the integrators consume mg/min. Clinical inputs are
weight-normalized (mg/kg/hr).
"""

from typing import Dict, Tuple

from .errors import ValidationError


_RATE_UNIT_ALIASES: Dict[str, str] = {
    "mg/h": "mg/hr",
    "mg/kg/h": "mg/kg/hr",
    "mg/kg/min": "mg/kg/min",
    "mg/m": "mg/min",
}

# Conversion factors to mg/min (multiplicative). Weight-normalized units
# additionally multiply by body weight.
_TO_MG_MIN: Dict[str, Tuple[float, bool]] = {
    "mg/min": (1.0, False),
    "mg/hr": (1.0 / 60.0, False),
    "mg/kg/hr": (1.0 / 60.0, True),
    "mg/kg/min": (1.0, True),
}


def normalize_rate_unit(unit: str) -> str:
    """Normalize rate unit strings to canonical lowercase form."""
    if not unit:
        return ""
    u = unit.strip()
    u = u.replace("per", "/")
    u = u.replace(" ", "")
    u = u.lower()
    return _RATE_UNIT_ALIASES.get(u, u)


def to_mg_per_min(value: float, unit: str, weight_kg: float = None) -> float:
    """
    Convert a rate to mg/min.

    Raises ValidationError for unknown units or a missing weight on a
    weight-normalized unit.
    """
    norm = normalize_rate_unit(unit)
    if norm not in _TO_MG_MIN:
        raise ValidationError(f"Unsupported rate unit: {unit}")
    factor, per_kg = _TO_MG_MIN[norm]
    if per_kg:
        if weight_kg is None or weight_kg <= 0:
            raise ValidationError(f"Positive weight required to convert {unit}")
        return value * weight_kg * factor
    return value * factor


def convert_rate(value: float, from_unit: str, to_unit: str, weight_kg: float = None) -> float:
    """Convert a rate between any two supported units."""
    source, target = normalize_rate_unit(from_unit), normalize_rate_unit(to_unit)
    if source == target and target in _TO_MG_MIN:
        return value
    mg_min = to_mg_per_min(value, from_unit, weight_kg)
    per_unit = to_mg_per_min(1.0, to_unit, weight_kg)
    return mg_min / per_unit


def mg_kg_hr_to_mg_min(rate: float, weight_kg: float) -> float:
    """Clinical rate (mg/kg/hr) to integrator rate (mg/min)."""
    return rate * weight_kg / 60.0
