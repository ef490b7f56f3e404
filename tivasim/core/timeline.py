import math
from dataclasses import dataclass
from typing import Iterator, List, Optional

from .adaptive import AdaptiveEvent
from .constants import MAX_BOLUS_DOSE, MAX_CONTINUOUS_RATE, MAX_EVENT_TIME
from .enums import EventType
from .errors import ValidationError
from .units import mg_kg_hr_to_mg_min
from .utils import is_finite_number


@dataclass(frozen=True)
class DoseEvent:
    """
    A bolus and/or a new continuous rate starting at time_minutes.

    The continuous rate stays in force until the next event.
    """
    time_minutes: float
    bolus_mg: float = 0.0
    continuous_rate_mg_kg_hr: float = 0.0

    def __post_init__(self):
        for name, value, upper in (
            ("time_minutes", self.time_minutes, MAX_EVENT_TIME),
            ("bolus_mg", self.bolus_mg, MAX_BOLUS_DOSE),
            ("continuous_rate_mg_kg_hr", self.continuous_rate_mg_kg_hr, MAX_CONTINUOUS_RATE),
        ):
            if not is_finite_number(value):
                raise ValidationError(f"{name} must be a finite number, got {value!r}")
            if not (0.0 <= value <= upper):
                raise ValidationError(f"{name} {value} outside allowed range 0-{upper}")

    @property
    def is_bolus(self) -> bool:
        return self.bolus_mg > 0

    def rate_mg_min(self, weight_kg: float) -> float:
        return mg_kg_hr_to_mg_min(self.continuous_rate_mg_kg_hr, weight_kg)


class DoseTimeline:
    """
    Ordered, time-unique collection of dose events.

    Events are immutable; the timeline only grows or shrinks as a whole
    event at a time.
    """
    def __init__(self, events=None):
        self._events: List[DoseEvent] = []
        for event in events or ():
            self.add(event)

    def add(self, event: DoseEvent) -> DoseEvent:
        """Insert keeping ascending order. A second event at the same time is rejected."""
        if not isinstance(event, DoseEvent):
            raise ValidationError(f"Expected DoseEvent, got {type(event).__name__}")
        if self.event_at(event.time_minutes) is not None:
            raise ValidationError(f"A dose event already exists at t={event.time_minutes} min")
        times = [e.time_minutes for e in self._events]
        position = 0
        while position < len(times) and times[position] < event.time_minutes:
            position += 1
        self._events.insert(position, event)
        return event

    def remove(self, time_minutes: float) -> DoseEvent:
        event = self.event_at(time_minutes)
        if event is None:
            raise ValidationError(f"No dose event at t={time_minutes} min")
        self._events.remove(event)
        return event

    def clear(self):
        self._events.clear()

    @property
    def events(self) -> List[DoseEvent]:
        return list(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[DoseEvent]:
        return iter(list(self._events))

    @property
    def last_event_time(self) -> float:
        return self._events[-1].time_minutes if self._events else 0.0

    def event_at(self, time_minutes: float) -> Optional[DoseEvent]:
        for event in self._events:
            if math.isclose(event.time_minutes, time_minutes, abs_tol=1e-9):
                return event
        return None

    def rate_at(self, t: float) -> float:
        """Continuous rate (mg/kg/hr) in force at t; 0 before the first event."""
        rate = 0.0
        for event in self._events:
            if event.time_minutes <= t + 1e-9:
                rate = event.continuous_rate_mg_kg_hr
            else:
                break
        return rate

    def bolus_at(self, t: float, window: float) -> float:
        """Total bolus (mg) of events with |time - t| < window."""
        return sum(e.bolus_mg for e in self._events if abs(e.time_minutes - t) < window)

    def total_bolus(self) -> float:
        return sum(e.bolus_mg for e in self._events)

    def max_rate(self) -> float:
        return max((e.continuous_rate_mg_kg_hr for e in self._events), default=0.0)

    def to_adaptive_events(self, weight_kg: float) -> List[AdaptiveEvent]:
        """
        Expand into bolus and rate-change events for the adaptive solver.

        A rate-change event is emitted only when the rate actually changes.
        """
        result = []
        current = 0.0
        for event in self._events:
            if event.is_bolus:
                result.append(AdaptiveEvent(event.time_minutes, EventType.BOLUS, event.bolus_mg))
            if event.continuous_rate_mg_kg_hr != current:
                result.append(AdaptiveEvent(
                    event.time_minutes, EventType.RATE_CHANGE, event.rate_mg_min(weight_kg)
                ))
                current = event.continuous_rate_mg_kg_hr
        return result
