"""BAC simulation using linear absorption and Widmark-style elimination.

Model:
- Absorption: each drink ramps linearly into the blood over a window of
  clamp(1.6 - abv * 0.03, 0.25, 1.6) hours, then stays fully absorbed.
- Elimination: (elimination_rate * TBW) / 0.84 grams per hour, removed from
  the body mass that is currently present (never below zero).
- Concentration: (body_grams / TBW) * 0.84, in promille.
"""

from datetime import datetime, timedelta
from typing import Iterable, List, NamedTuple, Optional

from lobby_bac.drinks import DrinkEvent
from lobby_bac.params import KineticParameters

# Widmark distribution ratio.
WIDMARK_RATIO = 0.84

MAX_ABSORPTION_HOURS = 1.6
MIN_ABSORPTION_HOURS = 0.25
ABSORPTION_HOURS_PER_ABV = 0.03

DEFAULT_STEP_MINUTES = 5.0


class TimelinePoint(NamedTuple):
    at: datetime
    bac: float  # promille


class Timeline(NamedTuple):
    points: List[TimelinePoint]
    current: float


def absorption_duration_hours(abv: float) -> float:
    """Stronger drinks absorb faster; bounded to [0.25, 1.6] hours."""
    raw = MAX_ABSORPTION_HOURS - abv * ABSORPTION_HOURS_PER_ABV
    return min(MAX_ABSORPTION_HOURS, max(MIN_ABSORPTION_HOURS, raw))


def absorbed_fraction(hours_since_drink: float, abv: float) -> float:
    """Fraction (0..1) of a drink's alcohol that has reached the blood."""
    if hours_since_drink <= 0:
        return 0.0
    return min(1.0, hours_since_drink / absorption_duration_hours(abv))


def _hours_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 3600.0


def _drink_sort_key(drink: DrinkEvent):
    return (drink.consumed_at, drink.volume_ml, drink.abv)


def step_delta(step_minutes: float) -> Optional[timedelta]:
    """Simulation step as a timedelta; None when it is too large to represent.

    Raises ValueError for a step that is non-positive or rounds to zero.
    """
    if step_minutes <= 0:
        raise ValueError("step_minutes must be > 0")
    try:
        step = timedelta(minutes=step_minutes)
    except OverflowError:
        return None
    if step <= timedelta(0):
        raise ValueError("step_minutes is below timedelta resolution")
    return step


def simulate(
    params: KineticParameters,
    drinks: Iterable[DrinkEvent],
    start: datetime,
    end: datetime,
    step_minutes: float = DEFAULT_STEP_MINUTES,
) -> Timeline:
    """Step from start to end and return the BAC timeline for one person.

    The first point is always (start, 0.0). The last step is clipped to end.
    If end is before start the result is a single zero point at end.
    """
    step = step_delta(step_minutes)
    if end < start:
        return Timeline([TimelinePoint(end, 0.0)], 0.0)

    ordered = sorted(drinks, key=_drink_sort_key)
    tbw = params.tbw
    elimination_grams_per_hour = (params.elimination_rate * tbw) / WIDMARK_RATIO

    body_grams = 0.0
    points = [TimelinePoint(start, 0.0)]
    t0 = start
    while t0 < end:
        # clip before adding; t0 + step can overflow datetime near end
        t1 = end if step is None or end - t0 <= step else t0 + step
        absorbed = 0.0
        for drink in ordered:
            before = absorbed_fraction(_hours_between(drink.consumed_at, t0), drink.abv)
            after = absorbed_fraction(_hours_between(drink.consumed_at, t1), drink.abv)
            absorbed += drink.alcohol_grams * max(0.0, after - before)
        eliminated = elimination_grams_per_hour * _hours_between(t0, t1)
        body_grams = max(0.0, body_grams + absorbed - eliminated)
        points.append(TimelinePoint(t1, max(0.0, (body_grams / tbw) * WIDMARK_RATIO)))
        t0 = t1

    return Timeline(points, points[-1].bac)


def peak_point(timeline: Timeline) -> Optional[TimelinePoint]:
    """Highest point of the timeline; the earliest one wins ties."""
    best = None
    for point in timeline.points:
        if best is None or point.bac > best.bac:
            best = point
    return best
