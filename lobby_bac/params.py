"""Per-person kinetic parameters: total body water and elimination rate.

Watson-style TBW formulas by sex category. The sex category is free text and
is classified by case-insensitive substring match; anything that is neither
"female" nor "male" uses the sex-neutral formula.
"""

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

LB_PER_KG = 2.20462
MIN_WEIGHT_KG = 40.0
MIN_AGE = 18
MIN_TBW = 20.0

# Elimination rate bounds (promille per hour).
MIN_ELIMINATION_RATE = 0.08
MAX_ELIMINATION_RATE = 0.20

FEMALE_ELIMINATION_RATE = 0.15
MALE_ELIMINATION_RATE = 0.13
NEUTRAL_ELIMINATION_RATE = 0.14


@dataclass(frozen=True)
class KineticParameters:
    tbw: float  # litres
    elimination_rate: float  # promille per hour

    def __post_init__(self):
        object.__setattr__(self, "tbw", max(MIN_TBW, float(self.tbw)))
        rate = min(MAX_ELIMINATION_RATE, max(MIN_ELIMINATION_RATE, float(self.elimination_rate)))
        object.__setattr__(self, "elimination_rate", rate)


# Population-average parameters used when none have been derived yet.
FALLBACK_PARAMETERS = KineticParameters(tbw=40.0, elimination_rate=NEUTRAL_ELIMINATION_RATE)


@dataclass(frozen=True)
class Person:
    user_id: int
    weight: float
    age: int
    sex: str
    weight_unit: str = "lb"

    @property
    def weight_lb(self) -> float:
        if self.weight_unit.strip().lower() in {"kg", "kgs", "kilogram", "kilograms"}:
            return self.weight * LB_PER_KG
        return self.weight


def classify_sex(sex: Optional[str]) -> str:
    """Return 'female', 'male' or 'neutral'. 'female' is checked first since it contains 'male'."""
    lowered = (sex or "").lower()
    if "female" in lowered:
        return "female"
    if "male" in lowered:
        return "male"
    return "neutral"


def resolve_parameters(weight_lb: float, age: float, sex: Optional[str]) -> KineticParameters:
    """Derive TBW (L) and elimination rate (promille/h). Malformed inputs are clamped."""
    weight_kg = max(MIN_WEIGHT_KG, weight_lb / LB_PER_KG)
    age = max(MIN_AGE, age)
    branch = classify_sex(sex)

    if branch == "female":
        return KineticParameters(
            tbw=max(MIN_TBW, 14.46 + 0.2549 * weight_kg),
            elimination_rate=FEMALE_ELIMINATION_RATE,
        )
    if branch == "male":
        return KineticParameters(
            tbw=max(MIN_TBW, 20.03 - 0.1183 * age + 0.3626 * weight_kg),
            elimination_rate=MALE_ELIMINATION_RATE,
        )
    return KineticParameters(
        tbw=max(MIN_TBW, 17.25 + 0.308 * weight_kg),
        elimination_rate=NEUTRAL_ELIMINATION_RATE,
    )


def parameters_for_person(person: Person) -> KineticParameters:
    return resolve_parameters(person.weight_lb, person.age, person.sex)


def parameters_or_fallback(params_by_user: Mapping[int, KineticParameters], user_id: int) -> KineticParameters:
    params = params_by_user.get(user_id)
    if params is None:
        logger.debug("No kinetic parameters for user %s, using fallback", user_id)
        return FALLBACK_PARAMETERS
    return params
