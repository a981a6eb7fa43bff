"""Drink events and alcohol content helpers for lobby BAC tracking.

Volumes are in millilitres and ABV is a percentage (5.0 for 5%).
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

# Ethanol density (g/mL) for volume x ABV -> grams.
ETHANOL_DENSITY = 0.789


def grams_from_volume_abv(volume_ml: float, abv: float) -> float:
    """Convert millilitres and ABV (0 to 100) to grams of ethanol."""
    return volume_ml * (abv / 100) * ETHANOL_DENSITY


@dataclass(frozen=True)
class DrinkEvent:
    """A single logged drink. Immutable once created."""

    user_id: int
    name: str
    volume_ml: float
    abv: float
    consumed_at: datetime

    @property
    def alcohol_grams(self) -> float:
        return grams_from_volume_abv(self.volume_ml, self.abv)


@dataclass(frozen=True)
class DrinkPreset:
    key: str
    name: str
    volume_ml: float
    abv: float


DRINK_PRESETS = {
    "beer": DrinkPreset("beer", "Beer (330 mL, 5%)", 330.0, 5.0),
    "large-beer": DrinkPreset("large-beer", "Large beer (500 mL, 5%)", 500.0, 5.0),
    "cider": DrinkPreset("cider", "Cider (330 mL, 4.5%)", 330.0, 4.5),
    "seltzer": DrinkPreset("seltzer", "Hard seltzer (355 mL, 5%)", 355.0, 5.0),
    "wine": DrinkPreset("wine", "Wine (150 mL, 12%)", 150.0, 12.0),
    "shot": DrinkPreset("shot", "Shot (40 mL, 40%)", 40.0, 40.0),
}


def list_drink_presets() -> List[Tuple[str, str]]:
    """Return list of (key, name) for UI dropdowns."""
    return [(p.key, p.name) for p in DRINK_PRESETS.values()]


def parse_timestamp(raw) -> Optional[datetime]:
    """Parse ISO-8601 text into an aware UTC datetime, or None if malformed."""
    if isinstance(raw, datetime):
        value = raw
    else:
        if not isinstance(raw, str) or not raw.strip():
            return None
        text = raw.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 text with microseconds, in UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")
