"""Decide when a freshly computed BAC is worth writing back to storage.

Rules, in order: force always syncs; never synced yet syncs; a sync within
the last SYNC_MIN_INTERVAL_SECONDS is skipped; a change smaller than
SYNC_MIN_DELTA is skipped; anything else syncs.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from lobby_bac.drinks import format_timestamp, parse_timestamp

# Tunable policy constants, not physically derived.
SYNC_MIN_INTERVAL_SECONDS = 240.0
SYNC_MIN_DELTA = 0.005


def should_sync(
    last_synced_at: Optional[datetime],
    last_synced_value: Optional[float],
    candidate_time: datetime,
    candidate_value: float,
    force: bool = False,
) -> bool:
    if force:
        return True
    if last_synced_at is None:
        return True
    if (candidate_time - last_synced_at).total_seconds() < SYNC_MIN_INTERVAL_SECONDS:
        return False
    if last_synced_value is not None and abs(last_synced_value - candidate_value) < SYNC_MIN_DELTA:
        return False
    return True


@dataclass(frozen=True)
class SyncState:
    """Last successful sync for one (member, lobby) pair. Owned by the caller."""

    last_synced_at: Optional[datetime] = None
    last_synced_value: Optional[float] = None

    def allows(self, candidate_time: datetime, candidate_value: float, force: bool = False) -> bool:
        return should_sync(self.last_synced_at, self.last_synced_value, candidate_time, candidate_value, force)

    def recorded(self, at: datetime, value: float) -> "SyncState":
        return SyncState(last_synced_at=at, last_synced_value=value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "at": format_timestamp(self.last_synced_at) if self.last_synced_at else None,
            "value": self.last_synced_value,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "SyncState":
        if not isinstance(raw, dict):
            return cls()
        value = raw.get("value")
        try:
            value = float(value) if value is not None else None
        except (TypeError, ValueError):
            value = None
        return cls(last_synced_at=parse_timestamp(raw.get("at")), last_synced_value=value)
