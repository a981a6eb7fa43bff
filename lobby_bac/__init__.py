"""
Lobby BAC tracker: absorption/elimination simulation, lobby snapshots, and sync policy.
Use from project root: python -m lobby_bac.main
"""

from lobby_bac.drinks import (
    DRINK_PRESETS,
    DrinkEvent,
    grams_from_volume_abv,
    list_drink_presets,
)
from lobby_bac.params import (
    FALLBACK_PARAMETERS,
    KineticParameters,
    Person,
    parameters_for_person,
    resolve_parameters,
)
from lobby_bac.calculations import (
    Timeline,
    TimelinePoint,
    absorbed_fraction,
    absorption_duration_hours,
    simulate,
)
from lobby_bac.snapshot import LobbySnapshot, Member, MemberSnapshot, build_snapshot
from lobby_bac.sync import SyncState, should_sync
from lobby_bac.graph import chart_series, save_lobby_graph

__all__ = [
    "DrinkEvent",
    "grams_from_volume_abv",
    "list_drink_presets",
    "DRINK_PRESETS",
    "KineticParameters",
    "FALLBACK_PARAMETERS",
    "Person",
    "resolve_parameters",
    "parameters_for_person",
    "Timeline",
    "TimelinePoint",
    "absorbed_fraction",
    "absorption_duration_hours",
    "simulate",
    "Member",
    "MemberSnapshot",
    "LobbySnapshot",
    "build_snapshot",
    "SyncState",
    "should_sync",
    "chart_series",
    "save_lobby_graph",
]
