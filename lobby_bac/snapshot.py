"""
Lobby-wide BAC snapshot: one simulated timeline per member, a shared chart,
and a "who is highest right now" ranking.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Sequence

from lobby_bac.calculations import DEFAULT_STEP_MINUTES, simulate
from lobby_bac.drinks import DrinkEvent
from lobby_bac.params import KineticParameters, parameters_or_fallback

# Lowest y-axis ceiling for charts, so near-zero lines are still readable.
MIN_DISPLAY_Y = 0.05

DEFAULT_NICKNAME = "Member"


@dataclass(frozen=True)
class Member:
    user_id: int
    nickname: str

    @property
    def display_name(self) -> str:
        cleaned = (self.nickname or "").strip()
        return cleaned or DEFAULT_NICKNAME


@dataclass(frozen=True)
class MemberSnapshot:
    user_id: int
    nickname: str
    bac: float


@dataclass(frozen=True)
class ChartPoint:
    user_id: int
    at: datetime
    bac: float


@dataclass(frozen=True)
class LobbySnapshot:
    ranked: List[MemberSnapshot]
    chart_points: List[ChartPoint]
    max_display_y: float
    start: datetime
    query_time: datetime


def group_drinks_by_member(drinks: Iterable[DrinkEvent]) -> Dict[int, List[DrinkEvent]]:
    out: Dict[int, List[DrinkEvent]] = {}
    for drink in drinks:
        out.setdefault(drink.user_id, []).append(drink)
    return out


def _ranking_key(snap: MemberSnapshot):
    return (-snap.bac, snap.nickname.lower())


def build_snapshot(
    members: Sequence[Member],
    drinks_by_member: Mapping[int, Sequence[DrinkEvent]],
    params_by_member: Mapping[int, KineticParameters],
    query_time: datetime,
    step_minutes: float = DEFAULT_STEP_MINUTES,
) -> LobbySnapshot:
    """Simulate every member on a common time axis starting at the lobby's first drink."""
    # drinks of users who are no longer members must not move the shared start
    all_drinks = [d for m in members for d in drinks_by_member.get(m.user_id, ())]
    start = min((d.consumed_at for d in all_drinks), default=query_time)
    has_drinks = bool(all_drinks)

    ranked: List[MemberSnapshot] = []
    chart_points: List[ChartPoint] = []
    for member in members:
        params = parameters_or_fallback(params_by_member, member.user_id)
        timeline = simulate(
            params,
            drinks_by_member.get(member.user_id, ()),
            start,
            query_time,
            step_minutes=step_minutes,
        )
        ranked.append(MemberSnapshot(member.user_id, member.display_name, timeline.current))
        if has_drinks:
            chart_points.extend(ChartPoint(member.user_id, p.at, p.bac) for p in timeline.points)

    ranked.sort(key=_ranking_key)
    max_display_y = max([MIN_DISPLAY_Y] + [p.bac for p in chart_points])
    return LobbySnapshot(
        ranked=ranked,
        chart_points=chart_points,
        max_display_y=max_display_y,
        start=start,
        query_time=query_time,
    )
