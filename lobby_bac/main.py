"""
Lobby BAC CLI demo. Run from project root: python -m lobby_bac.main
Builds a sample two-member lobby, prints the ranking, and optionally saves a graph.
"""

import argparse
import logging
import sys
from datetime import datetime, timedelta, timezone

from lobby_bac.calculations import peak_point, simulate
from lobby_bac.drinks import DRINK_PRESETS, DrinkEvent
from lobby_bac.graph import save_lobby_graph
from lobby_bac.params import Person, parameters_for_person
from lobby_bac.snapshot import Member, build_snapshot, group_drinks_by_member


def _preset_drink(user_id: int, key: str, at: datetime) -> DrinkEvent:
    preset = DRINK_PRESETS[key]
    return DrinkEvent(user_id=user_id, name=preset.name, volume_ml=preset.volume_ml, abv=preset.abv, consumed_at=at)


def main():
    parser = argparse.ArgumentParser(description="Lobby BAC: simulate a sample lobby and rank members")
    parser.add_argument("--weight", type=float, default=160.0, help="Body weight of the first member")
    parser.add_argument("--weight-unit", choices=("lb", "kg"), default="lb", help="Unit of --weight")
    parser.add_argument("--age", type=int, default=25, help="Age of the first member")
    parser.add_argument("--sex", type=str, default="male", help="Sex of the first member")
    parser.add_argument("--hours", type=float, default=2.0, help="Hours since the first drink")
    parser.add_argument("--step-minutes", type=float, default=5.0, help="Simulation step (minutes)")
    parser.add_argument("--graph", type=str, metavar="FILE", help="Save lobby graph to FILE (e.g. lobby.png)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    now = datetime.now(timezone.utc)
    first = now - timedelta(hours=args.hours)
    members = [Member(1, "You"), Member(2, "Friend"), Member(3, "Designated driver")]
    drinks = [
        _preset_drink(1, "beer", first),
        _preset_drink(1, "beer", first + timedelta(minutes=30)),
        _preset_drink(2, "wine", first + timedelta(minutes=15)),
        _preset_drink(2, "shot", first + timedelta(minutes=45)),
    ]
    # Member 2 has no derived parameters and uses the fallback.
    you = Person(user_id=1, weight=args.weight, age=args.age, sex=args.sex, weight_unit=args.weight_unit)
    params = {1: parameters_for_person(you)}
    grouped = group_drinks_by_member(drinks)

    try:
        snapshot = build_snapshot(members, grouped, params, now, step_minutes=args.step_minutes)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    for rank, entry in enumerate(snapshot.ranked, start=1):
        print(f"{rank}. {entry.nickname}: {entry.bac:.3f}‰")
    print(f"Chart points: {len(snapshot.chart_points)}, y-axis max {snapshot.max_display_y:.3f}‰")

    peak = peak_point(simulate(params[1], grouped[1], snapshot.start, now, step_minutes=args.step_minutes))
    if peak is not None:
        print(f"Your peak: {peak.bac:.3f}‰ at {peak.at.strftime('%H:%M')} UTC")

    if args.graph:
        try:
            path = save_lobby_graph(snapshot, output_path=args.graph)
            print(f"Graph saved: {path}")
        except ImportError:
            print("matplotlib not installed. pip install matplotlib", file=sys.stderr)
            sys.exit(1)

    return 0


if __name__ == "__main__":
    sys.exit(main() or 0)
