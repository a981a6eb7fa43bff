"""Tests for lobby snapshots, chart output, and the BAC sync policy."""
from datetime import datetime, timedelta, timezone

import pytest

from lobby_bac.calculations import simulate
from lobby_bac.drinks import DrinkEvent
from lobby_bac.graph import chart_series, save_lobby_graph
from lobby_bac.params import FALLBACK_PARAMETERS, resolve_parameters
from lobby_bac.snapshot import MIN_DISPLAY_Y, Member, build_snapshot, group_drinks_by_member
from lobby_bac.sync import SyncState, should_sync

T0 = datetime(2026, 3, 14, 20, 0, tzinfo=timezone.utc)


def drink(user_id, at, volume_ml=330, abv=5):
    return DrinkEvent(user_id=user_id, name="Drink", volume_ml=volume_ml, abv=abv, consumed_at=at)


def test_snapshot_ranks_drinker_first():
    members = [Member(1, "Sober Sam"), Member(2, "Party Pat")]
    drinks = group_drinks_by_member([drink(2, T0), drink(2, T0 + timedelta(minutes=10))])
    snap = build_snapshot(members, drinks, {}, T0 + timedelta(minutes=45))
    assert [m.user_id for m in snap.ranked] == [2, 1]
    assert snap.ranked[0].bac > 0
    assert snap.ranked[1].bac == 0.0
    assert snap.max_display_y >= MIN_DISPLAY_Y
    assert {p.user_id for p in snap.chart_points} == {1, 2}


def test_snapshot_without_drinks_suppresses_chart():
    members = [Member(1, "bob"), Member(2, "Alice")]
    snap = build_snapshot(members, {}, {}, T0)
    assert snap.chart_points == []
    assert snap.max_display_y == MIN_DISPLAY_Y
    assert snap.start == T0
    assert [m.nickname for m in snap.ranked] == ["Alice", "bob"]


def test_snapshot_uses_lobby_wide_start():
    members = [Member(1, "Early"), Member(2, "Late")]
    drinks = group_drinks_by_member([drink(1, T0), drink(2, T0 + timedelta(hours=1))])
    snap = build_snapshot(members, drinks, {}, T0 + timedelta(hours=2))
    assert snap.start == T0
    late_points = [p for p in snap.chart_points if p.user_id == 2]
    assert late_points[0].at == T0
    assert late_points[0].bac == 0.0


def test_snapshot_start_ignores_drinks_of_departed_members():
    members = [Member(1, "Stayed")]
    drinks = group_drinks_by_member([drink(1, T0 + timedelta(hours=1)), drink(9, T0)])
    snap = build_snapshot(members, drinks, {}, T0 + timedelta(hours=2))
    assert snap.start == T0 + timedelta(hours=1)
    assert {p.user_id for p in snap.chart_points} == {1}

    alone = build_snapshot(members, group_drinks_by_member([drink(9, T0)]), {}, T0 + timedelta(hours=2))
    assert alone.start == T0 + timedelta(hours=2)
    assert alone.chart_points == []


def test_snapshot_uses_cached_or_fallback_params():
    members = [Member(1, "Cached"), Member(2, "Fallback")]
    params = {1: resolve_parameters(200, 30, "male")}
    raw = [drink(1, T0), drink(2, T0)]
    query = T0 + timedelta(minutes=30)
    snap = build_snapshot(members, group_drinks_by_member(raw), params, query)
    by_id = {m.user_id: m.bac for m in snap.ranked}
    assert by_id[1] == simulate(params[1], [raw[0]], T0, query).current
    assert by_id[2] == simulate(FALLBACK_PARAMETERS, [raw[1]], T0, query).current


def test_snapshot_ties_sorted_case_insensitive():
    members = [Member(1, "zoe"), Member(2, "Yann"), Member(3, "  ")]
    snap = build_snapshot(members, {}, {}, T0)
    assert [m.nickname for m in snap.ranked] == ["Member", "Yann", "zoe"]


def test_chart_series_groups_points_in_rank_order():
    members = [Member(1, "A"), Member(2, "B")]
    drinks = group_drinks_by_member([drink(2, T0)])
    snap = build_snapshot(members, drinks, {}, T0 + timedelta(minutes=20), step_minutes=10)
    series = chart_series(snap)
    assert [s["user_id"] for s in series] == [2, 1]
    assert len(series[0]["points"]) == 3
    assert series[0]["points"][0] == {"t": "2026-03-14T20:00:00.000000+00:00", "bac": 0.0}


def test_save_lobby_graph(tmp_path):
    pytest.importorskip("matplotlib")
    members = [Member(1, "A"), Member(2, "B")]
    drinks = group_drinks_by_member([drink(1, T0), drink(2, T0 + timedelta(minutes=5), volume_ml=150, abv=12)])
    snap = build_snapshot(members, drinks, {}, T0 + timedelta(hours=1))
    out = save_lobby_graph(snap, output_path=str(tmp_path / "graphs" / "lobby.png"))
    assert (tmp_path / "graphs" / "lobby.png").exists()
    assert out.endswith("lobby.png")


def test_should_sync_noise_floor_checked_after_rate_limit():
    assert should_sync(T0, 0.05, T0 + timedelta(seconds=300), 0.052) is False


def test_should_sync_rules():
    assert should_sync(None, None, T0, 0.0) is True
    assert should_sync(T0, 0.05, T0 + timedelta(seconds=10), 0.05, force=True) is True
    assert should_sync(T0, 0.0, T0 + timedelta(seconds=239), 0.5) is False
    assert should_sync(T0, 0.05, T0 + timedelta(seconds=240), 0.06) is True
    assert should_sync(T0, None, T0 + timedelta(seconds=300), 0.0) is True


def test_sync_state_roundtrip():
    state = SyncState().recorded(T0, 0.123)
    assert state.allows(T0 + timedelta(seconds=60), 0.5) is False
    restored = SyncState.from_dict(state.to_dict())
    assert restored == state
    assert SyncState.from_dict("garbage") == SyncState()
    assert SyncState.from_dict({"at": "nope", "value": "x"}) == SyncState()


def test_cli_demo_prints_ranking(monkeypatch, capsys):
    from lobby_bac.main import main

    monkeypatch.setattr("sys.argv", ["lobby_bac", "--hours", "1", "--step-minutes", "10"])
    assert main() == 0
    out = capsys.readouterr().out
    assert out.startswith("1. ")
    assert "Designated driver: 0.000" in out
    assert "Your peak: " in out


def test_cli_demo_accepts_kg(monkeypatch, capsys):
    from lobby_bac.main import main

    monkeypatch.setattr("sys.argv", ["lobby_bac", "--weight", "72", "--weight-unit", "kg", "--hours", "1"])
    assert main() == 0
    assert "Your peak: " in capsys.readouterr().out
