"""Tests for BAC parameters, absorption, and timeline simulation. Run from project root: pytest tests/ -v"""
from datetime import datetime, timedelta, timezone

import pytest

from lobby_bac.calculations import (
    absorbed_fraction,
    absorption_duration_hours,
    peak_point,
    simulate,
    step_delta,
)
from lobby_bac.drinks import DrinkEvent, grams_from_volume_abv, parse_timestamp
from lobby_bac.params import (
    FALLBACK_PARAMETERS,
    KineticParameters,
    Person,
    classify_sex,
    parameters_for_person,
    parameters_or_fallback,
    resolve_parameters,
)

T0 = datetime(2026, 3, 14, 20, 0, tzinfo=timezone.utc)


def beer(at, user_id=1):
    return DrinkEvent(user_id=user_id, name="Beer", volume_ml=330, abv=5, consumed_at=at)


def test_grams_from_volume_abv():
    assert grams_from_volume_abv(330, 5) == pytest.approx(13.0185)
    assert beer(T0).alcohol_grams == pytest.approx(13.0185)


def test_parse_timestamp_variants():
    assert parse_timestamp("2026-03-14T20:00:00Z") == T0
    assert parse_timestamp("2026-03-14T20:00:00.000000+00:00") == T0
    assert parse_timestamp("2026-03-14T21:00:00+01:00") == T0
    assert parse_timestamp("2026-03-14T20:00:00") == T0
    assert parse_timestamp("not a date") is None
    assert parse_timestamp(None) is None


def test_classify_sex_substring_match():
    assert classify_sex("Female") == "female"
    assert classify_sex("FEMALE") == "female"
    assert classify_sex("male") == "male"
    assert classify_sex("Cis Male") == "male"
    assert classify_sex("nonbinary") == "neutral"
    assert classify_sex("") == "neutral"
    assert classify_sex(None) == "neutral"


def test_resolve_parameters_by_sex():
    weight_kg = 160 / 2.20462
    male = resolve_parameters(160, 25, "male")
    assert male.tbw == pytest.approx(20.03 - 0.1183 * 25 + 0.3626 * weight_kg)
    assert male.elimination_rate == 0.13

    female = resolve_parameters(160, 25, "female")
    assert female.tbw == pytest.approx(14.46 + 0.2549 * weight_kg)
    assert female.elimination_rate == 0.15

    neutral = resolve_parameters(160, 25, "prefer not to say")
    assert neutral.tbw == pytest.approx(17.25 + 0.308 * weight_kg)
    assert neutral.elimination_rate == 0.14


def test_resolve_parameters_clamps_weight_and_age():
    assert resolve_parameters(10, 30, "female").tbw == pytest.approx(14.46 + 0.2549 * 40)
    assert resolve_parameters(160, 5, "male") == resolve_parameters(160, 18, "male")


def test_resolve_parameters_is_pure():
    assert resolve_parameters(180, 40, "Male") == resolve_parameters(180, 40, "Male")


def test_kinetic_parameters_bounds():
    params = KineticParameters(tbw=5, elimination_rate=0.5)
    assert params.tbw == 20.0
    assert params.elimination_rate == 0.20
    assert KineticParameters(tbw=40, elimination_rate=0.01).elimination_rate == 0.08


def test_person_weight_in_kg_is_normalized():
    in_kg = Person(user_id=1, weight=80, age=30, sex="male", weight_unit="kg")
    in_lb = Person(user_id=1, weight=80 * 2.20462, age=30, sex="male")
    assert parameters_for_person(in_kg).tbw == pytest.approx(parameters_for_person(in_lb).tbw)


def test_parameters_or_fallback():
    params = KineticParameters(tbw=45, elimination_rate=0.13)
    assert parameters_or_fallback({1: params}, 1) is params
    assert parameters_or_fallback({1: params}, 2) == FALLBACK_PARAMETERS
    assert FALLBACK_PARAMETERS == KineticParameters(tbw=40, elimination_rate=0.14)


def test_absorption_duration_bounds():
    assert absorption_duration_hours(5) == pytest.approx(1.45)
    assert absorption_duration_hours(0) == 1.6
    assert absorption_duration_hours(40) == pytest.approx(0.4)
    assert absorption_duration_hours(60) == 0.25


def test_absorbed_fraction_ramp_and_saturation():
    duration = absorption_duration_hours(5)
    assert absorbed_fraction(0, 5) == 0.0
    assert absorbed_fraction(-1, 5) == 0.0
    assert absorbed_fraction(duration / 2, 5) == pytest.approx(0.5)
    assert absorbed_fraction(duration, 5) == 1.0
    assert absorbed_fraction(10, 5) == 1.0

    previous = 0.0
    for i in range(0, 200):
        value = absorbed_fraction(i * 0.01, 12)
        assert 0.0 <= value <= 1.0
        assert value >= previous
        previous = value


def test_simulate_query_at_drink_time_is_zero():
    timeline = simulate(FALLBACK_PARAMETERS, [beer(T0)], T0, T0)
    assert timeline.points == [(T0, 0.0)]
    assert timeline.current == 0.0


def test_simulate_single_beer_eliminated_after_two_hours():
    timeline = simulate(FALLBACK_PARAMETERS, [beer(T0)], T0, T0 + timedelta(hours=2))
    assert timeline.current == 0.0
    assert peak_point(timeline).bac > 0


def test_simulate_exact_single_step():
    shot = DrinkEvent(user_id=1, name="Shot", volume_ml=40, abv=40, consumed_at=T0)
    timeline = simulate(FALLBACK_PARAMETERS, [shot], T0, T0 + timedelta(hours=1), step_minutes=60)
    grams = 40 * 0.4 * 0.789
    expected = ((grams - (0.14 * 40 / 0.84)) / 40) * 0.84
    assert len(timeline.points) == 2
    assert timeline.current == pytest.approx(expected)


def test_simulate_end_before_start():
    end = T0 - timedelta(minutes=10)
    timeline = simulate(FALLBACK_PARAMETERS, [beer(T0)], T0, end)
    assert timeline.points == [(end, 0.0)]
    assert timeline.current == 0.0


def test_simulate_rejects_non_positive_step():
    with pytest.raises(ValueError):
        simulate(FALLBACK_PARAMETERS, [], T0, T0 + timedelta(hours=1), step_minutes=0)
    with pytest.raises(ValueError):
        simulate(FALLBACK_PARAMETERS, [], T0, T0 + timedelta(hours=1), step_minutes=-5)


def test_simulate_rejects_step_below_timedelta_resolution():
    with pytest.raises(ValueError):
        simulate(FALLBACK_PARAMETERS, [], T0, T0 + timedelta(hours=1), step_minutes=1e-9)
    with pytest.raises(ValueError):
        step_delta(1e-9)


def test_simulate_huge_step_clips_to_end_without_overflow():
    end = T0 + timedelta(hours=2)
    for step_minutes in (1e12, 1e20, float("inf")):
        timeline = simulate(FALLBACK_PARAMETERS, [beer(T0)], T0, end, step_minutes=step_minutes)
        assert [p.at for p in timeline.points] == [T0, end]
    assert step_delta(1e20) is None


def test_simulate_fractional_step_keeps_uniform_spacing():
    end = T0 + timedelta(minutes=10)
    timeline = simulate(FALLBACK_PARAMETERS, [beer(T0)], T0, end, step_minutes=7 / 3)
    assert [p.at for p in timeline.points] == [T0 + timedelta(seconds=s) for s in (0, 140, 280, 420, 560, 600)]
    gaps = [b.at - a.at for a, b in zip(timeline.points, timeline.points[1:])]
    assert gaps[:-1] == [timedelta(minutes=7 / 3)] * 4
    assert gaps[-1] == timedelta(seconds=40)


def test_simulate_linear_elimination_after_absorption():
    end = T0 + timedelta(hours=3)
    timeline = simulate(FALLBACK_PARAMETERS, [beer(T0)], T0, end, step_minutes=5)
    absorbed_at = T0 + timedelta(hours=absorption_duration_hours(5))
    tail = [p.bac for p in timeline.points if p.at >= absorbed_at]
    assert tail[0] > 0

    per_step = FALLBACK_PARAMETERS.elimination_rate * 5 / 60
    reached_zero = False
    for before, after in zip(tail, tail[1:]):
        if reached_zero:
            assert after == 0.0
        elif after > 0:
            assert before - after > 0
            assert before - after == pytest.approx(per_step)
        else:
            reached_zero = True
    assert reached_zero
    assert tail[-1] == 0.0


def test_simulate_clips_last_step():
    timeline = simulate(FALLBACK_PARAMETERS, [], T0, T0 + timedelta(minutes=7), step_minutes=5)
    assert [p.at for p in timeline.points] == [
        T0,
        T0 + timedelta(minutes=5),
        T0 + timedelta(minutes=7),
    ]


def test_simulate_is_deterministic_and_order_independent():
    drinks = [
        beer(T0 + timedelta(minutes=40)),
        DrinkEvent(user_id=1, name="Wine", volume_ml=150, abv=12, consumed_at=T0),
        beer(T0 + timedelta(minutes=10)),
    ]
    end = T0 + timedelta(hours=3)
    first = simulate(FALLBACK_PARAMETERS, drinks, T0, end)
    again = simulate(FALLBACK_PARAMETERS, drinks, T0, end)
    reordered = simulate(FALLBACK_PARAMETERS, list(reversed(drinks)), T0, end)
    assert first == again
    assert first == reordered


def test_simulate_never_negative_and_rises_then_falls():
    drinks = [beer(T0), beer(T0 + timedelta(minutes=20)), beer(T0 + timedelta(minutes=40))]
    timeline = simulate(resolve_parameters(150, 22, "female"), drinks, T0, T0 + timedelta(hours=8))
    assert all(p.bac >= 0 for p in timeline.points)
    peak = peak_point(timeline)
    assert peak.bac > 0
    assert T0 < peak.at < T0 + timedelta(hours=3)
    assert timeline.current == 0.0


def test_simulate_without_drinks_stays_at_zero():
    timeline = simulate(FALLBACK_PARAMETERS, [], T0, T0 + timedelta(hours=2))
    assert len(timeline.points) == 25
    assert all(p.bac == 0.0 for p in timeline.points)


def test_simulate_elimination_cannot_borrow_against_future_drink():
    later = beer(T0 + timedelta(hours=3))
    timeline = simulate(FALLBACK_PARAMETERS, [later], T0, T0 + timedelta(hours=4))
    with_gap = [p.bac for p in timeline.points if p.at > later.consumed_at]
    assert max(with_gap) > 0


def test_simulate_future_drink_not_absorbed():
    future = beer(T0 + timedelta(hours=5))
    timeline = simulate(FALLBACK_PARAMETERS, [future], T0, T0 + timedelta(hours=1))
    assert all(p.bac == 0.0 for p in timeline.points)
