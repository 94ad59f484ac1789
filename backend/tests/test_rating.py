import math

import pytest

from ladder.services.rating import (
    DEFAULT_INITIAL_RATING,
    RatingImbalanceError,
    RatingState,
    actual_score,
    assert_balanced,
    calculate_k_factor,
    elo_delta,
    expected_score,
    match_result,
    preview,
)


@pytest.mark.parametrize(
    "matches_played, expected",
    [(0, 40.0), (9, 40.0), (9.5, 40.0), (10, 32.0), (39, 32.0), (40, 24.0), (500, 24.0)],
)
def test_k_factor_schedule(matches_played, expected):
    assert calculate_k_factor(matches_played) == expected


def test_k_factor_never_increases_with_experience():
    values = [calculate_k_factor(n) for n in range(0, 100)]
    assert all(a >= b for a, b in zip(values, values[1:]))


def test_expected_scores_are_complementary():
    assert expected_score(1500, 1500) == 0.5
    assert expected_score(1700, 1500) + expected_score(1500, 1700) == pytest.approx(1.0)
    assert expected_score(1900, 1500) == pytest.approx(1 / (1 + 10 ** (-1)))


def test_actual_score_and_match_result():
    assert actual_score("win") == 1.0
    assert actual_score("draw") == 0.5
    assert actual_score("loss") == 0.0
    with pytest.raises(ValueError):
        actual_score("forfeit")

    assert match_result(11, 5) == "win"
    assert match_result(5, 11) == "loss"
    assert match_result(7, 7) == "draw"


def test_delta_for_new_players_is_unrounded():
    assert elo_delta(1500, 1500, "win", 0) == 20.0
    assert elo_delta(1500, 1500, "loss", 0) == -20.0
    assert elo_delta(1500, 1500, "draw", 0) == 0.0

    delta = elo_delta(1523, 1488, "win", 3)
    assert delta == 40 * (1 - expected_score(1523, 1488))
    assert delta != round(delta, 2)


def test_singles_deltas_are_symmetric_with_equal_experience():
    win = elo_delta(1612.5, 1544.25, "win", 17)
    loss = elo_delta(1544.25, 1612.5, "loss", 17)
    assert math.isclose(win, -loss, abs_tol=1e-9)


def test_singles_deltas_differ_with_unequal_experience():
    win = elo_delta(1500, 1500, "win", 0)
    loss = elo_delta(1500, 1500, "loss", 45)
    assert win + loss == pytest.approx(20.0 - 12.0)


def test_assert_balanced():
    assert_balanced(12.5, -12.5)
    assert_balanced(12.5, -12.495)
    with pytest.raises(RatingImbalanceError) as exc:
        assert_balanced(20.0, -16.0)
    assert exc.value.delta_1 == 20.0
    assert exc.value.delta_2 == -16.0


def test_rating_state_apply_tracks_binary_sets():
    state = RatingState.initial()
    assert state.elo == DEFAULT_INITIAL_RATING

    state.apply(20.0, "win")
    state.apply(-5.5, "loss")
    state.apply(0.25, "draw")

    assert state.elo == 1514.75
    assert state.matches_played == 3
    assert (state.wins, state.losses, state.draws) == (1, 1, 1)
    assert (state.sets_won, state.sets_lost) == (1, 1)
    assert state.matches_played == state.wins + state.losses + state.draws


def test_rating_state_copy_is_independent():
    state = RatingState(elo=1600.0, matches_played=4, wins=4, sets_won=4)
    clone = state.copy()
    clone.apply(10.0, "win")
    assert state.elo == 1600.0
    assert clone == RatingState(elo=1610.0, matches_played=5, wins=5, sets_won=5)


def test_preview_uses_shared_k_factor():
    result = preview(1500, 1500, 0)
    assert result == {
        "kFactor": 40.0,
        "expectedScore": 0.5,
        "win": 20.0,
        "draw": 0.0,
        "loss": -20.0,
    }
    veteran = preview(1500, 1500, 45)
    assert veteran["kFactor"] == 24.0
    assert veteran["win"] == 12.0
