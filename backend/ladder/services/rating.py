"""Elo rating primitives shared by round submission, match edits and previews.

Everything here is pure: no database access, no logging. Deltas are kept at
full float precision; rounding is a display concern.
"""

import math
from dataclasses import dataclass, fields
from typing import Literal

MatchResult = Literal["win", "loss", "draw"]

DEFAULT_INITIAL_RATING = 1500.0
DEFAULT_INITIAL_EXPERIENCE = 0

ELO_SCALE = 400.0
# (upper bound on matches played, K); the last entry applies to everyone else
K_FACTOR_SCHEDULE: tuple[tuple[int, float], ...] = ((10, 40.0), (40, 32.0))
K_FACTOR_FLOOR = 24.0

DOUBLES_BALANCE_TOLERANCE = 0.01


class RatingImbalanceError(ValueError):
    """Raised when paired player-doubles deltas do not cancel out."""

    def __init__(self, delta_1: float, delta_2: float) -> None:
        super().__init__(
            f"player doubles deltas do not balance: {delta_1!r} + {delta_2!r} = {delta_1 + delta_2!r}"
        )
        self.delta_1 = delta_1
        self.delta_2 = delta_2


@dataclass
class RatingState:
    """Rating record of one entity (player or team) in one rating space."""

    elo: float = DEFAULT_INITIAL_RATING
    matches_played: int = DEFAULT_INITIAL_EXPERIENCE
    wins: int = 0
    losses: int = 0
    draws: int = 0
    sets_won: int = 0
    sets_lost: int = 0

    @classmethod
    def initial(cls) -> "RatingState":
        return cls()

    @classmethod
    def from_row(cls, row) -> "RatingState":
        """Build a state from any object exposing the rating columns."""
        return cls(
            elo=float(row.elo),
            matches_played=int(row.matches_played or 0),
            wins=int(row.wins or 0),
            losses=int(row.losses or 0),
            draws=int(row.draws or 0),
            sets_won=int(row.sets_won or 0),
            sets_lost=int(row.sets_lost or 0),
        )

    def copy(self) -> "RatingState":
        return RatingState(**self.as_dict())

    def as_dict(self) -> dict[str, float | int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def apply(self, delta: float, result: MatchResult) -> None:
        """Record one finished match.

        ``sets_won``/``sets_lost`` count match outcomes: the winner gets one
        set won, the loser one set lost, a draw touches neither.
        """
        self.elo += delta
        self.matches_played += 1
        if result == "win":
            self.wins += 1
            self.sets_won += 1
        elif result == "loss":
            self.losses += 1
            self.sets_lost += 1
        else:
            self.draws += 1


def calculate_k_factor(matches_played: float) -> float:
    """Return K for an entity with ``matches_played`` prior matches.

    New players move fast (K=40 for the first 10 matches), settle at K=32 up
    to 40 matches, and K=24 afterwards. Fractional counts are accepted because
    doubles pairs use the average experience of both teammates.
    """

    for upper_bound, k in K_FACTOR_SCHEDULE:
        if matches_played < upper_bound:
            return k
    return K_FACTOR_FLOOR


def expected_score(rating: float, opponent_rating: float) -> float:
    return 1.0 / (1.0 + math.pow(10.0, (opponent_rating - rating) / ELO_SCALE))


def actual_score(result: MatchResult) -> float:
    if result == "win":
        return 1.0
    if result == "loss":
        return 0.0
    if result == "draw":
        return 0.5
    raise ValueError(f"unknown match result: {result!r}")


def match_result(score: float, opponent_score: float) -> MatchResult:
    if score > opponent_score:
        return "win"
    if score < opponent_score:
        return "loss"
    return "draw"


def elo_delta(
    rating: float,
    opponent_rating: float,
    result: MatchResult,
    matches_played: float,
) -> float:
    """Return the rating change ``K * (actual - expected)``, unrounded."""

    k = calculate_k_factor(matches_played)
    return k * (actual_score(result) - expected_score(rating, opponent_rating))


def assert_balanced(
    delta_1: float, delta_2: float, tolerance: float = DOUBLES_BALANCE_TOLERANCE
) -> None:
    if abs(delta_1 + delta_2) > tolerance:
        raise RatingImbalanceError(delta_1, delta_2)


def preview(rating: float, opponent_rating: float, matches_played: float) -> dict[str, float]:
    """Return K, expected score and the delta for every possible result."""

    return {
        "kFactor": calculate_k_factor(matches_played),
        "expectedScore": expected_score(rating, opponent_rating),
        "win": elo_delta(rating, opponent_rating, "win", matches_played),
        "draw": elo_delta(rating, opponent_rating, "draw", matches_played),
        "loss": elo_delta(rating, opponent_rating, "loss", matches_played),
    }
