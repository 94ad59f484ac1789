"""Rating recalculation services."""

from .rating import (
    RatingImbalanceError,
    RatingState,
    calculate_k_factor,
    elo_delta,
    expected_score,
)
from .match_edit import edit_match
from .rounds import submit_round

__all__ = [
    "RatingImbalanceError",
    "RatingState",
    "calculate_k_factor",
    "elo_delta",
    "expected_score",
    "edit_match",
    "submit_round",
]
