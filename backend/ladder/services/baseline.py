"""Resolve every participant's rating state as it was before a session began.

Resolution order, first match wins:

1. the end snapshot of the most recent earlier session,
2. this session's start snapshot,
3. the durable rating minus this session's recorded deltas and match counts,
4. the default rating for players who have never been rated.

Everything is read before the replay deletes any history, and the result is
held in memory for the rest of the recalculation.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    DOUBLES,
    ENTITY_PLAYER_DOUBLES,
    ENTITY_PLAYER_SINGLES,
    MATCH_COMPLETED,
    MatchEloHistory,
    RATING_TABLES,
    SessionMatch,
)
from .rating import RatingState, match_result
from .snapshots import get_previous_session_snapshot, get_session_start_snapshot

logger = logging.getLogger(__name__)

SOURCE_PREVIOUS_SESSION = "previous_session_snapshot"
SOURCE_SESSION_START = "session_start_snapshot"
SOURCE_REVERSE_COMPUTED = "reverse_computed"
SOURCE_INITIAL_DEFAULT = "initial_default"


@dataclass
class Baselines:
    entity_type: str
    states: dict[str, RatingState] = field(default_factory=dict)
    sources: dict[str, str] = field(default_factory=dict)

    def get(self, entity_id: str) -> RatingState:
        state = self.states.get(entity_id)
        return state.copy() if state is not None else RatingState.initial()


def participants(matches: Iterable[SessionMatch], match_type: str) -> list[str]:
    """Player ids appearing in matches of ``match_type``, in first-seen order."""
    seen: dict[str, None] = {}
    for match in matches:
        if match.match_type != match_type:
            continue
        for player_id in match.player_ids or []:
            seen.setdefault(player_id, None)
    return list(seen)


def _session_deltas(
    entity_type: str,
    matches: Sequence[SessionMatch],
    history: Sequence[MatchEloHistory],
) -> dict[str, float]:
    totals: dict[str, float] = {}
    if entity_type == ENTITY_PLAYER_SINGLES:
        for row in history:
            for player_id, delta in (
                (row.player1_id, row.player1_elo_delta),
                (row.player2_id, row.player2_elo_delta),
            ):
                if player_id is not None and delta is not None:
                    totals[player_id] = totals.get(player_id, 0.0) + delta
        return totals

    by_id = {match.id: match for match in matches}
    for row in history:
        match = by_id.get(row.match_id)
        if match is None:
            continue
        side_1, side_2 = match.sides()
        for side, delta in (
            (side_1, row.player_doubles_team1_delta),
            (side_2, row.player_doubles_team2_delta),
        ):
            if delta is None:
                continue
            for player_id in side:
                totals[player_id] = totals.get(player_id, 0.0) + delta
    return totals


def _session_counts(matches: Sequence[SessionMatch]) -> dict[str, RatingState]:
    """Per-player counts contributed by this session's completed matches."""

    counts: dict[str, RatingState] = {}
    for match in matches:
        scores = match.scores()
        if match.status != MATCH_COMPLETED or scores is None:
            continue
        side_1, side_2 = match.sides()
        for side, (own, other) in ((side_1, scores), (side_2, scores[::-1])):
            result = match_result(own, other)
            for player_id in side:
                state = counts.setdefault(player_id, RatingState(elo=0.0))
                state.apply(0.0, result)
    return counts


def reverse_compute(
    durable: RatingState,
    session_delta: float,
    session_counts: RatingState | None,
) -> RatingState:
    """Strip this session's contribution off a durable rating.

    Counts never go below zero, even when the durable row was written by an
    older, inconsistent recalculation.
    """

    counts = session_counts or RatingState(elo=0.0)
    return RatingState(
        elo=durable.elo - session_delta,
        matches_played=max(0, durable.matches_played - counts.matches_played),
        wins=max(0, durable.wins - counts.wins),
        losses=max(0, durable.losses - counts.losses),
        draws=max(0, durable.draws - counts.draws),
        sets_won=max(0, durable.sets_won - counts.sets_won),
        sets_lost=max(0, durable.sets_lost - counts.sets_lost),
    )


async def load_baselines(
    session: AsyncSession,
    session_id: str,
    match_type: str,
    matches: Sequence[SessionMatch],
) -> Baselines:
    """Resolve baselines for every player of ``match_type`` in the session.

    ``matches`` must be the session's match rows as currently stored, before
    any score is overwritten.
    """

    entity_type = (
        ENTITY_PLAYER_DOUBLES if match_type == DOUBLES else ENTITY_PLAYER_SINGLES
    )
    typed = [match for match in matches if match.match_type == match_type]
    player_ids = participants(typed, match_type)
    baselines = Baselines(entity_type=entity_type)
    if not player_ids:
        return baselines

    model, key = RATING_TABLES[entity_type]
    durable_rows = (
        await session.execute(select(model).where(key.in_(player_ids)))
    ).scalars().all()
    durable = {getattr(row, key.key): RatingState.from_row(row) for row in durable_rows}

    match_ids = [match.id for match in typed]
    history = (
        await session.execute(
            select(MatchEloHistory).where(MatchEloHistory.match_id.in_(match_ids))
        )
    ).scalars().all()
    deltas = _session_deltas(entity_type, typed, history)
    counts = _session_counts(typed)

    for player_id in player_ids:
        state = await get_previous_session_snapshot(
            session, entity_type, player_id, session_id
        )
        source = SOURCE_PREVIOUS_SESSION
        if state is None:
            state = await get_session_start_snapshot(
                session, entity_type, player_id, session_id
            )
            source = SOURCE_SESSION_START
        if state is None and player_id in durable:
            state = reverse_compute(
                durable[player_id], deltas.get(player_id, 0.0), counts.get(player_id)
            )
            source = SOURCE_REVERSE_COMPUTED
        if state is None:
            state = RatingState.initial()
            source = SOURCE_INITIAL_DEFAULT

        baselines.states[player_id] = state
        baselines.sources[player_id] = source
        logger.info(
            "Baseline for %s %s in session %s from %s: elo=%.4f matches=%d",
            entity_type,
            player_id,
            session_id,
            source,
            state.elo,
            state.matches_played,
        )

    return baselines
