"""Seeding and replay helpers shared by the ladder tests."""

from datetime import datetime, timedelta

from ladder import db
from ladder.models import (
    LadderSession,
    MATCH_COMPLETED,
    MATCH_PENDING,
    Player,
    SessionMatch,
    User,
)
from ladder.services.rating import RatingState, elo_delta, match_result

BASE_TIME = datetime(2024, 3, 1, 18, 0, 0)


def session_factory():
    if db.AsyncSessionLocal is None:
        db.get_engine()
    return db.AsyncSessionLocal()


async def seed_users(session, *user_ids, admin=()):
    for user_id in user_ids:
        session.add(User(id=user_id, username=user_id, is_admin=user_id in admin))
    await session.flush()


async def seed_players(session, *player_ids):
    for player_id in player_ids:
        session.add(Player(id=player_id, name=player_id.upper()))
    await session.flush()


async def seed_session(session, session_id, owner="owner", *, day=0, status="active"):
    session.add(
        LadderSession(
            id=session_id,
            created_by=owner,
            created_at=BASE_TIME + timedelta(days=day),
            status=status,
        )
    )
    await session.flush()


async def seed_match(
    session,
    match_id,
    session_id,
    round_number,
    match_order,
    player_ids,
    scores=None,
    *,
    match_type=None,
):
    match_type = match_type or ("singles" if len(player_ids) == 2 else "doubles")
    session.add(
        SessionMatch(
            id=match_id,
            session_id=session_id,
            round_number=round_number,
            match_order=match_order,
            match_type=match_type,
            player_ids=list(player_ids),
            team1_score=scores[0] if scores else None,
            team2_score=scores[1] if scores else None,
            status=MATCH_COMPLETED if scores else MATCH_PENDING,
        )
    )
    await session.flush()


def play_singles(state_1: RatingState, state_2: RatingState, score_1, score_2):
    """Apply one singles result to two states the way a replay does."""
    result_1 = match_result(score_1, score_2)
    result_2 = match_result(score_2, score_1)
    delta_1 = elo_delta(state_1.elo, state_2.elo, result_1, state_1.matches_played)
    delta_2 = elo_delta(state_2.elo, state_1.elo, result_2, state_2.matches_played)
    state_1.apply(delta_1, result_1)
    state_2.apply(delta_2, result_2)
    return delta_1, delta_2
