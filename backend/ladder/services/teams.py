import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db_errors import is_unique_violation
from ..models import DoubleTeam

logger = logging.getLogger(__name__)


def normalize_player_pair(player_a: str, player_b: str) -> tuple[str, str]:
    """Return the pair in canonical order so A+B and B+A map to one team."""
    if player_a == player_b:
        raise ValueError("a doubles team needs two distinct players")
    return (player_a, player_b) if player_a < player_b else (player_b, player_a)


async def _find_team_id(session: AsyncSession, p1: str, p2: str) -> str | None:
    return (
        await session.execute(
            select(DoubleTeam.id).where(
                DoubleTeam.player_1_id == p1, DoubleTeam.player_2_id == p2
            )
        )
    ).scalar_one_or_none()


async def get_or_create_double_team(
    session: AsyncSession, player_a: str, player_b: str
) -> str:
    """Return the team id for an unordered pair of players, creating it if needed.

    Creation happens inside a SAVEPOINT and relies on the unique constraint on
    the canonical pair: if a concurrent request wins the insert, the savepoint
    is rolled back and the winner's row is returned.
    """

    p1, p2 = normalize_player_pair(player_a, player_b)
    team_id = await _find_team_id(session, p1, p2)
    if team_id is not None:
        return team_id

    new_id = uuid.uuid4().hex
    try:
        async with session.begin_nested():
            session.add(DoubleTeam(id=new_id, player_1_id=p1, player_2_id=p2))
    except IntegrityError as exc:
        if not is_unique_violation(exc):
            raise
        team_id = await _find_team_id(session, p1, p2)
        if team_id is None:
            raise
        logger.info("Double team %s/%s created concurrently as %s", p1, p2, team_id)
        return team_id

    logger.info("Created double team %s for %s/%s", new_id, p1, p2)
    return new_id
