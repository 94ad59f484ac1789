import logging
import uuid
from typing import Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db_errors import is_missing_table_error
from ..models import (
    EloSnapshot,
    LadderSession,
    SessionRatingSnapshot,
    PHASE_END,
    PHASE_START,
)
from .rating import RatingState

logger = logging.getLogger(__name__)


async def get_previous_session_snapshot(
    session: AsyncSession,
    entity_type: str,
    entity_id: str,
    session_id: str,
) -> RatingState | None:
    """Return the entity's end-of-session state from the latest earlier session.

    Only sessions created before ``session_id`` that recorded an end snapshot
    for the entity are considered.
    """

    current_created_at = (
        await session.execute(
            select(LadderSession.created_at).where(LadderSession.id == session_id)
        )
    ).scalar_one_or_none()
    if current_created_at is None:
        return None

    row = (
        await session.execute(
            select(SessionRatingSnapshot)
            .join(LadderSession, LadderSession.id == SessionRatingSnapshot.session_id)
            .where(
                SessionRatingSnapshot.entity_type == entity_type,
                SessionRatingSnapshot.entity_id == entity_id,
                SessionRatingSnapshot.phase == PHASE_END,
                LadderSession.id != session_id,
                LadderSession.created_at < current_created_at,
            )
            .order_by(LadderSession.created_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    if row is None:
        return None
    return RatingState.from_row(row)


async def get_session_start_snapshot(
    session: AsyncSession,
    entity_type: str,
    entity_id: str,
    session_id: str,
) -> RatingState | None:
    row = (
        await session.execute(
            select(SessionRatingSnapshot).where(
                SessionRatingSnapshot.session_id == session_id,
                SessionRatingSnapshot.entity_type == entity_type,
                SessionRatingSnapshot.entity_id == entity_id,
                SessionRatingSnapshot.phase == PHASE_START,
            )
        )
    ).scalar_one_or_none()
    if row is None:
        return None
    return RatingState.from_row(row)


async def update_session_snapshot(
    session: AsyncSession,
    session_id: str,
    entity_type: str,
    entity_id: str,
    state: RatingState,
    *,
    phase: str = PHASE_END,
) -> None:
    """Upsert the snapshot row of one entity for ``session_id``."""

    row = (
        await session.execute(
            select(SessionRatingSnapshot).where(
                SessionRatingSnapshot.session_id == session_id,
                SessionRatingSnapshot.entity_type == entity_type,
                SessionRatingSnapshot.entity_id == entity_id,
                SessionRatingSnapshot.phase == phase,
            )
        )
    ).scalar_one_or_none()
    if row is None:
        row = SessionRatingSnapshot(
            id=uuid.uuid4().hex,
            session_id=session_id,
            entity_type=entity_type,
            entity_id=entity_id,
            phase=phase,
        )
        session.add(row)
    for key, value in state.as_dict().items():
        setattr(row, key, value)


async def capture_session_start_snapshots(
    session: AsyncSession,
    session_id: str,
    entity_type: str,
    states: Mapping[str, RatingState],
) -> list[str]:
    """Record start-of-session state for entities that have none yet.

    Existing start snapshots are never overwritten. Returns the ids of the
    entities that were captured.
    """

    if not states:
        return []
    existing = set(
        (
            await session.execute(
                select(SessionRatingSnapshot.entity_id).where(
                    SessionRatingSnapshot.session_id == session_id,
                    SessionRatingSnapshot.entity_type == entity_type,
                    SessionRatingSnapshot.phase == PHASE_START,
                    SessionRatingSnapshot.entity_id.in_(list(states)),
                )
            )
        ).scalars().all()
    )
    captured: list[str] = []
    for entity_id, state in states.items():
        if entity_id in existing:
            continue
        await update_session_snapshot(
            session, session_id, entity_type, entity_id, state, phase=PHASE_START
        )
        captured.append(entity_id)
    return captured


async def create_elo_snapshots(
    session: AsyncSession,
    match_id: str,
    player_ids: Sequence[str],
    ledger: Mapping[str, RatingState],
) -> bool:
    """Store each player's post-match state for ``match_id``.

    Best-effort: failures are logged and rolled back to a savepoint so the
    surrounding recalculation is unaffected. Returns ``True`` on success.
    """

    expected = {2, 4}
    if len(player_ids) not in expected:
        logger.warning(
            "Skipping per-match snapshots for %s: unexpected player count %d",
            match_id,
            len(player_ids),
        )
        return False

    try:
        async with session.begin_nested():
            for player_id in player_ids:
                state = ledger.get(player_id) or RatingState.initial()
                session.add(
                    EloSnapshot(
                        id=uuid.uuid4().hex,
                        match_id=match_id,
                        player_id=player_id,
                        **state.as_dict(),
                    )
                )
    except SQLAlchemyError as exc:
        if is_missing_table_error(exc, EloSnapshot.__tablename__):
            logger.info("elo_snapshots table missing; per-match snapshots disabled")
        else:
            logger.warning(
                "Failed to create per-match snapshots for %s", match_id, exc_info=True
            )
        return False
    return True
