"""Correct the score of one played match and recalculate its session."""

import logging
from dataclasses import dataclass, field
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import config
from ..exceptions import (
    MatchNotFound,
    NotSessionOwner,
    RecalculationFailed,
    SessionNotFound,
    UnsupportedMatchType,
)
from ..models import MATCH_TYPES, LadderSession, SessionMatch, User
from .baseline import load_baselines
from .persistence import (
    BaselineRegressionError,
    Mismatch,
    PersistSummary,
    persist_replay,
    verify_persisted,
)
from .rating import RatingImbalanceError
from .recalc_lock import RecalculationLock
from .replay import MatchEdit, ReplayError, ReplayResult, replay_session
from .snapshots import capture_session_start_snapshots

logger = logging.getLogger(__name__)


@dataclass
class RecalculationOutcome:
    session_id: str
    results: list[ReplayResult]
    summaries: list[PersistSummary]
    mismatches: list[Mismatch] = field(default_factory=list)
    session_completed: bool = False

    @property
    def replayed_matches(self) -> int:
        return sum(len(result.replayed_match_ids) for result in self.results)


async def load_session_for_update(
    session: AsyncSession, session_id: str, user: User
) -> LadderSession:
    """Return the session if ``user`` may change it."""

    ladder_session = await session.get(LadderSession, session_id)
    if ladder_session is None:
        raise SessionNotFound(session_id)
    if not user.is_admin and ladder_session.created_by != user.id:
        raise NotSessionOwner()
    return ladder_session


async def load_session_matches(
    session: AsyncSession, session_id: str
) -> Sequence[SessionMatch]:
    """Load the session's matches in play order, overwriting stale loaded rows."""

    return (
        await session.execute(
            select(SessionMatch)
            .where(SessionMatch.session_id == session_id)
            .order_by(SessionMatch.round_number, SessionMatch.match_order)
            .execution_options(populate_existing=True)
        )
    ).scalars().all()


def recalculation_failure(session_id: str, exc: Exception) -> RecalculationFailed:
    details = {"sessionId": session_id, "error": type(exc).__name__}
    if isinstance(exc, BaselineRegressionError):
        details.update(
            entityType=exc.entity_type,
            entityId=exc.entity_id,
            baselineMatchesPlayed=exc.baseline,
            computedMatchesPlayed=exc.computed,
        )
        return RecalculationFailed(
            "replay would lose matches for a player; nothing was written",
            details=details,
        )
    if isinstance(exc, RatingImbalanceError):
        details.update(delta1=exc.delta_1, delta2=exc.delta_2)
        return RecalculationFailed("doubles rating deltas do not balance", details=details)
    if isinstance(exc, SQLAlchemyError):
        return RecalculationFailed("database error during recalculation", details=details)
    return RecalculationFailed(str(exc), details=details)


async def recalculate(
    session: AsyncSession,
    session_id: str,
    match_type: str,
    matches: Sequence[SessionMatch],
    *,
    overrides: dict[str, tuple[float, float]],
    edit: MatchEdit | None = None,
) -> tuple[ReplayResult, PersistSummary]:
    """Resolve baselines, replay ``match_type`` and stage the results.

    The resolved baselines are kept as this session's start snapshots the
    first time an entity is recalculated, so later replays start from the
    exact same state.
    """

    baselines = await load_baselines(session, session_id, match_type, matches)
    captured = await capture_session_start_snapshots(
        session, session_id, baselines.entity_type, baselines.states
    )
    if captured:
        logger.info(
            "Captured %d %s start snapshots for session %s",
            len(captured),
            baselines.entity_type,
            session_id,
        )
    result = await replay_session(
        session,
        session_id,
        match_type,
        matches,
        baselines,
        overrides=overrides,
        edit=edit,
    )
    summary = await persist_replay(session, session_id, result)
    return result, summary


async def edit_match(
    session: AsyncSession,
    session_id: str,
    match_id: str,
    team1_score: float,
    team2_score: float,
    *,
    user: User,
    reason: str | None = None,
) -> RecalculationOutcome:
    """Apply a corrected score and replay every match of the same type.

    Matches of the other type and other sessions are left untouched. Raises
    :class:`~ladder.exceptions.RecalculationInProgress` when another
    recalculation of the session is running.
    """

    await load_session_for_update(session, session_id, user)
    match = await session.get(SessionMatch, match_id)
    if match is None or match.session_id != session_id:
        raise MatchNotFound(match_id)
    if match.match_type not in MATCH_TYPES:
        raise UnsupportedMatchType(match.match_type)
    match_type = match.match_type

    logger.info(
        "Recalculating %s matches of session %s after edit of %s by %s",
        match_type,
        session_id,
        match_id,
        user.id,
    )
    async with RecalculationLock(session, session_id):
        try:
            matches = await load_session_matches(session, session_id)
            result, summary = await recalculate(
                session,
                session_id,
                match_type,
                matches,
                overrides={match_id: (team1_score, team2_score)},
                edit=MatchEdit(match_id=match_id, edited_by=user.id, reason=reason),
            )
            await session.commit()
        except (
            ReplayError,
            RatingImbalanceError,
            BaselineRegressionError,
            SQLAlchemyError,
        ) as exc:
            logger.exception("Recalculation of session %s aborted", session_id)
            raise recalculation_failure(session_id, exc) from exc

    outcome = RecalculationOutcome(
        session_id=session_id, results=[result], summaries=[summary]
    )
    if config.RECALC_VERIFY_READBACK:
        outcome.mismatches = await verify_persisted(session, session_id, result)
    return outcome
