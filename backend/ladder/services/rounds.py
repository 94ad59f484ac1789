"""Submit the scores of a whole round."""

import logging
import math
from typing import Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import config
from ..exceptions import RoundNotSubmittable, SessionCompleted
from ..models import (
    MATCH_PENDING,
    MATCH_TYPES,
    SESSION_COMPLETED,
    LadderSession,
    SessionMatch,
    User,
)
from ..time_utils import utcnow
from .match_edit import (
    RecalculationOutcome,
    load_session_for_update,
    load_session_matches,
    recalculate,
    recalculation_failure,
)
from .persistence import BaselineRegressionError, verify_persisted
from .rating import RatingImbalanceError
from .recalc_lock import RecalculationLock
from .replay import ReplayError

logger = logging.getLogger(__name__)


def validate_round_scores(
    round_matches: Sequence[SessionMatch],
    scores: dict[str, tuple[float, float]],
) -> None:
    known = {match.id for match in round_matches}
    unknown = sorted(set(scores) - known)
    if unknown:
        raise RoundNotSubmittable(
            f"unknown match ids for this round: {', '.join(unknown)}",
            status_code=400,
            code="unknown_match",
        )
    for match in round_matches:
        if match.status != MATCH_PENDING:
            raise RoundNotSubmittable(f"match {match.id} is not pending")
        pair = scores.get(match.id)
        if pair is None or not all(math.isfinite(value) for value in pair):
            raise RoundNotSubmittable(
                f"match {match.id} needs two valid scores",
                status_code=400,
                code="missing_scores",
            )


async def complete_session_if_final(
    session: AsyncSession,
    ladder_session: LadderSession,
    round_number: int,
    matches: Sequence[SessionMatch],
) -> bool:
    """Mark the session completed once its last round is in.

    Best-effort: the round's ratings are already committed, so a failure here
    is logged and the session stays active.
    """

    last_round = max(match.round_number for match in matches)
    if round_number < last_round:
        return False
    try:
        ladder_session.status = SESSION_COMPLETED
        ladder_session.completed_at = utcnow()
        await session.commit()
    except SQLAlchemyError:
        logger.exception("Failed to mark session %s as completed", ladder_session.id)
        await session.rollback()
        return False
    logger.info("Session %s completed after round %s", ladder_session.id, round_number)
    return True


async def submit_round(
    session: AsyncSession,
    session_id: str,
    round_number: int,
    scores: dict[str, tuple[float, float]],
    *,
    user: User,
) -> RecalculationOutcome:
    """Record a round's scores and rate its matches.

    Every match of the round must be pending and receive finite scores. The
    first time a player is rated in the session, their baseline is kept as
    the session's start snapshot. Submitting the last round completes the
    session.
    """

    ladder_session = await load_session_for_update(session, session_id, user)
    if ladder_session.status == SESSION_COMPLETED:
        raise SessionCompleted(session_id)

    results = []
    summaries = []
    async with RecalculationLock(session, session_id):
        # another submit may have committed while this one waited
        await session.refresh(ladder_session)
        if ladder_session.status == SESSION_COMPLETED:
            raise SessionCompleted(session_id)
        matches = await load_session_matches(session, session_id)
        round_matches = [match for match in matches if match.round_number == round_number]
        if not round_matches:
            raise RoundNotSubmittable(
                f"round {round_number} has no matches",
                status_code=404,
                code="round_not_found",
            )
        validate_round_scores(round_matches, scores)

        round_types = [
            match_type
            for match_type in MATCH_TYPES
            if any(match.match_type == match_type for match in round_matches)
        ]
        try:
            for match_type in round_types:
                result, summary = await recalculate(
                    session,
                    session_id,
                    match_type,
                    matches,
                    overrides={
                        match.id: scores[match.id]
                        for match in round_matches
                        if match.match_type == match_type
                    },
                )
                results.append(result)
                summaries.append(summary)
            await session.commit()
        except (
            ReplayError,
            RatingImbalanceError,
            BaselineRegressionError,
            SQLAlchemyError,
        ) as exc:
            logger.exception("Round %s of session %s aborted", round_number, session_id)
            raise recalculation_failure(session_id, exc) from exc
        completed = await complete_session_if_final(
            session, ladder_session, round_number, matches
        )

    logger.info(
        "Submitted round %s of session %s (%d matches)",
        round_number,
        session_id,
        len(round_matches),
    )
    outcome = RecalculationOutcome(
        session_id=session_id,
        results=results,
        summaries=summaries,
        session_completed=completed,
    )
    if config.RECALC_VERIFY_READBACK:
        for result in results:
            outcome.mismatches.extend(await verify_persisted(session, session_id, result))
    return outcome
