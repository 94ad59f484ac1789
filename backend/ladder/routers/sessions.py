from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import get_session
from ..exceptions import SessionNotFound
from ..models import LadderSession, RECALC_IDLE, User
from ..schemas import (
    MatchEditIn,
    MatchEditOut,
    RecalcStatusOut,
    RoundSubmitIn,
    RoundSubmitOut,
)
from ..services.match_edit import edit_match
from ..services.rounds import submit_round
from .auth import get_current_user, limiter, rate_limit_cost, recalc_rate_limit

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.post("/{session_id}/matches/{match_id}/edit", response_model=MatchEditOut)
@limiter.limit(recalc_rate_limit, cost=rate_limit_cost)
async def edit_match_route(
    request: Request,
    session_id: str,
    match_id: str,
    body: MatchEditIn,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> MatchEditOut:
    outcome = await edit_match(
        session,
        session_id,
        match_id,
        body.team1_score,
        body.team2_score,
        user=user,
        reason=body.reason,
    )
    result = outcome.results[0]
    return MatchEditOut(
        message=f"Match updated; {outcome.replayed_matches} {result.match_type} matches recalculated",
        session_id=session_id,
        match_id=match_id,
        match_type=result.match_type,
        replayed_matches=outcome.replayed_matches,
        readback_mismatches=len(outcome.mismatches),
    )


@router.post("/{session_id}/rounds/{round_number}/submit", response_model=RoundSubmitOut)
@limiter.limit(recalc_rate_limit, cost=rate_limit_cost)
async def submit_round_route(
    request: Request,
    session_id: str,
    round_number: int,
    body: RoundSubmitIn,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> RoundSubmitOut:
    scores = {
        score.match_id: (score.team1_score, score.team2_score)
        for score in body.match_scores
    }
    outcome = await submit_round(session, session_id, round_number, scores, user=user)
    return RoundSubmitOut(
        message=(
            f"Round {round_number} submitted; session completed"
            if outcome.session_completed
            else f"Round {round_number} submitted"
        ),
        session_id=session_id,
        round_number=round_number,
        replayed_matches=outcome.replayed_matches,
        readback_mismatches=len(outcome.mismatches),
        session_completed=outcome.session_completed,
    )


@router.get("/{session_id}/recalc-status", response_model=RecalcStatusOut)
async def recalc_status(
    session_id: str,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> RecalcStatusOut:
    ladder_session = await session.get(LadderSession, session_id)
    if ladder_session is None:
        raise SessionNotFound(session_id)
    return RecalcStatusOut(
        session_id=ladder_session.id,
        recalc_status=ladder_session.recalc_status or RECALC_IDLE,
        started_at=ladder_session.recalc_started_at,
        finished_at=ladder_session.recalc_finished_at,
    )
