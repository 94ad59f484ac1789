"""Forward replay of one match type of a session.

The replay walks the session's matches in (round, order) sequence, feeds each
scored match of the replayed type through the rating calculator and keeps the
evolving ratings in per-entity ledgers owned by a single recalculation. Match
rows are updated as the walk goes; durable ratings are written afterwards by
:mod:`.persistence`.
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Sequence

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    DOUBLES,
    ENTITY_PLAYER_DOUBLES,
    ENTITY_PLAYER_SINGLES,
    ENTITY_TEAM,
    MATCH_COMPLETED,
    MATCH_TYPES,
    SINGLES,
    EloSnapshot,
    MatchEloHistory,
    SessionMatch,
)
from ..time_utils import utcnow
from .baseline import Baselines
from .rating import (
    RatingState,
    assert_balanced,
    elo_delta,
    match_result,
)
from .snapshots import create_elo_snapshots
from .teams import get_or_create_double_team

logger = logging.getLogger(__name__)


class ReplayError(RuntimeError):
    """Raised when a match cannot be replayed consistently."""


@dataclass
class MatchEdit:
    """The caller-supplied correction of one match."""

    match_id: str
    edited_by: str
    reason: str | None = None


class RatingLedger:
    """In-memory rating state of one entity type during a replay.

    Unknown entities start from the default rating. Only entities that were
    actually updated are reported by :attr:`touched`.
    """

    def __init__(
        self,
        entity_type: str,
        baselines: Mapping[str, RatingState] | None = None,
    ) -> None:
        self.entity_type = entity_type
        self._baselines = {k: v.copy() for k, v in (baselines or {}).items()}
        self._states = {k: v.copy() for k, v in self._baselines.items()}
        self._touched: dict[str, None] = {}

    def get(self, entity_id: str) -> RatingState:
        state = self._states.get(entity_id)
        if state is None:
            state = RatingState.initial()
            self._states[entity_id] = state
            self._baselines[entity_id] = state.copy()
        return state

    def baseline(self, entity_id: str) -> RatingState:
        if entity_id not in self._baselines:
            self.get(entity_id)
        return self._baselines[entity_id]

    def apply(self, entity_id: str, delta: float, result: str) -> None:
        self.get(entity_id).apply(delta, result)
        self._touched.setdefault(entity_id, None)

    @property
    def touched(self) -> list[str]:
        return list(self._touched)

    def final_states(self) -> dict[str, RatingState]:
        return {entity_id: self._states[entity_id].copy() for entity_id in self._touched}

    def snapshot(self, entity_ids: Sequence[str]) -> dict[str, RatingState]:
        return {entity_id: self.get(entity_id).copy() for entity_id in entity_ids}


@dataclass
class AuditEntry:
    entity_type: str
    entity_id: str
    elo_before: float
    elo_after: float
    delta: float
    result: str


@dataclass
class MatchAudit:
    match_id: str
    round_number: int
    match_order: int
    team1_score: float
    team2_score: float
    edited: bool
    entries: list[AuditEntry] = field(default_factory=list)

    def describe(self) -> str:
        return "; ".join(
            f"{entry.entity_type}:{entry.entity_id} "
            f"{entry.elo_before:.1f}->{entry.elo_after:.1f} ({entry.delta:+.2f} {entry.result})"
            for entry in self.entries
        )


@dataclass
class ReplayResult:
    session_id: str
    match_type: str
    ledgers: dict[str, RatingLedger]
    history: list[MatchEloHistory] = field(default_factory=list)
    audit: list[MatchAudit] = field(default_factory=list)
    replayed_match_ids: list[str] = field(default_factory=list)
    skipped_match_ids: list[str] = field(default_factory=list)

    @property
    def doubles_replayed(self) -> bool:
        return self.match_type == DOUBLES and bool(self.replayed_match_ids)

    @property
    def singles_replayed(self) -> bool:
        return self.match_type == SINGLES and bool(self.replayed_match_ids)


def build_ledgers(match_type: str, baselines: Baselines) -> dict[str, RatingLedger]:
    """Return fresh ledgers for a replay of ``match_type``.

    Teams always start from the default rating; players start from their
    resolved baselines.
    """

    if match_type == SINGLES:
        return {ENTITY_PLAYER_SINGLES: RatingLedger(ENTITY_PLAYER_SINGLES, baselines.states)}
    return {
        ENTITY_TEAM: RatingLedger(ENTITY_TEAM),
        ENTITY_PLAYER_DOUBLES: RatingLedger(ENTITY_PLAYER_DOUBLES, baselines.states),
    }


def _valid_scores(scores: tuple[float, float] | None) -> bool:
    return scores is not None and all(
        isinstance(value, (int, float)) and math.isfinite(value) for value in scores
    )


def _replay_singles(
    match: SessionMatch,
    scores: tuple[float, float],
    ledger: RatingLedger,
    audit: MatchAudit,
) -> MatchEloHistory:
    (player_1,), (player_2,) = match.sides()
    if player_1 == player_2:
        raise ReplayError(f"singles match {match.id} has the same player on both sides")
    state_1 = ledger.get(player_1)
    state_2 = ledger.get(player_2)
    before_1, before_2 = state_1.elo, state_2.elo

    result_1 = match_result(scores[0], scores[1])
    result_2 = match_result(scores[1], scores[0])
    delta_1 = elo_delta(before_1, before_2, result_1, state_1.matches_played)
    delta_2 = elo_delta(before_2, before_1, result_2, state_2.matches_played)

    ledger.apply(player_1, delta_1, result_1)
    ledger.apply(player_2, delta_2, result_2)

    audit.entries.extend(
        [
            AuditEntry(ENTITY_PLAYER_SINGLES, player_1, before_1, state_1.elo, delta_1, result_1),
            AuditEntry(ENTITY_PLAYER_SINGLES, player_2, before_2, state_2.elo, delta_2, result_2),
        ]
    )
    return MatchEloHistory(
        id=uuid.uuid4().hex,
        match_id=match.id,
        player1_id=player_1,
        player2_id=player_2,
        player1_elo_before=before_1,
        player1_elo_after=state_1.elo,
        player1_elo_delta=delta_1,
        player2_elo_before=before_2,
        player2_elo_after=state_2.elo,
        player2_elo_delta=delta_2,
    )


def _side_average(ledger: RatingLedger, side: Sequence[str]) -> tuple[float, float]:
    states = [ledger.get(player_id) for player_id in side]
    elo = sum(state.elo for state in states) / len(states)
    experience = sum(state.matches_played for state in states) / len(states)
    return elo, experience


async def _replay_doubles(
    session: AsyncSession,
    match: SessionMatch,
    scores: tuple[float, float],
    teams: RatingLedger,
    players: RatingLedger,
    audit: MatchAudit,
) -> tuple[MatchEloHistory, str, str]:
    side_1, side_2 = match.sides()
    if set(side_1) & set(side_2):
        raise ReplayError(f"doubles match {match.id} has a player on both sides")
    try:
        team_1 = await get_or_create_double_team(session, *side_1)
        team_2 = await get_or_create_double_team(session, *side_2)
    except ValueError as exc:
        raise ReplayError(f"doubles match {match.id}: {exc}") from exc

    result_1 = match_result(scores[0], scores[1])
    result_2 = match_result(scores[1], scores[0])

    # team ratings
    team_state_1 = teams.get(team_1)
    team_state_2 = teams.get(team_2)
    team_before_1, team_before_2 = team_state_1.elo, team_state_2.elo
    team_delta_1 = elo_delta(
        team_before_1, team_before_2, result_1, team_state_1.matches_played
    )
    team_delta_2 = elo_delta(
        team_before_2, team_before_1, result_2, team_state_2.matches_played
    )
    teams.apply(team_1, team_delta_1, result_1)
    teams.apply(team_2, team_delta_2, result_2)
    audit.entries.extend(
        [
            AuditEntry(ENTITY_TEAM, team_1, team_before_1, team_state_1.elo, team_delta_1, result_1),
            AuditEntry(ENTITY_TEAM, team_2, team_before_2, team_state_2.elo, team_delta_2, result_2),
        ]
    )

    # player doubles ratings: K comes from the mean of the two side averages,
    # not from each side's own average experience, so the two deltas cancel
    avg_elo_1, avg_exp_1 = _side_average(players, side_1)
    avg_elo_2, avg_exp_2 = _side_average(players, side_2)
    experience = (avg_exp_1 + avg_exp_2) / 2
    pd_delta_1 = elo_delta(avg_elo_1, avg_elo_2, result_1, experience)
    pd_delta_2 = elo_delta(avg_elo_2, avg_elo_1, result_2, experience)
    assert_balanced(pd_delta_1, pd_delta_2)

    for side, delta, result in ((side_1, pd_delta_1, result_1), (side_2, pd_delta_2, result_2)):
        for player_id in side:
            before = players.get(player_id).elo
            players.apply(player_id, delta, result)
            audit.entries.append(
                AuditEntry(
                    ENTITY_PLAYER_DOUBLES,
                    player_id,
                    before,
                    players.get(player_id).elo,
                    delta,
                    result,
                )
            )

    history = MatchEloHistory(
        id=uuid.uuid4().hex,
        match_id=match.id,
        team1_id=team_1,
        team2_id=team_2,
        team1_elo_before=team_before_1,
        team1_elo_after=team_state_1.elo,
        team1_elo_delta=team_delta_1,
        team2_elo_before=team_before_2,
        team2_elo_after=team_state_2.elo,
        team2_elo_delta=team_delta_2,
        player_doubles_team1_delta=pd_delta_1,
        player_doubles_team2_delta=pd_delta_2,
    )
    return history, team_1, team_2


async def clear_match_audit(session: AsyncSession, match_ids: Sequence[str]) -> None:
    """Delete per-match snapshots and history of the matches about to be replayed."""

    if not match_ids:
        return
    await session.execute(delete(EloSnapshot).where(EloSnapshot.match_id.in_(match_ids)))
    await session.execute(
        delete(MatchEloHistory).where(MatchEloHistory.match_id.in_(match_ids))
    )


async def replay_session(
    session: AsyncSession,
    session_id: str,
    match_type: str,
    matches: Sequence[SessionMatch],
    baselines: Baselines,
    *,
    overrides: Mapping[str, tuple[float, float]] | None = None,
    edit: MatchEdit | None = None,
    now: datetime | None = None,
) -> ReplayResult:
    """Replay every scored ``match_type`` match of a session.

    ``overrides`` replace the stored scores of the given matches; all other
    matches keep the scores they had before the replay started. Matches
    without scores are skipped. Each replayed match row is updated to its
    final scores and ``completed`` status and flushed before moving on; the
    edited match additionally receives the edit metadata.
    """

    if match_type not in MATCH_TYPES:
        raise ReplayError(f"unsupported match type {match_type!r}")

    overrides = dict(overrides or {})
    now = now or utcnow()
    ordered = sorted(
        (match for match in matches if match.match_type == match_type),
        key=lambda match: (match.round_number, match.match_order),
    )
    preserved = {
        match.id: match.scores() for match in ordered if match.scores() is not None
    }

    await clear_match_audit(session, [match.id for match in ordered])

    ledgers = build_ledgers(match_type, baselines)
    result = ReplayResult(session_id=session_id, match_type=match_type, ledgers=ledgers)
    logger.info(
        "Replaying %d %s matches of session %s (%d overridden)",
        len(ordered),
        match_type,
        session_id,
        len(overrides),
    )

    visited: set[str] = set()
    for match in ordered:
        if match.id in visited:
            logger.error(
                "Match %s appears twice in session %s; skipping the repeat",
                match.id,
                session_id,
            )
            continue
        visited.add(match.id)

        scores = overrides.get(match.id) or preserved.get(match.id)
        if not _valid_scores(scores):
            logger.debug("Skipping unscored match %s", match.id)
            result.skipped_match_ids.append(match.id)
            continue
        expected_players = 2 if match_type == SINGLES else 4
        if len(match.player_ids or []) != expected_players:
            raise ReplayError(
                f"{match_type} match {match.id} has {len(match.player_ids or [])} players"
            )

        edited = edit is not None and edit.match_id == match.id
        audit = MatchAudit(
            match_id=match.id,
            round_number=match.round_number,
            match_order=match.match_order,
            team1_score=scores[0],
            team2_score=scores[1],
            edited=edited,
        )

        if match_type == SINGLES:
            history = _replay_singles(match, scores, ledgers[ENTITY_PLAYER_SINGLES], audit)
            player_ledger = ledgers[ENTITY_PLAYER_SINGLES]
        else:
            history, team_1, team_2 = await _replay_doubles(
                session,
                match,
                scores,
                ledgers[ENTITY_TEAM],
                ledgers[ENTITY_PLAYER_DOUBLES],
                audit,
            )
            match.team_1_id = team_1
            match.team_2_id = team_2
            player_ledger = ledgers[ENTITY_PLAYER_DOUBLES]

        match.team1_score = scores[0]
        match.team2_score = scores[1]
        match.status = MATCH_COMPLETED
        if edited:
            match.is_edited = True
            match.edited_at = now
            match.edited_by = edit.edited_by
            match.edit_reason = edit.reason
        await session.flush()

        await create_elo_snapshots(
            session,
            match.id,
            list(match.player_ids),
            player_ledger.snapshot(list(match.player_ids)),
        )

        result.history.append(history)
        result.audit.append(audit)
        result.replayed_match_ids.append(match.id)
        logger.info(
            "Replayed match %s (round %s, order %s) %s-%s%s: %s",
            match.id,
            match.round_number,
            match.match_order,
            scores[0],
            scores[1],
            " [edited]" if edited else "",
            audit.describe(),
        )

    return result
