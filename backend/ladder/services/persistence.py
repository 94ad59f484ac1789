import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    ENTITY_PLAYER_DOUBLES,
    ENTITY_PLAYER_SINGLES,
    ENTITY_TEAM,
    PHASE_END,
    RATING_TABLES,
    SessionRatingSnapshot,
)
from ..time_utils import utcnow
from .rating import RatingState
from .replay import RatingLedger, ReplayResult
from .snapshots import update_session_snapshot

logger = logging.getLogger(__name__)


class BaselineRegressionError(RuntimeError):
    """A replayed entity ended with fewer matches than it started with."""

    def __init__(
        self, entity_type: str, entity_id: str, baseline: int, computed: int
    ) -> None:
        super().__init__(
            f"{entity_type} {entity_id}: matches_played went from {baseline} to {computed}"
        )
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.baseline = baseline
        self.computed = computed


@dataclass
class PersistSummary:
    written: dict[str, list[str]] = field(default_factory=dict)
    history_rows: int = 0


@dataclass
class Mismatch:
    source: str
    entity_type: str
    entity_id: str
    expected: dict
    actual: dict | None


def persisted_ledgers(result: ReplayResult) -> list[RatingLedger]:
    """Ledgers whose state is written back for this replay."""

    ledgers = []
    if result.singles_replayed:
        ledgers.append(result.ledgers[ENTITY_PLAYER_SINGLES])
    if result.doubles_replayed:
        ledgers.append(result.ledgers[ENTITY_TEAM])
        ledgers.append(result.ledgers[ENTITY_PLAYER_DOUBLES])
    return ledgers


def check_baseline_conservation(result: ReplayResult) -> None:
    """Raise :class:`BaselineRegressionError` if any entity lost matches."""

    for ledger in persisted_ledgers(result):
        for entity_id, state in ledger.final_states().items():
            baseline = ledger.baseline(entity_id)
            if state.matches_played < baseline.matches_played:
                logger.error(
                    "Baseline regression for %s %s: %d < %d",
                    ledger.entity_type,
                    entity_id,
                    state.matches_played,
                    baseline.matches_played,
                )
                raise BaselineRegressionError(
                    ledger.entity_type,
                    entity_id,
                    baseline.matches_played,
                    state.matches_played,
                )


async def upsert_ratings(
    session: AsyncSession, entity_type: str, states: dict[str, RatingState]
) -> None:
    if not states:
        return
    model, key = RATING_TABLES[entity_type]
    existing = {
        getattr(row, key.key): row
        for row in (
            await session.execute(select(model).where(key.in_(list(states))))
        ).scalars()
    }
    now = utcnow()
    for entity_id, state in states.items():
        row = existing.get(entity_id)
        if row is None:
            row = model(**{key.key: entity_id})
            session.add(row)
        for column, value in state.as_dict().items():
            setattr(row, column, value)
        row.updated_at = now


async def persist_replay(
    session: AsyncSession, session_id: str, result: ReplayResult
) -> PersistSummary:
    """Write the final ledger state of every replayed entity.

    Durable ratings and this session's end snapshots are written only for
    entities touched by the replay. History rows are inserted last, in one
    batch. Nothing is committed here.
    """

    check_baseline_conservation(result)

    summary = PersistSummary()
    for ledger in persisted_ledgers(result):
        states = ledger.final_states()
        await upsert_ratings(session, ledger.entity_type, states)
        for entity_id, state in states.items():
            await update_session_snapshot(
                session, session_id, ledger.entity_type, entity_id, state
            )
        summary.written[ledger.entity_type] = list(states)
        logger.info(
            "Persisting %d %s ratings for session %s",
            len(states),
            ledger.entity_type,
            session_id,
        )

    session.add_all(result.history)
    await session.flush()
    summary.history_rows = len(result.history)
    return summary


async def verify_persisted(
    session: AsyncSession, session_id: str, result: ReplayResult
) -> list[Mismatch]:
    """Re-read durable ratings and end snapshots and diff them with the ledgers.

    Mismatches are logged and returned; they never fail the recalculation.
    """

    mismatches: list[Mismatch] = []
    for ledger in persisted_ledgers(result):
        expected = ledger.final_states()
        if not expected:
            continue
        model, key = RATING_TABLES[ledger.entity_type]
        durable = {
            getattr(row, key.key): RatingState.from_row(row)
            for row in (
                await session.execute(
                    select(model)
                    .where(key.in_(list(expected)))
                    .execution_options(populate_existing=True)
                )
            ).scalars()
        }
        snapshots = {
            row.entity_id: RatingState.from_row(row)
            for row in (
                await session.execute(
                    select(SessionRatingSnapshot)
                    .where(
                        SessionRatingSnapshot.session_id == session_id,
                        SessionRatingSnapshot.entity_type == ledger.entity_type,
                        SessionRatingSnapshot.phase == PHASE_END,
                        SessionRatingSnapshot.entity_id.in_(list(expected)),
                    )
                    .execution_options(populate_existing=True)
                )
            ).scalars()
        }
        for source, stored in (("rating", durable), ("snapshot", snapshots)):
            for entity_id, state in expected.items():
                actual = stored.get(entity_id)
                if actual == state:
                    continue
                mismatch = Mismatch(
                    source=source,
                    entity_type=ledger.entity_type,
                    entity_id=entity_id,
                    expected=state.as_dict(),
                    actual=actual.as_dict() if actual is not None else None,
                )
                logger.warning(
                    "Read-back mismatch in %s for %s %s: expected %s, got %s",
                    source,
                    ledger.entity_type,
                    entity_id,
                    mismatch.expected,
                    mismatch.actual,
                )
                mismatches.append(mismatch)

    if not mismatches:
        logger.info("Read-back verification passed for session %s", session_id)
    return mismatches
