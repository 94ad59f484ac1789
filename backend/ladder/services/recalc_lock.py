import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import (
    DomainException,
    RecalculationFailed,
    RecalculationInProgress,
    SessionNotFound,
)
from ..models import (
    LadderSession,
    RECALC_ACQUIRABLE,
    RECALC_DONE,
    RECALC_FAILED,
    RECALC_IDLE,
    RECALC_RUNNING,
)
from ..time_utils import utcnow

logger = logging.getLogger(__name__)


class RecalculationLock:
    """Per-session mutual exclusion backed by ``sessions.recalc_status``.

    Acquisition is a compare-and-swap on the session row and is committed
    right away so pollers see ``running`` while the work is in flight::

        async with RecalculationLock(db, session_id):
            ...  # recalculate and commit

    Leaving the block normally marks the session ``done``. A client error
    raised inside the block (a 4xx :class:`DomainException`) rolls back and
    restores the status the session had before. Any other exception rolls
    back uncommitted work and marks it ``failed``. The session is never left
    ``running``.
    """

    def __init__(self, session: AsyncSession, session_id: str) -> None:
        self.session = session
        self.session_id = session_id
        self.token: str | None = None
        self.previous_status: str | None = None

    async def _status(self) -> str | None:
        row = (
            await self.session.execute(
                select(LadderSession.recalc_status).where(
                    LadderSession.id == self.session_id
                )
            )
        ).first()
        if row is None:
            raise SessionNotFound(self.session_id)
        return row[0]

    async def acquire(self) -> str:
        db = self.session
        await db.execute(
            update(LadderSession)
            .where(
                LadderSession.id == self.session_id,
                LadderSession.recalc_status.is_(None),
            )
            .values(recalc_status=RECALC_IDLE)
        )
        previous = await self._status()
        token = uuid.uuid4().hex
        result = await db.execute(
            update(LadderSession)
            .where(
                LadderSession.id == self.session_id,
                LadderSession.recalc_status.in_(RECALC_ACQUIRABLE),
            )
            .values(
                recalc_status=RECALC_RUNNING,
                recalc_token=token,
                recalc_started_at=utcnow(),
                recalc_finished_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        if result.rowcount != 1:
            status = await self._status()
            if status == RECALC_RUNNING:
                logger.info("Recalculation already running for session %s", self.session_id)
                raise RecalculationInProgress(self.session_id)
            raise RecalculationFailed(
                "could not acquire the recalculation lock",
                details={"sessionId": self.session_id, "recalcStatus": status},
            )

        self.token = token
        self.previous_status = previous
        logger.info("Acquired recalculation lock for session %s", self.session_id)
        return token

    async def _finish(self, status: str) -> None:
        await self.session.execute(
            update(LadderSession)
            .where(
                LadderSession.id == self.session_id,
                LadderSession.recalc_token == self.token,
            )
            .values(
                recalc_status=status,
                recalc_token=None,
                recalc_finished_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

    async def release(self, status: str = RECALC_DONE) -> None:
        """Hand the lock back, falling back to ``failed`` if that write fails."""

        try:
            await self._finish(status)
        except SQLAlchemyError:
            logger.exception(
                "Failed to release recalculation lock for session %s", self.session_id
            )
            await self.fail()
        else:
            self.token = None

    async def fail(self) -> None:
        """Mark the session failed. Errors here are logged, never raised."""

        try:
            await self.session.rollback()
            await self._finish(RECALC_FAILED)
        except SQLAlchemyError:
            logger.exception(
                "Failed to mark session %s as failed", self.session_id
            )
        finally:
            self.token = None

    async def __aenter__(self) -> "RecalculationLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            await self.release()
        elif isinstance(exc, DomainException) and exc.status_code < 500:
            logger.info(
                "Recalculation of session %s rejected: %s", self.session_id, exc
            )
            await self.session.rollback()
            await self.release(self.previous_status or RECALC_IDLE)
        else:
            logger.error(
                "Recalculation of session %s failed: %s", self.session_id, exc
            )
            await self.fail()
        return False
