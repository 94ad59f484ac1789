import asyncio

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import select

from ladder.exceptions import (
    RecalculationInProgress,
    RoundNotSubmittable,
    register_exception_handlers,
)
from ladder.models import (
    ENTITY_PLAYER_SINGLES,
    LadderSession,
    PHASE_END,
    PHASE_START,
    PlayerRating,
    RECALC_DONE,
    SessionMatch,
    SessionRatingSnapshot,
    User,
)
from ladder.routers import auth, sessions
from ladder.services.recalc_lock import RecalculationLock
from ladder.services.rounds import submit_round

from ladder_helpers import (
    seed_match,
    seed_players,
    seed_session,
    seed_users,
    session_factory,
)

app = FastAPI()
register_exception_handlers(app)
app.state.limiter = auth.limiter
app.include_router(sessions.router)


def _headers(user_id: str = "owner") -> dict[str, str]:
    token = auth.create_access_token(User(id=user_id, username=user_id, is_admin=False))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client():
    with TestClient(app) as client:
        yield client


@pytest.fixture(autouse=True)
def seeded():
    async def seed():
        async with session_factory() as session:
            await seed_users(session, "owner")
            await seed_players(session, "p1", "p2", "p3", "p4")
            await seed_session(session, "s1", day=0)
            await seed_session(session, "s2", day=7)
            await seed_session(session, "done", day=3, status="completed")
            await seed_match(session, "r1a", "s1", 1, 1, ["p1", "p2"])
            await seed_match(session, "r1b", "s1", 1, 2, ["p3", "p4"])
            await seed_match(session, "r2a", "s1", 2, 1, ["p1", "p3"])
            await seed_match(session, "n1", "s2", 1, 1, ["p1", "p4"])
            await seed_match(session, "c1", "done", 1, 1, ["p1", "p2"])
            await session.commit()

    asyncio.run(seed())


def _submit(client, session_id, round_number, scores):
    return client.post(
        f"/sessions/{session_id}/rounds/{round_number}/submit",
        json={
            "matchScores": [
                {"matchId": match_id, "team1Score": s1, "team2Score": s2}
                for match_id, (s1, s2) in scores.items()
            ]
        },
        headers=_headers(),
    )


async def _ratings() -> dict[str, PlayerRating]:
    async with session_factory() as session:
        rows = (await session.execute(select(PlayerRating))).scalars().all()
        return {row.player_id: row for row in rows}


async def _snapshots(session_id: str, phase: str) -> dict[str, SessionRatingSnapshot]:
    async with session_factory() as session:
        rows = (
            await session.execute(
                select(SessionRatingSnapshot).where(
                    SessionRatingSnapshot.session_id == session_id,
                    SessionRatingSnapshot.entity_type == ENTITY_PLAYER_SINGLES,
                    SessionRatingSnapshot.phase == phase,
                )
            )
        ).scalars().all()
        return {row.entity_id: row for row in rows}


def test_submit_round_rates_new_players(client):
    resp = _submit(client, "s1", 1, {"r1a": (11, 6), "r1b": (9, 11)})
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["roundNumber"] == 1
    assert data["replayedMatches"] == 2
    assert data["readbackMismatches"] == 0

    ratings = asyncio.run(_ratings())
    assert ratings["p1"].elo == pytest.approx(1520.0)
    assert ratings["p2"].elo == pytest.approx(1480.0)
    assert ratings["p4"].elo == pytest.approx(1520.0)
    assert (ratings["p1"].wins, ratings["p1"].sets_won) == (1, 1)
    assert (ratings["p2"].losses, ratings["p2"].sets_lost) == (1, 1)

    starts = asyncio.run(_snapshots("s1", PHASE_START))
    assert set(starts) == {"p1", "p2", "p3", "p4"}
    assert all(row.elo == 1500.0 and row.matches_played == 0 for row in starts.values())

    ends = asyncio.run(_snapshots("s1", PHASE_END))
    assert ends["p1"].elo == pytest.approx(1520.0)


def test_second_round_builds_on_first(client):
    assert _submit(client, "s1", 1, {"r1a": (11, 6), "r1b": (9, 11)}).status_code == 200
    resp = _submit(client, "s1", 2, {"r2a": (11, 3)})
    assert resp.status_code == 200
    assert resp.json()["replayedMatches"] == 3

    ratings = asyncio.run(_ratings())
    assert ratings["p1"].matches_played == 2
    assert ratings["p1"].elo > 1520.0
    assert ratings["p3"].elo < 1480.0

    # start snapshots keep the pre-session values
    starts = asyncio.run(_snapshots("s1", PHASE_START))
    assert starts["p1"].elo == 1500.0


def test_resubmitting_a_round_conflicts(client):
    assert _submit(client, "s1", 1, {"r1a": (11, 6), "r1b": (9, 11)}).status_code == 200
    resp = _submit(client, "s1", 1, {"r1a": (11, 6), "r1b": (9, 11)})
    assert resp.status_code == 409
    assert resp.json()["code"] == "round_not_submittable"


def test_submit_round_validation(client):
    resp = _submit(client, "s1", 1, {"r1a": (11, 6), "r1b": (9, 11), "n1": (11, 1)})
    assert resp.status_code == 400
    assert resp.json()["code"] == "unknown_match"

    resp = _submit(client, "s1", 1, {"r1a": (11, 6)})
    assert resp.status_code == 400
    assert resp.json()["code"] == "missing_scores"

    resp = _submit(client, "s1", 9, {"r1a": (11, 6)})
    assert resp.status_code == 404
    assert resp.json()["code"] == "round_not_found"

    resp = _submit(client, "done", 1, {"c1": (11, 6)})
    assert resp.status_code == 409
    assert resp.json()["code"] == "session_completed"

    resp = client.post(
        "/sessions/s1/rounds/1/submit", json={"matchScores": []}, headers=_headers()
    )
    assert resp.status_code == 400

    assert asyncio.run(_ratings()) == {}


def test_next_session_starts_from_previous_end_snapshot(client):
    assert _submit(client, "s1", 1, {"r1a": (11, 6), "r1b": (9, 11)}).status_code == 200
    assert _submit(client, "s2", 1, {"n1": (11, 8)}).status_code == 200

    starts = asyncio.run(_snapshots("s2", PHASE_START))
    assert starts["p1"].elo == pytest.approx(1520.0)
    assert starts["p1"].matches_played == 1
    assert starts["p4"].elo == pytest.approx(1520.0)

    # an edit in the earlier session replays it without touching s2's anchors
    resp = client.post(
        "/sessions/s1/matches/r1a/edit",
        json={"team1Score": 11, "team2Score": 9},
        headers=_headers(),
    )
    assert resp.status_code == 200
    starts = asyncio.run(_snapshots("s2", PHASE_START))
    assert starts["p1"].elo == pytest.approx(1520.0)


def test_lock_rejects_concurrent_acquire():
    async def run():
        async with session_factory() as first, session_factory() as second:
            lock = RecalculationLock(first, "s1")
            await lock.acquire()
            with pytest.raises(RecalculationInProgress):
                await RecalculationLock(second, "s1").acquire()
            await lock.release()
            status = (
                await second.execute(
                    select(LadderSession.recalc_status).where(LadderSession.id == "s1")
                )
            ).scalar_one()
            assert status == RECALC_DONE

    asyncio.run(run())


async def _session_status(session_id: str) -> tuple[str, str | None]:
    async with session_factory() as session:
        row = await session.get(LadderSession, session_id)
        return row.status, row.recalc_status


def test_last_round_completes_the_session(client):
    resp = _submit(client, "s1", 1, {"r1a": (11, 6), "r1b": (9, 11)})
    assert resp.json()["sessionCompleted"] is False
    assert asyncio.run(_session_status("s1")) == ("active", RECALC_DONE)

    resp = _submit(client, "s1", 2, {"r2a": (11, 3)})
    assert resp.status_code == 200
    assert resp.json()["sessionCompleted"] is True

    async def completed_at():
        async with session_factory() as session:
            return (await session.get(LadderSession, "s1")).completed_at

    assert asyncio.run(_session_status("s1")) == ("completed", RECALC_DONE)
    assert asyncio.run(completed_at()) is not None

    # a completed session takes no more rounds
    resp = _submit(client, "s1", 2, {"r2a": (11, 3)})
    assert resp.status_code == 409
    assert resp.json()["code"] == "session_completed"


def test_rejected_round_restores_recalc_status(client):
    assert _submit(client, "s1", 1, {"r1a": (11, 6), "r1b": (9, 11)}).status_code == 200
    assert _submit(client, "s1", 1, {"r1a": (6, 11), "r1b": (9, 11)}).status_code == 409
    assert asyncio.run(_session_status("s1")) == ("active", RECALC_DONE)


def test_round_submitted_while_waiting_for_the_lock_conflicts(monkeypatch):
    real_acquire = RecalculationLock.acquire
    competing = []

    async def acquire_after_competing_submit(self):
        if not competing:
            competing.append(self.session_id)
            async with session_factory() as other:
                owner = await other.get(User, "owner")
                await submit_round(
                    other, "s1", 1, {"r1a": (11, 5), "r1b": (11, 9)}, user=owner
                )
        return await real_acquire(self)

    monkeypatch.setattr(RecalculationLock, "acquire", acquire_after_competing_submit)

    async def run():
        async with session_factory() as session:
            owner = await session.get(User, "owner")
            with pytest.raises(RoundNotSubmittable) as excinfo:
                await submit_round(
                    session, "s1", 1, {"r1a": (2, 11), "r1b": (11, 9)}, user=owner
                )
            assert excinfo.value.status_code == 409

    asyncio.run(run())

    async def match_row():
        async with session_factory() as session:
            return await session.get(SessionMatch, "r1a")

    match = asyncio.run(match_row())
    assert (match.team1_score, match.team2_score) == (11, 5)
    assert match.is_edited is False
    assert asyncio.run(_session_status("s1")) == ("active", RECALC_DONE)
