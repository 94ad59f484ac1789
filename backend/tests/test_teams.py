import asyncio

import pytest
from sqlalchemy import func, select

from ladder.models import DoubleTeam
from ladder.services import teams
from ladder.services.teams import get_or_create_double_team, normalize_player_pair

from ladder_helpers import seed_players, session_factory


def test_normalize_player_pair_is_order_independent():
    assert normalize_player_pair("b", "a") == ("a", "b")
    assert normalize_player_pair("a", "b") == ("a", "b")
    with pytest.raises(ValueError):
        normalize_player_pair("a", "a")


def test_get_or_create_double_team_reuses_canonical_pair():
    async def run():
        async with session_factory() as session:
            await seed_players(session, "alice", "bob", "carol")
            await session.commit()

            first = await get_or_create_double_team(session, "bob", "alice")
            second = await get_or_create_double_team(session, "alice", "bob")
            other = await get_or_create_double_team(session, "alice", "carol")
            await session.commit()

            team = await session.get(DoubleTeam, first)
            count = (
                await session.execute(select(func.count()).select_from(DoubleTeam))
            ).scalar_one()
        return first, second, other, team, count

    first, second, other, team, count = asyncio.run(run())
    assert first == second
    assert other != first
    assert (team.player_1_id, team.player_2_id) == ("alice", "bob")
    assert count == 2


def test_get_or_create_double_team_returns_concurrent_winner(monkeypatch):
    real_find = teams._find_team_id
    calls = {"n": 0}

    async def stale_find(session, p1, p2):
        # the first lookup misses, as if another request inserted in between
        calls["n"] += 1
        team_id = await real_find(session, p1, p2)
        return None if calls["n"] == 1 else team_id

    monkeypatch.setattr(teams, "_find_team_id", stale_find)

    async def run():
        async with session_factory() as session:
            await seed_players(session, "alice", "bob")
            session.add(DoubleTeam(id="existing", player_1_id="alice", player_2_id="bob"))
            await session.commit()

            team_id = await get_or_create_double_team(session, "bob", "alice")
            await session.commit()
            count = (
                await session.execute(select(func.count()).select_from(DoubleTeam))
            ).scalar_one()
        return team_id, count

    team_id, count = asyncio.run(run())
    assert team_id == "existing"
    assert count == 1
    assert calls["n"] == 2
