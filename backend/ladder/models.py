from sqlalchemy import (
    Column,
    String,
    DateTime,
    ForeignKey,
    JSON,
    Integer,
    Float,
    Boolean,
    Text,
    Index,
    UniqueConstraint,
    CheckConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from .db import Base

# Session.recalc_status values
RECALC_IDLE = "idle"
RECALC_RUNNING = "running"
RECALC_DONE = "done"
RECALC_FAILED = "failed"
RECALC_ACQUIRABLE = (RECALC_IDLE, RECALC_DONE, RECALC_FAILED)

SESSION_ACTIVE = "active"
SESSION_COMPLETED = "completed"

MATCH_PENDING = "pending"
MATCH_COMPLETED = "completed"

SINGLES = "singles"
DOUBLES = "doubles"
MATCH_TYPES = (SINGLES, DOUBLES)

# SessionRatingSnapshot.entity_type values
ENTITY_PLAYER_SINGLES = "player_singles"
ENTITY_PLAYER_DOUBLES = "player_doubles"
ENTITY_TEAM = "team"

# SessionRatingSnapshot.phase values
PHASE_START = "start"
PHASE_END = "end"


class User(Base):
    __tablename__ = "user"
    id = Column(String, primary_key=True)
    username = Column(String, unique=True, nullable=False)
    is_admin = Column(Boolean, nullable=False, default=False)


class Player(Base):
    __tablename__ = "player"
    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("user.id"), nullable=True)
    name = Column(String, nullable=False)

    __table_args__ = (
        Index("uq_player_name_lower", func.lower(name), unique=True),
    )


class LadderSession(Base):
    """A play session: a sequence of rounds of singles/doubles matches.

    ``recalc_status`` doubles as the observable state of the recalculation
    lock (``None -> idle -> running -> done|failed``).
    """

    __tablename__ = "sessions"
    id = Column(String, primary_key=True)
    created_by = Column(String, ForeignKey("user.id"), nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    status = Column(String, nullable=False, default=SESSION_ACTIVE)
    completed_at = Column(DateTime, nullable=True)
    recalc_status = Column(String, nullable=True)
    recalc_token = Column(String, nullable=True)
    recalc_started_at = Column(DateTime, nullable=True)
    recalc_finished_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_sessions_created_at", "created_at"),
        Index("ix_sessions_recalc_status", "recalc_status"),
    )


class SessionMatch(Base):
    __tablename__ = "session_matches"
    id = Column(String, primary_key=True)
    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    round_number = Column(Integer, nullable=False)
    match_order = Column(Integer, nullable=False)
    match_type = Column(String, nullable=False)  # "singles" | "doubles"
    # side 1 is the first half of the list, side 2 the second half
    player_ids = Column(
        JSON().with_variant(JSONB, "postgresql"), nullable=False
    )
    team_1_id = Column(String, ForeignKey("double_teams.id"), nullable=True)
    team_2_id = Column(String, ForeignKey("double_teams.id"), nullable=True)
    team1_score = Column(Float, nullable=True)
    team2_score = Column(Float, nullable=True)
    status = Column(String, nullable=False, default=MATCH_PENDING)
    is_edited = Column(Boolean, nullable=False, default=False)
    edited_at = Column(DateTime, nullable=True)
    edited_by = Column(String, ForeignKey("user.id"), nullable=True)
    edit_reason = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_session_matches_session_order", "session_id", "round_number", "match_order"),
        CheckConstraint(
            "match_type IN ('singles', 'doubles')", name="ck_session_matches_match_type"
        ),
    )

    def sides(self) -> tuple[list[str], list[str]]:
        ids = list(self.player_ids or [])
        half = len(ids) // 2
        return ids[:half], ids[half:]

    def scores(self) -> tuple[float, float] | None:
        if self.team1_score is None or self.team2_score is None:
            return None
        return float(self.team1_score), float(self.team2_score)


class PlayerRating(Base):
    """Singles rating, one row per player across all sessions."""

    __tablename__ = "player_ratings"
    player_id = Column(String, ForeignKey("player.id"), primary_key=True)
    elo = Column(Float, nullable=False, default=1500.0)
    matches_played = Column(Integer, nullable=False, default=0)
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    draws = Column(Integer, nullable=False, default=0)
    sets_won = Column(Integer, nullable=False, default=0)
    sets_lost = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=True, server_default=func.now())


class PlayerDoubleRating(Base):
    """Partner-independent doubles rating for a player."""

    __tablename__ = "player_double_ratings"
    player_id = Column(String, ForeignKey("player.id"), primary_key=True)
    elo = Column(Float, nullable=False, default=1500.0)
    matches_played = Column(Integer, nullable=False, default=0)
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    draws = Column(Integer, nullable=False, default=0)
    sets_won = Column(Integer, nullable=False, default=0)
    sets_lost = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=True, server_default=func.now())


class DoubleTeam(Base):
    __tablename__ = "double_teams"
    id = Column(String, primary_key=True)
    # canonical order: player_1_id < player_2_id
    player_1_id = Column(String, ForeignKey("player.id"), nullable=False)
    player_2_id = Column(String, ForeignKey("player.id"), nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "player_1_id", "player_2_id", name="uq_double_teams_player_pair"
        ),
    )


class DoubleTeamRating(Base):
    __tablename__ = "double_team_ratings"
    team_id = Column(String, ForeignKey("double_teams.id"), primary_key=True)
    elo = Column(Float, nullable=False, default=1500.0)
    matches_played = Column(Integer, nullable=False, default=0)
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    draws = Column(Integer, nullable=False, default=0)
    sets_won = Column(Integer, nullable=False, default=0)
    sets_lost = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=True, server_default=func.now())


class SessionRatingSnapshot(Base):
    """Rating state of one entity at the start or end of a session.

    ``end`` rows are rewritten by every recalculation of the session and are
    the baseline anchor for later sessions.
    """

    __tablename__ = "session_rating_snapshots"
    id = Column(String, primary_key=True)
    session_id = Column(String, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    phase = Column(String, nullable=False, default=PHASE_END)
    elo = Column(Float, nullable=False)
    matches_played = Column(Integer, nullable=False, default=0)
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    draws = Column(Integer, nullable=False, default=0)
    sets_won = Column(Integer, nullable=False, default=0)
    sets_lost = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "session_id",
            "entity_type",
            "entity_id",
            "phase",
            name="uq_session_rating_snapshots_entity_phase",
        ),
        Index("ix_session_rating_snapshots_entity", "entity_type", "entity_id"),
    )


class MatchEloHistory(Base):
    __tablename__ = "match_elo_history"
    id = Column(String, primary_key=True)
    match_id = Column(
        String, ForeignKey("session_matches.id", ondelete="CASCADE"), nullable=False, unique=True
    )

    # singles
    player1_id = Column(String, nullable=True)
    player2_id = Column(String, nullable=True)
    player1_elo_before = Column(Float, nullable=True)
    player1_elo_after = Column(Float, nullable=True)
    player1_elo_delta = Column(Float, nullable=True)
    player2_elo_before = Column(Float, nullable=True)
    player2_elo_after = Column(Float, nullable=True)
    player2_elo_delta = Column(Float, nullable=True)

    # doubles, team ratings
    team1_id = Column(String, nullable=True)
    team2_id = Column(String, nullable=True)
    team1_elo_before = Column(Float, nullable=True)
    team1_elo_after = Column(Float, nullable=True)
    team1_elo_delta = Column(Float, nullable=True)
    team2_elo_before = Column(Float, nullable=True)
    team2_elo_after = Column(Float, nullable=True)
    team2_elo_delta = Column(Float, nullable=True)

    # doubles, the delta applied to both teammates' player-doubles rating
    player_doubles_team1_delta = Column(Float, nullable=True)
    player_doubles_team2_delta = Column(Float, nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_match_elo_history_player1_id", "player1_id"),
        Index("ix_match_elo_history_player2_id", "player2_id"),
    )


class EloSnapshot(Base):
    """Per-match rating state of a player after the match (audit only)."""

    __tablename__ = "elo_snapshots"
    id = Column(String, primary_key=True)
    match_id = Column(
        String, ForeignKey("session_matches.id", ondelete="CASCADE"), nullable=False
    )
    player_id = Column(String, nullable=False)
    elo = Column(Float, nullable=False)
    matches_played = Column(Integer, nullable=False, default=0)
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    draws = Column(Integer, nullable=False, default=0)
    sets_won = Column(Integer, nullable=False, default=0)
    sets_lost = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("match_id", "player_id", name="uq_elo_snapshots_match_player"),
    )


# durable rating table and its key column per snapshot entity type
RATING_TABLES = {
    ENTITY_PLAYER_SINGLES: (PlayerRating, PlayerRating.player_id),
    ENTITY_PLAYER_DOUBLES: (PlayerDoubleRating, PlayerDoubleRating.player_id),
    ENTITY_TEAM: (DoubleTeamRating, DoubleTeamRating.team_id),
}
