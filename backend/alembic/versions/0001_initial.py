from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _rating_columns(elo_default=True):
    elo = (
        sa.Column("elo", sa.Float(), nullable=False, server_default="1500")
        if elo_default
        else sa.Column("elo", sa.Float(), nullable=False)
    )
    return [
        elo,
        sa.Column("matches_played", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("wins", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("losses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("draws", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sets_won", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sets_lost", sa.Integer(), nullable=False, server_default="0"),
    ]


def upgrade():
    op.create_table(
        "user",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("username", sa.String(), nullable=False, unique=True),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_table(
        "player",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("user.id"), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
    )
    op.create_index(
        "uq_player_name_lower", "player", [sa.text("lower(name)")], unique=True
    )

    op.create_table(
        "sessions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("created_by", sa.String(), sa.ForeignKey("user.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("recalc_status", sa.String(), nullable=True),
        sa.Column("recalc_token", sa.String(), nullable=True),
        sa.Column("recalc_started_at", sa.DateTime(), nullable=True),
        sa.Column("recalc_finished_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_sessions_created_at", "sessions", ["created_at"])
    op.create_index("ix_sessions_recalc_status", "sessions", ["recalc_status"])

    op.create_table(
        "double_teams",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("player_1_id", sa.String(), sa.ForeignKey("player.id"), nullable=False),
        sa.Column("player_2_id", sa.String(), sa.ForeignKey("player.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint(
            "player_1_id", "player_2_id", name="uq_double_teams_player_pair"
        ),
    )

    op.create_table(
        "session_matches",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "session_id",
            sa.String(),
            sa.ForeignKey("sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("round_number", sa.Integer(), nullable=False),
        sa.Column("match_order", sa.Integer(), nullable=False),
        sa.Column("match_type", sa.String(), nullable=False),
        sa.Column(
            "player_ids",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
        sa.Column("team_1_id", sa.String(), sa.ForeignKey("double_teams.id"), nullable=True),
        sa.Column("team_2_id", sa.String(), sa.ForeignKey("double_teams.id"), nullable=True),
        sa.Column("team1_score", sa.Float(), nullable=True),
        sa.Column("team2_score", sa.Float(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("is_edited", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("edited_at", sa.DateTime(), nullable=True),
        sa.Column("edited_by", sa.String(), sa.ForeignKey("user.id"), nullable=True),
        sa.Column("edit_reason", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "match_type IN ('singles', 'doubles')", name="ck_session_matches_match_type"
        ),
    )
    op.create_index(
        "ix_session_matches_session_order",
        "session_matches",
        ["session_id", "round_number", "match_order"],
    )

    op.create_table(
        "player_ratings",
        sa.Column("player_id", sa.String(), sa.ForeignKey("player.id"), primary_key=True),
        *_rating_columns(),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
    )
    op.create_table(
        "player_double_ratings",
        sa.Column("player_id", sa.String(), sa.ForeignKey("player.id"), primary_key=True),
        *_rating_columns(),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
    )
    op.create_table(
        "double_team_ratings",
        sa.Column("team_id", sa.String(), sa.ForeignKey("double_teams.id"), primary_key=True),
        *_rating_columns(),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
    )

    op.create_table(
        "session_rating_snapshots",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "session_id",
            sa.String(),
            sa.ForeignKey("sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("phase", sa.String(), nullable=False, server_default="end"),
        *_rating_columns(elo_default=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint(
            "session_id",
            "entity_type",
            "entity_id",
            "phase",
            name="uq_session_rating_snapshots_entity_phase",
        ),
    )
    op.create_index(
        "ix_session_rating_snapshots_entity",
        "session_rating_snapshots",
        ["entity_type", "entity_id"],
    )

    op.create_table(
        "match_elo_history",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "match_id",
            sa.String(),
            sa.ForeignKey("session_matches.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("player1_id", sa.String(), nullable=True),
        sa.Column("player2_id", sa.String(), nullable=True),
        sa.Column("player1_elo_before", sa.Float(), nullable=True),
        sa.Column("player1_elo_after", sa.Float(), nullable=True),
        sa.Column("player1_elo_delta", sa.Float(), nullable=True),
        sa.Column("player2_elo_before", sa.Float(), nullable=True),
        sa.Column("player2_elo_after", sa.Float(), nullable=True),
        sa.Column("player2_elo_delta", sa.Float(), nullable=True),
        sa.Column("team1_id", sa.String(), nullable=True),
        sa.Column("team2_id", sa.String(), nullable=True),
        sa.Column("team1_elo_before", sa.Float(), nullable=True),
        sa.Column("team1_elo_after", sa.Float(), nullable=True),
        sa.Column("team1_elo_delta", sa.Float(), nullable=True),
        sa.Column("team2_elo_before", sa.Float(), nullable=True),
        sa.Column("team2_elo_after", sa.Float(), nullable=True),
        sa.Column("team2_elo_delta", sa.Float(), nullable=True),
        sa.Column("player_doubles_team1_delta", sa.Float(), nullable=True),
        sa.Column("player_doubles_team2_delta", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_match_elo_history_player1_id", "match_elo_history", ["player1_id"])
    op.create_index("ix_match_elo_history_player2_id", "match_elo_history", ["player2_id"])

    op.create_table(
        "elo_snapshots",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "match_id",
            sa.String(),
            sa.ForeignKey("session_matches.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("player_id", sa.String(), nullable=False),
        *_rating_columns(elo_default=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("match_id", "player_id", name="uq_elo_snapshots_match_player"),
    )


def downgrade():
    op.drop_table("elo_snapshots")
    op.drop_index("ix_match_elo_history_player2_id", table_name="match_elo_history")
    op.drop_index("ix_match_elo_history_player1_id", table_name="match_elo_history")
    op.drop_table("match_elo_history")
    op.drop_index("ix_session_rating_snapshots_entity", table_name="session_rating_snapshots")
    op.drop_table("session_rating_snapshots")
    op.drop_table("double_team_ratings")
    op.drop_table("player_double_ratings")
    op.drop_table("player_ratings")
    op.drop_index("ix_session_matches_session_order", table_name="session_matches")
    op.drop_table("session_matches")
    op.drop_table("double_teams")
    op.drop_index("ix_sessions_recalc_status", table_name="sessions")
    op.drop_index("ix_sessions_created_at", table_name="sessions")
    op.drop_table("sessions")
    op.drop_index("uq_player_name_lower", table_name="player")
    op.drop_table("player")
    op.drop_table("user")
