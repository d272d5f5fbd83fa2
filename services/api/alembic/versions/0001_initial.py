"""initial arena schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "arena_battles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("challenger_id", sa.String(), nullable=False, index=True),
        sa.Column("challenger_username", sa.String(), nullable=False),
        sa.Column("opponent_id", sa.String(), nullable=False, index=True),
        sa.Column("opponent_username", sa.String(), nullable=False),
        sa.Column("criteria_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column(
            "status", sa.String(), nullable=False, server_default="pending", index=True
        ),
        sa.Column("scores_json", sa.Text(), nullable=True),
        sa.Column("ai_analysis_json", sa.Text(), nullable=True),
        sa.Column("elo_change_json", sa.Text(), nullable=True),
        sa.Column("winner_id", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_arena_battles_history",
        "arena_battles",
        ["challenger_id", "opponent_id", "created_at"],
    )

    op.create_table(
        "developer_rankings",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("username", sa.String(), nullable=False, index=True),
        sa.Column(
            "elo_rating", sa.Integer(), nullable=False, server_default="1200", index=True
        ),
        sa.Column("tier", sa.String(), nullable=False, server_default="Bronze"),
        sa.Column("wins", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("losses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_battles", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("win_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("best_win_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_battle_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "developer_profile_cache",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("username", sa.String(), nullable=False, index=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("profile_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("repos_analyzed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "username", "version", name="uq_developer_profile_cache_version"
        ),
    )

    op.create_table(
        "token_usage",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False, index=True),
        sa.Column("feature", sa.String(), nullable=False, index=True),
        sa.Column("repo_owner", sa.String(), nullable=True),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("input_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("output_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "is_byok", sa.Boolean(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, index=True),
    )

    op.create_table(
        "user_score_history",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=False, index=True),
        sa.Column("elo_rating", sa.Integer(), nullable=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("meta_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_user_score_history_user_time",
        "user_score_history",
        ["user_id", "created_at"],
    )

    op.create_table(
        "developer_emails",
        sa.Column("username", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False, unique=True),
        sa.Column("source_repo", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "email_outbox",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("kind", sa.String(), nullable=False, index=True),
        sa.Column("recipient", sa.String(), nullable=False),
        sa.Column("dedupe_key", sa.String(), nullable=False, unique=True),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column(
            "status", sa.String(), nullable=False, server_default="queued", index=True
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "next_attempt_at", sa.DateTime(timezone=True), nullable=True, index=True
        ),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("email_outbox")
    op.drop_table("developer_emails")
    op.drop_index("ix_user_score_history_user_time", table_name="user_score_history")
    op.drop_table("user_score_history")
    op.drop_table("token_usage")
    op.drop_table("developer_profile_cache")
    op.drop_table("developer_rankings")
    op.drop_index("ix_arena_battles_history", table_name="arena_battles")
    op.drop_table("arena_battles")
