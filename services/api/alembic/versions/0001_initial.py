"""initial schema

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
        "experiments",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("shop", sa.String(), nullable=True),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False, server_default=""),
        sa.Column("status", sa.String(), nullable=False, server_default="DRAFT"),
        sa.Column("current_case", sa.String(), nullable=False, server_default="BASE"),
        sa.Column("variant_scope", sa.String(), nullable=False, server_default="PRODUCT"),
        sa.Column(
            "rotation_interval_sec", sa.Integer(), nullable=False, server_default="86400"
        ),
        sa.Column("last_rotated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_rotation_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("base_media_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("test_media_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("media_urls_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column(
            "needs_attention", sa.Boolean(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column("attention_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_experiments_shop", "experiments", ["shop"])
    op.create_index("ix_experiments_product_id", "experiments", ["product_id"])
    op.create_index("ix_experiments_status", "experiments", ["status"])
    op.create_index("ix_experiments_next_rotation_at", "experiments", ["next_rotation_at"])

    op.create_table(
        "variant_overrides",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "experiment_id",
            sa.String(),
            sa.ForeignKey("experiments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("variant_id", sa.String(), nullable=False),
        sa.Column("variant_name", sa.String(), nullable=True),
        sa.Column("base_hero_media_id", sa.String(), nullable=True),
        sa.Column("test_hero_media_id", sa.String(), nullable=True),
        sa.Column("hero_error", sa.Text(), nullable=True),
        sa.Column("hero_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "experiment_id", "variant_id", name="uq_variant_overrides_experiment_variant"
        ),
    )
    op.create_index(
        "ix_variant_overrides_experiment_id", "variant_overrides", ["experiment_id"]
    )

    op.create_table(
        "interaction_events",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("variant_id", sa.String(), nullable=True),
        sa.Column("experiment_id", sa.String(), nullable=True),
        sa.Column("observed_case", sa.String(), nullable=True),
        sa.Column("shop", sa.String(), nullable=True),
        sa.Column("revenue", sa.Float(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=True),
        sa.Column("meta_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("dedup_key", sa.String(), nullable=True, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_interaction_events_session_id", "interaction_events", ["session_id"])
    op.create_index("ix_interaction_events_product_id", "interaction_events", ["product_id"])
    op.create_index(
        "ix_interaction_events_experiment_id", "interaction_events", ["experiment_id"]
    )
    op.create_index("ix_interaction_events_created_at", "interaction_events", ["created_at"])

    op.create_table(
        "daily_statistics",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("experiment_id", sa.String(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("observed_case", sa.String(), nullable=False),
        sa.Column("variant_id", sa.String(), nullable=False, server_default=""),
        sa.Column("impressions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("add_to_carts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("orders", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("revenue", sa.Float(), nullable=False, server_default="0"),
        sa.UniqueConstraint(
            "experiment_id",
            "date",
            "observed_case",
            "variant_id",
            name="uq_daily_statistics_key",
        ),
    )
    op.create_index(
        "ix_daily_statistics_experiment_id", "daily_statistics", ["experiment_id"]
    )
    op.create_index("ix_daily_statistics_date", "daily_statistics", ["date"])

    op.create_table(
        "rotation_events",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("experiment_id", sa.String(), nullable=False),
        sa.Column("from_case", sa.String(), nullable=False),
        sa.Column("to_case", sa.String(), nullable=False),
        sa.Column("triggered_by", sa.String(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("meta_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_rotation_events_experiment_id", "rotation_events", ["experiment_id"])
    op.create_index("ix_rotation_events_created_at", "rotation_events", ["created_at"])


def downgrade() -> None:
    op.drop_table("rotation_events")
    op.drop_table("daily_statistics")
    op.drop_table("interaction_events")
    op.drop_table("variant_overrides")
    op.drop_table("experiments")
