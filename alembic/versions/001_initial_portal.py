"""Initial partner portal schema: partners, users, leads, deals, history, audit.

Revision ID: 001_initial_portal
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSON

# revision identifiers, used by Alembic.
revision: str = "001_initial_portal"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    op.create_table(
        "partners",
        _id_column(),
        sa.Column("external_id", sa.String(100), unique=True, nullable=True),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("approved", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("status", sa.String(50), server_default=sa.text("'pending'")),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "users",
        _id_column(),
        sa.Column(
            "partner_id",
            UUID(as_uuid=True),
            sa.ForeignKey("partners.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("role", sa.String(20), server_default=sa.text("'sub'")),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true")),
        *_timestamps(),
    )

    op.create_table(
        "leads",
        _id_column(),
        sa.Column("external_id", sa.String(100), unique=True, nullable=True),
        sa.Column(
            "partner_id",
            UUID(as_uuid=True),
            sa.ForeignKey("partners.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "created_by_user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("first_name", sa.String(100), nullable=False),
        sa.Column("last_name", sa.String(100), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("company", sa.String(300), nullable=True),
        sa.Column("status", sa.String(50), server_default=sa.text("'New'")),
        sa.Column("external_status_raw", sa.String(100), nullable=True),
        sa.Column("lead_source", sa.String(100), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("sync_state", sa.String(20), server_default=sa.text("'pending'")),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), server_default=sa.text("1"), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_leads_partner_email", "leads", ["partner_id", "email"])
    op.create_index("ix_leads_partner_name", "leads", ["partner_id", "first_name", "last_name"])

    op.create_table(
        "deals",
        _id_column(),
        sa.Column("external_id", sa.String(100), unique=True, nullable=False),
        sa.Column(
            "partner_id",
            UUID(as_uuid=True),
            sa.ForeignKey("partners.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "created_by_user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("converted_from_lead_id", UUID(as_uuid=True), nullable=True),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("company", sa.String(300), nullable=True),
        sa.Column("stage", sa.String(50), server_default=sa.text("'In Underwriting'")),
        sa.Column("external_stage_raw", sa.String(100), nullable=True),
        sa.Column("approval_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_state", sa.String(20), server_default=sa.text("'pending'")),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), server_default=sa.text("1"), nullable=False),
        *_timestamps(),
    )

    # One history row per lead/deal; the unique owner column enforces it.
    op.create_table(
        "lead_status_history",
        _id_column(),
        sa.Column(
            "lead_id",
            UUID(as_uuid=True),
            sa.ForeignKey("leads.id", ondelete="CASCADE"),
            unique=True,
            nullable=False,
        ),
        sa.Column("old_status", sa.String(50), nullable=True),
        sa.Column("new_status", sa.String(50), nullable=False),
        sa.Column("changed_by", UUID(as_uuid=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "deal_stage_history",
        _id_column(),
        sa.Column(
            "deal_id",
            UUID(as_uuid=True),
            sa.ForeignKey("deals.id", ondelete="CASCADE"),
            unique=True,
            nullable=False,
        ),
        sa.Column("old_stage", sa.String(50), nullable=True),
        sa.Column("new_stage", sa.String(50), nullable=False),
        sa.Column("changed_by", UUID(as_uuid=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "activity_log",
        _id_column(),
        sa.Column("partner_id", UUID(as_uuid=True), nullable=True),
        sa.Column("user_id", UUID(as_uuid=True), nullable=True),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(100), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata", JSON(), server_default=sa.text("'{}'::json")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_activity_log_action_created", "activity_log", ["action", "created_at"])

    op.create_table(
        "notifications",
        _id_column(),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("metadata", JSON(), server_default=sa.text("'{}'::json")),
        sa.Column("is_read", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_notifications_user_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_activity_log_action_created", table_name="activity_log")
    op.drop_table("activity_log")
    op.drop_table("deal_stage_history")
    op.drop_table("lead_status_history")
    op.drop_table("deals")
    op.drop_index("ix_leads_partner_name", table_name="leads")
    op.drop_index("ix_leads_partner_email", table_name="leads")
    op.drop_table("leads")
    op.drop_table("users")
    op.drop_table("partners")
