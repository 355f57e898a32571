"""openpolicy core tables

Revision ID: 20261017_0001
Revises:
Create Date: 2026-10-17

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP"))


def upgrade() -> None:
    op.create_table(
        "workspaces",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("slug", sa.String(length=64), nullable=False),
        sa.Column("plan", sa.String(length=128), nullable=True),
        sa.Column("polar_customer_id", sa.String(length=128), nullable=True),
        sa.Column("subscription_id", sa.String(length=128), nullable=True),
        sa.Column("subscription_status", sa.String(length=32), nullable=True),
        sa.Column("subscription_current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("custom_domain", sa.String(length=255), nullable=True),
        sa.Column("logo", sa.Text(), nullable=True),
        sa.Column("logo_path", sa.String(length=512), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("usage_revision", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("custom_domain", name="uq_workspaces_custom_domain"),
    )
    op.create_index("ix_workspaces_owner_id", "workspaces", ["owner_id"])
    op.create_index("ix_workspaces_subscription_id", "workspaces", ["subscription_id"])
    op.create_index("uq_workspaces_slug_lower", "workspaces", [sa.text("lower(slug)")], unique=True)

    op.create_table(
        "pending_workspaces",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("plan", sa.String(length=128), nullable=True),
        sa.Column("slug", sa.String(length=64), nullable=True),
        sa.Column("customer_id", sa.String(length=128), nullable=True),
        sa.Column("customer_email", sa.String(length=255), nullable=True),
        sa.Column("customer_external_id", sa.String(length=128), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pending_workspaces_owner_id", "pending_workspaces", ["owner_id"])
    op.create_index("ix_pending_workspaces_slug", "pending_workspaces", ["slug"])
    op.create_index("ix_pending_workspaces_created_at", "pending_workspaces", ["created_at"])

    op.create_table(
        "documents",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("slug", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("type", sa.String(length=32), nullable=False, server_default="other"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="draft"),
        sa.Column("published", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["workspace_id"], ["workspaces.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_documents_workspace_created_at", "documents", ["workspace_id", "created_at"])
    op.create_index(
        "uq_documents_workspace_slug_lower",
        "documents",
        ["workspace_id", sa.text("lower(slug)")],
        unique=True,
    )

    op.create_table(
        "billing_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("workspace_id", sa.String(length=36), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="received"),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("error_message", sa.String(length=255), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["workspace_id"], ["workspaces.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id", name="uq_billing_events_event_id"),
    )
    op.create_index("ix_billing_events_created_at", "billing_events", ["created_at"])
    op.create_index(
        "ix_billing_events_workspace_created_at",
        "billing_events",
        ["workspace_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_billing_events_workspace_created_at", table_name="billing_events")
    op.drop_index("ix_billing_events_created_at", table_name="billing_events")
    op.drop_table("billing_events")

    op.drop_index("uq_documents_workspace_slug_lower", table_name="documents")
    op.drop_index("ix_documents_workspace_created_at", table_name="documents")
    op.drop_table("documents")

    op.drop_index("ix_pending_workspaces_created_at", table_name="pending_workspaces")
    op.drop_index("ix_pending_workspaces_slug", table_name="pending_workspaces")
    op.drop_index("ix_pending_workspaces_owner_id", table_name="pending_workspaces")
    op.drop_table("pending_workspaces")

    op.drop_index("uq_workspaces_slug_lower", table_name="workspaces")
    op.drop_index("ix_workspaces_subscription_id", table_name="workspaces")
    op.drop_index("ix_workspaces_owner_id", table_name="workspaces")
    op.drop_table("workspaces")
