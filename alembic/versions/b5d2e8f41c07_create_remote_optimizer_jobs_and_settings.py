"""create remote_optimizer_jobs and settings tables

Revision ID: b5d2e8f41c07
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "b5d2e8f41c07"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the remote job table and the key/value settings table."""
    op.create_table(
        "remote_optimizer_jobs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("template_id", sa.String(length=255), nullable=False),
        sa.Column("template_name", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="queued"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("hetzner_server_id", sa.BigInteger(), nullable=True),
        sa.Column("remote_server_ip", sa.String(length=64), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_remote_optimizer_jobs_template_id"), "remote_optimizer_jobs", ["template_id"], unique=False
    )
    op.create_index(op.f("ix_remote_optimizer_jobs_status"), "remote_optimizer_jobs", ["status"], unique=False)

    op.create_table(
        "settings",
        sa.Column("setting_key", sa.String(length=255), nullable=False),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("setting_key"),
    )


def downgrade() -> None:
    """Drop both tables."""
    op.drop_table("settings")
    op.drop_index(op.f("ix_remote_optimizer_jobs_status"), table_name="remote_optimizer_jobs")
    op.drop_index(op.f("ix_remote_optimizer_jobs_template_id"), table_name="remote_optimizer_jobs")
    op.drop_table("remote_optimizer_jobs")
