"""add render guard columns to signing_requests

Revision ID: 0002_render_guard_columns
Revises: 0001_initial
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = '0002_render_guard_columns'
down_revision = '0001_initial'
branch_labels = None
depends_on = None


def _columns() -> set[str]:
    inspector = sa.inspect(op.get_bind())
    return {column["name"] for column in inspector.get_columns("signing_requests")}


def upgrade() -> None:
    existing = _columns()
    with op.batch_alter_table("signing_requests") as batch:
        if "render_status" not in existing:
            batch.add_column(sa.Column("render_status", sa.String(length=32), nullable=False, server_default="IDLE"))
        if "render_attempts" not in existing:
            batch.add_column(sa.Column("render_attempts", sa.Integer(), nullable=False, server_default="0"))


def downgrade() -> None:
    existing = _columns()
    with op.batch_alter_table("signing_requests") as batch:
        if "render_attempts" in existing:
            batch.drop_column("render_attempts")
        if "render_status" in existing:
            batch.drop_column("render_status")
