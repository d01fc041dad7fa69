"""track when the current render claim was taken

Revision ID: 0003_render_started_at
Revises: 0002_render_guard_columns
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = '0003_render_started_at'
down_revision = '0002_render_guard_columns'
branch_labels = None
depends_on = None


def _columns() -> set[str]:
    inspector = sa.inspect(op.get_bind())
    return {column["name"] for column in inspector.get_columns("signing_requests")}


def upgrade() -> None:
    if "render_started_at" in _columns():
        return
    with op.batch_alter_table("signing_requests") as batch:
        batch.add_column(sa.Column("render_started_at", sa.DateTime(), nullable=True))


def downgrade() -> None:
    if "render_started_at" not in _columns():
        return
    with op.batch_alter_table("signing_requests") as batch:
        batch.drop_column("render_started_at")
