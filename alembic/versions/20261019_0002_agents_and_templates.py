"""Add per-project agent allow-list and reusable queue templates."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "project_agents",
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["project_id"], ["projects.project_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("project_id", "agent_id"),
    )

    op.create_table(
        "queue_templates",
        sa.Column("template_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("queues_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("template_id"),
    )
    op.create_index("ix_queue_templates_name", "queue_templates", ["name"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_queue_templates_name", table_name="queue_templates")
    op.drop_table("queue_templates")
    op.drop_table("project_agents")
