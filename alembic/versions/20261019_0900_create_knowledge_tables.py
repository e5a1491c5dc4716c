"""Create agents and knowledge_entries tables.

Revision ID: 20261019_0900_knowledge
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261019_0900_knowledge"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "agents",
        sa.Column("id", sa.UUID(as_uuid=False), primary_key=True),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
    )
    op.create_index("ix_agents_tenant_id", "agents", ["tenant_id"])

    op.create_table(
        "knowledge_entries",
        sa.Column("id", sa.UUID(as_uuid=False), primary_key=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("agent_id", sa.UUID(as_uuid=False), nullable=True),
        sa.Column("file_url", sa.String(2000), nullable=True),
        sa.Column("file_name", sa.String(500), nullable=False),
        sa.Column("file_type", sa.String(255), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("total_chunks", sa.Integer(), nullable=False),
        sa.Column("upload_session_id", sa.String(255), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("extra_metadata", postgresql.JSONB(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
    )
    op.create_index("ix_knowledge_entries_tenant_id", "knowledge_entries", ["tenant_id"])
    op.create_index("ix_knowledge_entries_user_id", "knowledge_entries", ["user_id"])
    op.create_index("ix_knowledge_entries_agent_id", "knowledge_entries", ["agent_id"])
    op.create_index("ix_knowledge_entries_created_at", "knowledge_entries", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_knowledge_entries_created_at", table_name="knowledge_entries")
    op.drop_index("ix_knowledge_entries_agent_id", table_name="knowledge_entries")
    op.drop_index("ix_knowledge_entries_user_id", table_name="knowledge_entries")
    op.drop_index("ix_knowledge_entries_tenant_id", table_name="knowledge_entries")
    op.drop_table("knowledge_entries")
    op.drop_index("ix_agents_tenant_id", table_name="agents")
    op.drop_table("agents")
