"""SQLAlchemy database models.

Defines the metadata records for ingested knowledge. Chunk text and
vectors live in Qdrant; each KnowledgeEntry id is also its vector id.
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Agent(Base):
    """Agent owned by a tenant.

    Agents are managed elsewhere; ingestion only checks that one exists in
    the caller's tenant before linking knowledge to it.
    """
    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_agents_tenant_id", "tenant_id"),
    )


class KnowledgeEntry(Base):
    """Metadata for one stored chunk of an uploaded file."""
    __tablename__ = "knowledge_entries"

    # Same id as the chunk's vector in Qdrant
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid4()))
    title: Mapped[str] = mapped_column(String(500), nullable=False)

    # Ownership (user/tenant ids come from the identity provider as strings)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    agent_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), nullable=True)

    # Source file
    file_url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    file_type: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)

    # Position within the file
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)

    upload_session_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extra_metadata: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_knowledge_entries_tenant_id", "tenant_id"),
        Index("ix_knowledge_entries_user_id", "user_id"),
        Index("ix_knowledge_entries_agent_id", "agent_id"),
        Index("ix_knowledge_entries_created_at", "created_at"),
    )
