"""Database repositories for knowledge metadata.

Provides async operations for knowledge entries and the agent lookup
used during ingestion.
"""

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import MetadataPersistFailure
from src.db.models import Agent, KnowledgeEntry

logger = logging.getLogger(__name__)


class KnowledgeRepository:
    """Repository for knowledge entry operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def bulk_insert(self, entries: list[KnowledgeEntry]) -> list[KnowledgeEntry]:
        """Insert all entries in one transaction.

        Raises:
            MetadataPersistFailure: The insert or commit failed; nothing is kept
        """
        if not entries:
            return []
        try:
            self.db.add_all(entries)
            await self.db.flush()
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"[KnowledgeRepository] Bulk insert of {len(entries)} entries failed: {e}")
            raise MetadataPersistFailure(f"Database error: {e}") from e
        return entries

    async def list_for_user(
        self,
        user_id: str,
        tenant_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[KnowledgeEntry]:
        """Entries uploaded by a user, newest first."""
        query = (
            select(KnowledgeEntry)
            .where(KnowledgeEntry.user_id == user_id, KnowledgeEntry.tenant_id == tenant_id)
            .order_by(KnowledgeEntry.created_at.desc(), KnowledgeEntry.chunk_index.asc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_for_user(self, entry_id: str, user_id: str, tenant_id: str) -> KnowledgeEntry | None:
        """Get an entry only if it belongs to the user in this tenant."""
        result = await self.db.execute(
            select(KnowledgeEntry).where(
                KnowledgeEntry.id == entry_id,
                KnowledgeEntry.user_id == user_id,
                KnowledgeEntry.tenant_id == tenant_id,
            )
        )
        return result.scalar_one_or_none()

    async def delete(self, entry: KnowledgeEntry) -> None:
        """Delete one entry and commit.

        Raises:
            MetadataPersistFailure: The delete or commit failed
        """
        try:
            await self.db.delete(entry)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"[KnowledgeRepository] Delete of {entry.id} failed: {e}")
            raise MetadataPersistFailure(f"Database error: {e}") from e

    async def count_by_file_url(self, file_url: str) -> int:
        """Entries still pointing at a stored file (other chunks of the same upload)."""
        result = await self.db.execute(
            select(func.count()).select_from(KnowledgeEntry).where(KnowledgeEntry.file_url == file_url)
        )
        return result.scalar_one()


class AgentRepository:
    """Read-only agent lookup."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def exists_in_tenant(self, agent_id: str, tenant_id: str) -> bool:
        result = await self.db.execute(
            select(Agent.id).where(
                Agent.id == agent_id,
                Agent.tenant_id == tenant_id,
                Agent.is_active,
            )
        )
        return result.scalar_one_or_none() is not None
