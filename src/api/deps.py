"""FastAPI dependency injection.

Provides common dependencies for API routes.
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth.middleware import UserClaims, get_current_user
from src.core.config import Settings, get_settings
from src.db.database import get_db
from src.db.repository import AgentRepository, KnowledgeRepository
from src.rag.ingestion import KnowledgeIngestionCoordinator, get_vector_writer
from src.rag.orchestrator import RAGOrchestrator, get_orchestrator
from src.rag.processor import get_processor
from src.rag.uploads import StreamingUploadReceiver, UploadSessionArena, get_upload_arena
from src.rag.vector_store import VectorStore, get_vector_store
from src.storage.blob_store import BlobStore, get_blob_store

# Type aliases for cleaner signatures
CurrentUser = Annotated[UserClaims, Depends(get_current_user)]
DB = Annotated[AsyncSession, Depends(get_db)]
AppSettings = Annotated[Settings, Depends(get_settings)]
Arena = Annotated[UploadSessionArena, Depends(get_upload_arena)]
Orchestrator = Annotated[RAGOrchestrator, Depends(get_orchestrator)]
Vectors = Annotated[VectorStore, Depends(get_vector_store)]
Blobs = Annotated[BlobStore, Depends(get_blob_store)]


# Repository dependencies
async def get_knowledge_repo(db: DB) -> KnowledgeRepository:
    """Get knowledge entry repository."""
    return KnowledgeRepository(db)


async def get_agent_repo(db: DB) -> AgentRepository:
    """Get agent lookup repository."""
    return AgentRepository(db)


KnowledgeRepo = Annotated[KnowledgeRepository, Depends(get_knowledge_repo)]
AgentRepo = Annotated[AgentRepository, Depends(get_agent_repo)]


# Pipeline dependencies
def get_upload_receiver(settings: AppSettings, arena: Arena) -> StreamingUploadReceiver:
    return StreamingUploadReceiver(settings, arena)


async def get_coordinator(
    knowledge_repo: KnowledgeRepo, agent_repo: AgentRepo
) -> KnowledgeIngestionCoordinator:
    return KnowledgeIngestionCoordinator(
        processor=get_processor(),
        blob_store=get_blob_store(),
        knowledge_store=knowledge_repo,
        agents=agent_repo,
        vector_writer=get_vector_writer(),
    )


UploadReceiver = Annotated[StreamingUploadReceiver, Depends(get_upload_receiver)]
Coordinator = Annotated[KnowledgeIngestionCoordinator, Depends(get_coordinator)]
