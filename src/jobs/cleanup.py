"""Background cleanup: expired upload sessions and the stored artifacts of deleted entries."""

import asyncio
import logging

from src.core.exceptions import BlobDeleteFailure
from src.rag.uploads import UploadSessionArena
from src.rag.vector_store import VectorStore
from src.storage.blob_store import BlobStore

logger = logging.getLogger(__name__)


async def run_session_sweeper(arena: UploadSessionArena, interval_seconds: float) -> None:
    """Sweep the arena every `interval_seconds` until cancelled."""
    logger.info(f"[Cleanup] Session sweeper started (every {interval_seconds}s)")
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            arena.sweep()
        except Exception:
            # Keep the loop alive; a failed sweep is retried next interval
            logger.exception("[Cleanup] Session sweep failed")


def start_session_sweeper(arena: UploadSessionArena, interval_seconds: float) -> asyncio.Task:
    return asyncio.create_task(run_session_sweeper(arena, interval_seconds), name="session-sweeper")


async def stop_session_sweeper(task: asyncio.Task) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


async def remove_entry_artifacts(
    entry_id: str,
    file_path: str | None,
    vector_store: VectorStore,
    blob_store: BlobStore,
) -> None:
    """Drop the vector of a deleted entry and, when given, its stored file.

    Runs after the metadata row is gone. Failures are logged and left for
    manual cleanup; the entry stays deleted either way.
    """
    try:
        await vector_store.delete(entry_id)
        logger.info(f"[Cleanup] Removed vector for entry {entry_id}")
    except Exception as e:
        logger.warning(f"[Cleanup] Vector delete for entry {entry_id} failed: {e}")

    if file_path is None:
        return
    try:
        await blob_store.delete(file_path)
        logger.info(f"[Cleanup] Removed stored file {file_path}")
    except BlobDeleteFailure as e:
        logger.warning(f"[Cleanup] {e.message}")
