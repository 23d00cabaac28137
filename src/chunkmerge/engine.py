from pathlib import Path
from typing import AsyncIterator, Callable, Optional

from loguru import logger

from chunkmerge.config import PIECE_SIZE
from chunkmerge.errors import SessionNotFound, StorageFailure
from chunkmerge.merge import MergeEngine, MergeResult
from chunkmerge.naming import validate_chunk_index, validate_session_key
from chunkmerge.retrieval import RetrievalService
from chunkmerge.session import SessionInfo, SessionRegistry
from chunkmerge.storage.chunk_store import ChunkStore


class UploadEngine:
    """Entry point used by the HTTP routes and the expiry job.

    Wires the chunk store, session registry, merge engine and retrieval
    service together over one data directory.
    """

    def __init__(self, data_dir: Path, piece_size: int = PIECE_SIZE):
        self.data_dir = data_dir
        self.store = ChunkStore(data_dir)
        self.registry = SessionRegistry(self.store)
        self.merger = MergeEngine(self.store, self.registry, data_dir, piece_size)
        self.retrieval = RetrievalService(data_dir, piece_size)

    async def upload_chunk(self, session_key: str, index: int, data: bytes) -> None:
        validate_session_key(session_key)
        validate_chunk_index(index)

        async with self.registry.upload_slot(session_key):
            try:
                await self.store.put(session_key, index, data)
            except OSError as e:
                logger.error(
                    f"Failed to store chunk {index} for session {session_key[:8]}...: {e}"
                )
                raise StorageFailure(f"Failed to store chunk {index}: {e}", e) from e
            await self.registry.record_chunk(session_key, index)

        logger.debug(
            f"Stored chunk {index} for session {session_key[:8]}... ({len(data)} bytes)"
        )

    async def merge(
        self, session_key: str, total_chunks: int, original_filename: str
    ) -> MergeResult:
        return await self.merger.merge(session_key, total_chunks, original_filename)

    def fetch(self, artifact_name: str) -> AsyncIterator[bytes]:
        return self.retrieval.fetch(artifact_name)

    async def session_info(self, session_key: str) -> SessionInfo:
        validate_session_key(session_key)
        info = await self.registry.snapshot(session_key)
        if info is None:
            raise SessionNotFound(session_key)
        return info

    async def abort(
        self, session_key: str, only_if: Optional[Callable[[], bool]] = None
    ) -> bool:
        """Delete a session's chunks and metadata.

        ``only_if`` is evaluated once uploads have drained and the session is
        closed; when it returns False the session is left untouched.
        """
        validate_session_key(session_key)
        if (
            not self.store.session_exists(session_key)
            and session_key not in self.registry.sessions()
        ):
            raise SessionNotFound(session_key)

        async with self.registry.exclusive(session_key):
            if only_if is not None and not only_if():
                return False
            try:
                await self.store.remove(session_key)
            except OSError as e:
                raise StorageFailure(f"Failed to delete session chunks: {e}", e) from e
            await self.registry.forget(session_key)

        logger.info(f"Aborted session {session_key[:8]}...")
        return True
