import asyncio
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional

import aiofiles
import aiofiles.os
from loguru import logger

from chunkmerge.config import PIECE_SIZE, get_artifacts_dir
from chunkmerge.errors import (
    MergeInProgress,
    MissingChunk,
    StorageFailure,
    UploadError,
    ValidationError,
)
from chunkmerge.naming import (
    artifact_name_for,
    validate_filename,
    validate_session_key,
    validate_total_chunks,
)
from chunkmerge.session import SessionRegistry
from chunkmerge.storage.chunk_store import ChunkStore

PARTIAL_DIR_NAME = ".partial"


@dataclass
class MergeResult:
    artifact_name: Optional[str] = None
    error: Optional[UploadError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _InflightMerge:
    total_chunks: int
    original_filename: str
    task: asyncio.Task


class MergeEngine:
    """Concatenates a session's chunks, in index order, into one artifact.

    The output is assembled in ``artifacts/.partial`` and moved onto its final
    name with a single ``os.replace`` once every chunk has been copied, so the
    artifact path never holds a half-written file.

    At most one merge runs per session. A second request with the same
    parameters joins the running merge and receives its result; a request with
    different parameters gets ``MergeInProgress``.
    """

    def __init__(
        self,
        store: ChunkStore,
        registry: SessionRegistry,
        data_dir: Path,
        piece_size: int = PIECE_SIZE,
    ):
        self.store = store
        self.registry = registry
        self.artifacts_dir = get_artifacts_dir(data_dir)
        self.partial_dir = self.artifacts_dir / PARTIAL_DIR_NAME
        self.piece_size = piece_size
        self._inflight: dict[str, _InflightMerge] = {}

    async def merge(
        self, session_key: str, total_chunks: int, original_filename: str
    ) -> MergeResult:
        try:
            validate_session_key(session_key)
            validate_filename(original_filename)
            validate_total_chunks(total_chunks)
            artifact_name = artifact_name_for(session_key, original_filename)
        except ValidationError as e:
            return MergeResult(error=e)

        inflight = self._inflight.get(session_key)
        if inflight is not None:
            if (inflight.total_chunks, inflight.original_filename) != (
                total_chunks,
                original_filename,
            ):
                return MergeResult(error=MergeInProgress(session_key))
            logger.info(f"Joining in-flight merge for session {session_key[:8]}...")
            return await asyncio.shield(inflight.task)

        task = asyncio.ensure_future(
            self._run(session_key, total_chunks, artifact_name)
        )
        self._inflight[session_key] = _InflightMerge(
            total_chunks, original_filename, task
        )
        task.add_done_callback(lambda _: self._inflight.pop(session_key, None))
        return await asyncio.shield(task)

    async def _run(
        self, session_key: str, total_chunks: int, artifact_name: str
    ) -> MergeResult:
        try:
            async with self.registry.exclusive(session_key):
                missing = await self._first_missing(session_key, total_chunks)
                if missing is not None:
                    logger.warning(
                        f"Cannot merge session {session_key[:8]}...: missing chunk {missing}"
                    )
                    return MergeResult(error=MissingChunk(missing))

                logger.info(
                    f"Merging session {session_key[:8]}... ({total_chunks} chunks)"
                )
                await self._concatenate(session_key, total_chunks, artifact_name)
                await self._cleanup(session_key)
        except UploadError as e:
            return MergeResult(error=e)
        except OSError as e:
            logger.error(f"Failed to merge session {session_key[:8]}...: {e}")
            return MergeResult(
                error=StorageFailure(f"Failed to write merged file: {e}", e)
            )

        logger.info(f"Merged session {session_key[:8]}... into {artifact_name}")
        return MergeResult(artifact_name=artifact_name)

    async def _first_missing(
        self, session_key: str, total_chunks: int
    ) -> Optional[int]:
        for index in range(total_chunks):
            if not await self.store.exists(session_key, index):
                return index
        return None

    async def _ordered_pieces(
        self, session_key: str, total_chunks: int
    ) -> AsyncIterator[bytes]:
        for index in range(total_chunks):
            async for piece in self.store.iter_chunk(
                session_key, index, self.piece_size
            ):
                yield piece

    async def _concatenate(
        self, session_key: str, total_chunks: int, artifact_name: str
    ) -> Path:
        await aiofiles.os.makedirs(self.partial_dir, exist_ok=True)
        final_path = self.artifacts_dir / artifact_name
        tmp_path = self.partial_dir / f"{uuid.uuid4().hex}.tmp"

        try:
            async with aiofiles.open(tmp_path, "wb") as out:
                async for piece in self._ordered_pieces(session_key, total_chunks):
                    await out.write(piece)
                await out.flush()
                os.fsync(out.fileno())
            await aiofiles.os.replace(tmp_path, final_path)
        finally:
            tmp_path.unlink(missing_ok=True)

        return final_path

    async def _cleanup(self, session_key: str) -> None:
        try:
            await self.store.remove(session_key)
        except OSError as e:
            logger.warning(
                f"Merged session {session_key[:8]}... but failed to delete its chunks: {e}"
            )
        await self.registry.forget(session_key)
