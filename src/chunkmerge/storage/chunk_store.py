import re
import shutil
import uuid
from pathlib import Path
from typing import AsyncIterator, Optional

import aiofiles
import aiofiles.os

from chunkmerge.config import (
    CHUNK_PREFIX,
    PIECE_SIZE,
    get_chunks_base_dir,
    get_session_chunk_dir,
)
from chunkmerge.errors import ChunkNotFound
from chunkmerge.naming import is_safe_name, validate_chunk_index, validate_session_key

_CHUNK_NAME_RE = re.compile(rf"^{CHUNK_PREFIX}(\d+)$")


class ChunkStore:
    """Durable (session key, chunk index) -> bytes mapping on the local filesystem.

    Each session owns one directory under ``<data_dir>/chunks``; each chunk is a
    file named ``chunk_<index>``. Writes land in a per-call temp file first and
    are moved into place with ``os.replace``, so a reader only ever sees a whole
    chunk from a single writer.
    """

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.chunks_dir = get_chunks_base_dir(data_dir)

    def _get_session_dir(self, session_key: str) -> Path:
        validate_session_key(session_key)
        return get_session_chunk_dir(self.data_dir, session_key)

    def _get_chunk_path(self, session_key: str, index: int) -> Path:
        validate_chunk_index(index)
        return self._get_session_dir(session_key) / f"{CHUNK_PREFIX}{index}"

    async def put(self, session_key: str, index: int, data: bytes) -> None:
        chunk_path = self._get_chunk_path(session_key, index)
        session_dir = chunk_path.parent
        await aiofiles.os.makedirs(session_dir, exist_ok=True)

        tmp_path = session_dir / f".{chunk_path.name}.{uuid.uuid4().hex}.tmp"
        try:
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(data)
            await aiofiles.os.replace(tmp_path, chunk_path)
        finally:
            tmp_path.unlink(missing_ok=True)

    async def get(self, session_key: str, index: int) -> bytes:
        chunk_path = self._get_chunk_path(session_key, index)
        try:
            async with aiofiles.open(chunk_path, "rb") as f:
                return await f.read()
        except FileNotFoundError:
            raise ChunkNotFound(session_key, index) from None

    async def exists(self, session_key: str, index: int) -> bool:
        chunk_path = self._get_chunk_path(session_key, index)
        return await aiofiles.os.path.isfile(chunk_path)

    async def iter_chunk(
        self, session_key: str, index: int, piece_size: int = PIECE_SIZE
    ) -> AsyncIterator[bytes]:
        chunk_path = self._get_chunk_path(session_key, index)
        try:
            f = await aiofiles.open(chunk_path, "rb")
        except FileNotFoundError:
            raise ChunkNotFound(session_key, index) from None

        async with f:
            while True:
                piece = await f.read(piece_size)
                if not piece:
                    break
                yield piece

    async def remove(self, session_key: str) -> None:
        session_dir = self._get_session_dir(session_key)
        if session_dir.exists():
            shutil.rmtree(session_dir)

    async def list_indices(self, session_key: str) -> set[int]:
        session_dir = self._get_session_dir(session_key)
        if not session_dir.is_dir():
            return set()

        indices = set()
        for name in await aiofiles.os.listdir(session_dir):
            match = _CHUNK_NAME_RE.match(name)
            if match:
                indices.add(int(match.group(1)))
        return indices

    def list_sessions(self) -> list[str]:
        if not self.chunks_dir.exists():
            return []
        return [
            d.name
            for d in self.chunks_dir.iterdir()
            if d.is_dir() and is_safe_name(d.name)
        ]

    def session_exists(self, session_key: str) -> bool:
        return self._get_session_dir(session_key).is_dir()

    def last_modified(self, session_key: str) -> Optional[float]:
        session_dir = self._get_session_dir(session_key)
        if not session_dir.is_dir():
            return None

        mtimes = [session_dir.stat().st_mtime]
        for chunk in session_dir.glob(f"{CHUNK_PREFIX}*"):
            try:
                mtimes.append(chunk.stat().st_mtime)
            except FileNotFoundError:
                continue
        return max(mtimes)
