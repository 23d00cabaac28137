from pathlib import Path
from typing import AsyncIterator

import aiofiles

from chunkmerge.config import PIECE_SIZE, get_artifacts_dir
from chunkmerge.errors import ArtifactNotFound
from chunkmerge.naming import resolve_inside


class RetrievalService:
    def __init__(self, data_dir: Path, piece_size: int = PIECE_SIZE):
        self.artifacts_dir = get_artifacts_dir(data_dir)
        self.piece_size = piece_size

    def locate(self, artifact_name: str) -> Path:
        """Resolve an artifact name to its file, refusing anything outside the artifact area."""
        path = resolve_inside(self.artifacts_dir, artifact_name)
        if path is None or not path.is_file():
            raise ArtifactNotFound(artifact_name)
        return path

    def fetch(self, artifact_name: str) -> AsyncIterator[bytes]:
        path = self.locate(artifact_name)
        return self._read_pieces(path)

    async def _read_pieces(self, path: Path) -> AsyncIterator[bytes]:
        async with aiofiles.open(path, "rb") as f:
            while True:
                piece = await f.read(self.piece_size)
                if not piece:
                    break
                yield piece
