import tempfile
from pathlib import Path

import pytest

from chunkmerge.engine import UploadEngine
from chunkmerge.storage.chunk_store import ChunkStore


@pytest.fixture
def temp_data_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def chunk_store(temp_data_dir):
    return ChunkStore(temp_data_dir)


@pytest.fixture
def engine(temp_data_dir):
    return UploadEngine(temp_data_dir, piece_size=4)
