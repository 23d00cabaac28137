from chunkmerge.storage.chunk_store import ChunkStore

__all__ = ["ChunkStore"]
