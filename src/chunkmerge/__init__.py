from chunkmerge.engine import UploadEngine
from chunkmerge.errors import (
    ArtifactNotFound,
    ChunkNotFound,
    ConcurrencyConflict,
    InvalidKey,
    MergeInProgress,
    MissingChunk,
    NotFound,
    SessionClosed,
    SessionNotFound,
    StorageFailure,
    UploadError,
    ValidationError,
)
from chunkmerge.merge import MergeEngine, MergeResult
from chunkmerge.retrieval import RetrievalService
from chunkmerge.session import SessionInfo, SessionRegistry
from chunkmerge.storage import ChunkStore

__all__ = [
    "UploadEngine",
    "ChunkStore",
    "SessionRegistry",
    "SessionInfo",
    "MergeEngine",
    "MergeResult",
    "RetrievalService",
    "UploadError",
    "ValidationError",
    "InvalidKey",
    "MissingChunk",
    "NotFound",
    "ChunkNotFound",
    "ArtifactNotFound",
    "SessionNotFound",
    "StorageFailure",
    "ConcurrencyConflict",
    "MergeInProgress",
    "SessionClosed",
]
