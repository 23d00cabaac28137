import os
from pathlib import Path

HTTP_PORT = int(os.environ.get("CHUNKMERGE_PORT", "5000"))

# Streaming read size used when concatenating chunks and serving artifacts
PIECE_SIZE = 64 * 1024

DEFAULT_SESSION_TTL_MINUTES = 24 * 60
DEFAULT_EXPIRY_INTERVAL_MINUTES = 10

CHUNK_PREFIX = "chunk_"
MERGED_INFIX = "_merged_"


def get_default_data_dir() -> Path:
    env_dir = os.environ.get("CHUNKMERGE_DATA_DIR")
    if env_dir:
        return Path(env_dir).expanduser().resolve()
    return Path.home() / ".chunkmerge"


def get_chunks_base_dir(data_dir: Path) -> Path:
    return data_dir / "chunks"


def get_session_chunk_dir(data_dir: Path, session_key: str) -> Path:
    return get_chunks_base_dir(data_dir) / session_key


def get_artifacts_dir(data_dir: Path) -> Path:
    return data_dir / "artifacts"


def get_session_ttl_minutes() -> int:
    return int(
        os.environ.get(
            "CHUNKMERGE_SESSION_TTL_MINUTES", str(DEFAULT_SESSION_TTL_MINUTES)
        )
    )


def get_cors_origins() -> list[str]:
    raw = os.environ.get("CHUNKMERGE_CORS_ORIGINS", "*")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]
