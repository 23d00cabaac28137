from pathlib import Path

from chunkmerge.config import MERGED_INFIX
from chunkmerge.errors import InvalidKey, ValidationError

# Filesystems cap a path component at 255 bytes, not characters
MAX_NAME_BYTES = 255

_FORBIDDEN_CHARS = ("/", "\\", "\x00")


def _encoded_length(value: str) -> int:
    return len(value.encode("utf-8", errors="surrogatepass"))


def is_safe_name(value) -> bool:
    if not isinstance(value, str) or not value:
        return False
    if _encoded_length(value) > MAX_NAME_BYTES:
        return False
    if value in (".", ".."):
        return False
    if any(ch in value for ch in _FORBIDDEN_CHARS):
        return False
    # Windows drive prefixes like "C:" would re-root a joined path
    if len(value) >= 2 and value[1] == ":":
        return False
    return True


def validate_session_key(session_key) -> str:
    if not is_safe_name(session_key):
        raise InvalidKey(f"Invalid session key: {session_key!r}")
    return session_key


def validate_filename(filename) -> str:
    if not is_safe_name(filename):
        raise ValidationError(f"Invalid filename: {filename!r}")
    return filename


def validate_chunk_index(index) -> int:
    if isinstance(index, bool) or not isinstance(index, int) or index < 0:
        raise ValidationError(f"Invalid chunk index: {index!r}")
    return index


def validate_total_chunks(total_chunks) -> int:
    if isinstance(total_chunks, bool) or not isinstance(total_chunks, int):
        raise ValidationError(f"totalChunks must be an integer, got {total_chunks!r}")
    if total_chunks < 0:
        raise ValidationError(f"totalChunks must be >= 0, got {total_chunks}")
    return total_chunks


def artifact_name_for(session_key: str, original_filename: str) -> str:
    name = f"{session_key}{MERGED_INFIX}{original_filename}"
    if _encoded_length(name) > MAX_NAME_BYTES:
        raise ValidationError("Session key and filename are too long to name the artifact")
    return name


def resolve_inside(base_dir: Path, name: str) -> Path | None:
    """Join ``name`` onto ``base_dir`` and return it only if it stays a direct child."""
    if not is_safe_name(name):
        return None
    candidate = (base_dir / name).resolve()
    if candidate.parent != base_dir.resolve():
        return None
    return candidate
