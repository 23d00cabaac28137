"""Error taxonomy shared by the storage, session and merge layers.

Every error carries the HTTP status the transport layer should answer with,
so routes can map failures without inspecting their type.
"""


class UploadError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(UploadError):
    status_code = 400


class InvalidKey(ValidationError):
    pass


class MissingChunk(UploadError):
    status_code = 400

    def __init__(self, index: int):
        super().__init__(f"Missing chunk: {index}")
        self.index = index


class NotFound(UploadError):
    status_code = 404


class ChunkNotFound(NotFound):
    def __init__(self, session_key: str, index: int):
        super().__init__(f"Chunk {index} not found for session {session_key}")
        self.session_key = session_key
        self.index = index


class ArtifactNotFound(NotFound):
    def __init__(self, artifact_name: str):
        super().__init__("File not found")
        self.artifact_name = artifact_name


class SessionNotFound(NotFound):
    def __init__(self, session_key: str):
        super().__init__(f"Session {session_key} not found")
        self.session_key = session_key


class StorageFailure(UploadError):
    status_code = 500

    def __init__(self, message: str, cause: OSError | None = None):
        super().__init__(message)
        self.cause = cause


class ConcurrencyConflict(UploadError):
    status_code = 409


class MergeInProgress(ConcurrencyConflict):
    def __init__(self, session_key: str):
        super().__init__(f"Merge already in progress for session {session_key}")
        self.session_key = session_key


class SessionClosed(ConcurrencyConflict):
    def __init__(self, session_key: str):
        super().__init__(f"Session {session_key} is merging and accepts no more chunks")
        self.session_key = session_key
