"""
Error types raised by the upload session components.
"""
from enum import Enum
from typing import Any, Dict, List


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_COMPLETED = "SESSION_COMPLETED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_CHUNK_INDEX = "INVALID_CHUNK_INDEX"
    HASH_MISMATCH = "HASH_MISMATCH"
    CHUNKS_MISSING = "CHUNKS_MISSING"
    FINAL_HASH_MISMATCH = "FINAL_HASH_MISMATCH"
    COMPLETED_FILE_NOT_FOUND = "COMPLETED_FILE_NOT_FOUND"
    UNKNOWN_TYPE = "UNKNOWN_TYPE"


class UploadError(Exception):
    """Base class for expected, caller-recoverable upload failures."""

    code = ErrorCode.VALIDATION_ERROR
    retryable = False

    def details(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for the request layer."""
        data = {
            "error": self.code.value,
            "message": str(self),
            "retryable": self.retryable,
        }
        data.update(self.details())
        return data


class ValidationError(UploadError, ValueError):
    """Raised when session or chunk input is malformed."""

    code = ErrorCode.VALIDATION_ERROR


class SessionNotFound(UploadError):
    """Raised when an upload session cannot be located."""

    code = ErrorCode.SESSION_NOT_FOUND

    def __init__(self, session_id: str):
        super().__init__(f"Upload session not found: {session_id}")
        self.session_id = session_id


class SessionExpired(UploadError):
    """Raised when a session's deadline has passed. Start a new session."""

    code = ErrorCode.SESSION_EXPIRED

    def __init__(self, session_id: str):
        super().__init__(f"Upload session has expired: {session_id}")
        self.session_id = session_id


class SessionAlreadyCompleted(UploadError):
    """Raised when a completed session is asked to change."""

    code = ErrorCode.SESSION_COMPLETED

    def __init__(self, session_id: str):
        super().__init__(f"Upload session already completed: {session_id}")
        self.session_id = session_id


class SessionForbidden(UploadError):
    """Raised when a principal other than the owner touches a session."""

    code = ErrorCode.FORBIDDEN

    def __init__(self, session_id: str):
        super().__init__(f"Not authorized for upload session: {session_id}")
        self.session_id = session_id


class InvalidChunkIndex(UploadError):
    """Raised when a chunk index falls outside [0, total_chunks)."""

    code = ErrorCode.INVALID_CHUNK_INDEX

    def __init__(self, index: int, total_chunks: int):
        super().__init__(
            f"Invalid chunk index: {index} (expected 0-{total_chunks - 1})"
        )
        self.index = index
        self.total_chunks = total_chunks

    def details(self) -> Dict[str, Any]:
        return {"chunkIndex": self.index, "totalChunks": self.total_chunks}


class ChunkHashMismatch(UploadError):
    """Raised when chunk bytes do not match their claimed digest."""

    code = ErrorCode.HASH_MISMATCH
    retryable = True

    def __init__(self, expected: str, actual: str):
        super().__init__(f"Chunk hash mismatch: expected {expected}, received {actual}")
        self.expected = expected
        self.actual = actual

    def details(self) -> Dict[str, Any]:
        return {"expected": self.expected, "received": self.actual}


class ChunksMissing(UploadError):
    """Raised when reassembly is attempted before every chunk is stored."""

    code = ErrorCode.CHUNKS_MISSING
    retryable = True

    def __init__(self, missing: List[int]):
        super().__init__(f"Chunks missing: {', '.join(str(i) for i in missing)}")
        self.missing = list(missing)

    def details(self) -> Dict[str, Any]:
        return {"chunksMissing": self.missing}


class FinalHashMismatch(UploadError):
    """Raised when the reassembled payload does not match the declared hash."""

    code = ErrorCode.FINAL_HASH_MISMATCH

    def __init__(self, expected: str, actual: str):
        super().__init__(
            f"Final file hash mismatch: expected {expected}, received {actual}"
        )
        self.expected = expected
        self.actual = actual

    def details(self) -> Dict[str, Any]:
        return {
            "expected": self.expected,
            "received": self.actual,
            "finalHashVerified": False,
        }


class CompletedFileNotFound(UploadError):
    """Raised when a completed file is requested but not stored."""

    code = ErrorCode.COMPLETED_FILE_NOT_FOUND

    def __init__(self, session_id: str):
        super().__init__(f"Completed file not found for session: {session_id}")
        self.session_id = session_id


class UnknownUploadKind(UploadError):
    """Raised when no processor is registered for a session kind."""

    code = ErrorCode.UNKNOWN_TYPE

    def __init__(self, kind: str):
        super().__init__(f"No processor registered for upload kind: {kind}")
        self.kind = kind
