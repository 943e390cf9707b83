from .chunk_store import ChunkStore, LocalChunkStore, S3ChunkStore
from .exceptions import (
    UploadError,
    ValidationError,
    SessionNotFound,
    SessionExpired,
    SessionAlreadyCompleted,
    SessionForbidden,
    InvalidChunkIndex,
    ChunkHashMismatch,
    ChunksMissing,
    FinalHashMismatch,
    CompletedFileNotFound,
    UnknownUploadKind,
)
from .hashing import HashVerifier
from .manager import UploadSessionManager
from .models import CompletedFile, SessionStatus, StoreChunkResult, UploadSession
from .scheduler import CleanupScheduler
from .session_store import SessionStore

__version__ = "0.1.0"

__all__ = [
    "ChunkStore",
    "LocalChunkStore",
    "S3ChunkStore",
    "UploadError",
    "ValidationError",
    "SessionNotFound",
    "SessionExpired",
    "SessionAlreadyCompleted",
    "SessionForbidden",
    "InvalidChunkIndex",
    "ChunkHashMismatch",
    "ChunksMissing",
    "FinalHashMismatch",
    "CompletedFileNotFound",
    "UnknownUploadKind",
    "HashVerifier",
    "UploadSessionManager",
    "CompletedFile",
    "SessionStatus",
    "StoreChunkResult",
    "UploadSession",
    "CleanupScheduler",
    "SessionStore",
]
