"""
Module containing data models for chunked upload sessions.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, Set

from .exceptions import ValidationError


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _require_positive_int(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    if value <= 0:
        raise ValidationError(f"{name} must be a positive number")


def _require_text(name: str, value: Any) -> None:
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{name} cannot be empty")


@dataclass
class CreateSessionParams:
    """Parameters declared by a client when starting an upload."""
    owner_id: str
    subject_id: str
    kind: str
    total_size_bytes: int
    total_chunks: int
    chunk_size_bytes: int
    final_hash: str

    def __post_init__(self):
        """Validate the declared sizes and identifiers."""
        _require_text("owner_id", self.owner_id)
        _require_text("subject_id", self.subject_id)
        _require_text("kind", self.kind)
        _require_positive_int("total_size_bytes", self.total_size_bytes)
        _require_positive_int("total_chunks", self.total_chunks)
        _require_positive_int("chunk_size_bytes", self.chunk_size_bytes)

        # Extra declared chunks are allowed; too few could never hold the payload
        if self.total_chunks * self.chunk_size_bytes < self.total_size_bytes:
            raise ValidationError(
                f"total_chunks {self.total_chunks} of {self.chunk_size_bytes} bytes "
                f"cannot hold total_size_bytes {self.total_size_bytes}"
            )


@dataclass
class UploadSession:
    """Represents one in-flight or completed upload."""
    id: str
    owner_id: str
    subject_id: str
    kind: str
    total_size_bytes: int
    total_chunks: int
    chunk_size_bytes: int
    final_hash: str
    created_at: datetime
    expires_at: datetime
    received_chunks: Set[int] = field(default_factory=set)
    completed_at: Optional[datetime] = None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def missing_chunks(self) -> List[int]:
        """Indices in [0, total_chunks) not yet received, ascending."""
        return [i for i in range(self.total_chunks) if i not in self.received_chunks]


@dataclass
class StoreChunkResult:
    """Represents the outcome of one accepted chunk."""
    session_id: str
    chunk_index: int
    chunk_hash: str
    chunks_received: int
    chunks_remaining: int


@dataclass
class SessionStatus:
    """Read-only view of a session for status queries."""
    session_id: str
    kind: str
    subject_id: str
    total_size_bytes: int
    total_chunks: int
    chunk_size_bytes: int
    final_hash: str
    received_chunks: List[int]
    missing_chunks: List[int]
    expires_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_session(cls, session: UploadSession) -> "SessionStatus":
        return cls(
            session_id=session.id,
            kind=session.kind,
            subject_id=session.subject_id,
            total_size_bytes=session.total_size_bytes,
            total_chunks=session.total_chunks,
            chunk_size_bytes=session.chunk_size_bytes,
            final_hash=session.final_hash,
            received_chunks=sorted(session.received_chunks),
            missing_chunks=session.missing_chunks(),
            expires_at=session.expires_at,
            completed_at=session.completed_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "type": self.kind,
            "subjectId": self.subject_id,
            "totalSize": self.total_size_bytes,
            "totalChunks": self.total_chunks,
            "chunkSize": self.chunk_size_bytes,
            "finalHash": self.final_hash,
            "chunksReceived": self.received_chunks,
            "chunksMissing": self.missing_chunks,
            "expiresAt": self.expires_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class CompletedFile:
    """Handle to a reassembled payload that passed final verification."""
    session_id: str
    kind: str
    subject_id: str
    location: str
    size_bytes: int
    hash: str


@dataclass
class ProcessingResult:
    """Represents the result of processing a completed upload."""
    session_id: str
    kind: str
    items_processed: int
    hash: str


@dataclass
class CleanupReport:
    """Counts of sessions removed by one cleanup sweep."""
    expired: int = 0
    completed: int = 0
