"""
Module for coordinating chunked upload sessions from creation to cleanup.
"""
import logging
import threading
from datetime import datetime
from typing import Callable, Dict, Optional

from .chunk_store import ChunkStore
from .exceptions import (
    ChunkHashMismatch,
    ChunksMissing,
    FinalHashMismatch,
    InvalidChunkIndex,
    SessionAlreadyCompleted,
    SessionExpired,
    SessionForbidden,
    SessionNotFound,
    UnknownUploadKind,
    ValidationError,
)
from .hashing import HashVerifier, default_verifier
from .models import (
    CompletedFile,
    CreateSessionParams,
    ProcessingResult,
    SessionStatus,
    StoreChunkResult,
    UploadSession,
    utcnow,
)
from .session_store import SessionStore

logger = logging.getLogger(__name__)

Processor = Callable[[CompletedFile, str, str], int]


class UploadSessionManager:
    """Runs the upload session state machine.

    A session is pending until every chunk has arrived and the reassembled
    bytes match the declared final hash; only then is it completed. Failed
    verification leaves it pending so the caller can retry.
    """

    def __init__(self, session_store: SessionStore, chunk_store: ChunkStore,
                 verifier: Optional[HashVerifier] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """Initialize the upload session manager.

        Args:
            session_store: Session metadata storage
            chunk_store: Chunk and completed file storage
            verifier: Digest calculator and comparator
            clock: Returns the current UTC time
        """
        self.session_store = session_store
        self.chunk_store = chunk_store
        self.verifier = verifier or default_verifier
        self._clock = clock or utcnow
        self._processors: Dict[str, Processor] = {}
        self._lock = threading.Lock()

    def _require_session(self, session_id: str,
                         owner_id: Optional[str] = None) -> UploadSession:
        session = self.session_store.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if owner_id is not None and session.owner_id != owner_id:
            logger.warning(f"Principal {owner_id} denied access to session {session_id}")
            raise SessionForbidden(session_id)
        return session

    def register_processor(self, kind: str, processor: Processor) -> None:
        """Register the function that consumes completed uploads of a kind.

        Args:
            kind: Session kind, e.g. "icons" or "items"
            processor: Called with (completed_file, kind, subject_id); returns the processed item count
        """
        with self._lock:
            self._processors[kind] = processor

    def create_session(self, owner_id: str, subject_id: str, kind: str,
                       total_size: int, total_chunks: int, chunk_size: int,
                       final_hash: str) -> UploadSession:
        """Start a new upload session.

        Args:
            owner_id: Principal creating the upload
            subject_id: Target the upload belongs to
            kind: Payload type routed to a processor on completion
            total_size: Declared payload size in bytes
            total_chunks: Declared number of chunks
            chunk_size: Size of every chunk except possibly the last
            final_hash: Digest the reassembled payload must match

        Returns:
            The new pending session

        Raises:
            ValidationError: On a malformed hash or non-positive sizes
        """
        params = CreateSessionParams(
            owner_id=owner_id,
            subject_id=subject_id,
            kind=kind,
            total_size_bytes=total_size,
            total_chunks=total_chunks,
            chunk_size_bytes=chunk_size,
            final_hash=final_hash,
        )
        session = self.session_store.create(params)
        self.chunk_store.reserve(session.id)

        logger.info(
            f"Created upload session {session.id} ({kind}, {total_chunks} chunks, "
            f"{total_size} bytes) for {subject_id}"
        )
        return session

    def store_chunk(self, session_id: str, chunk_index: int, data: bytes,
                    expected_chunk_hash: str,
                    owner_id: Optional[str] = None) -> StoreChunkResult:
        """Verify and store one chunk.

        A chunk whose bytes do not match its claimed digest is not stored
        and its index stays missing.

        Args:
            session_id: Session identifier
            chunk_index: Zero-based chunk index
            data: Raw chunk bytes
            expected_chunk_hash: Digest the client claims for the bytes
            owner_id: If given, must match the session owner

        Returns:
            Received and remaining chunk counts
        """
        session = self._require_session(session_id, owner_id)
        if session.is_completed:
            raise SessionAlreadyCompleted(session_id)
        # Checked on every chunk so a slow trickle cannot outlive the deadline
        if session.is_expired(self._clock()):
            raise SessionExpired(session_id)
        if isinstance(chunk_index, bool) or not isinstance(chunk_index, int) \
                or not 0 <= chunk_index < session.total_chunks:
            raise InvalidChunkIndex(chunk_index, session.total_chunks)
        if not self.verifier.is_well_formed(expected_chunk_hash):
            raise ValidationError(
                f"Invalid chunk hash format: {expected_chunk_hash!r} "
                f"(expected {self.verifier.algorithm}:...)"
            )
        if not data:
            raise ValidationError("Chunk body must not be empty")
        if len(data) > session.chunk_size_bytes:
            raise ValidationError(
                f"Chunk {chunk_index} is {len(data)} bytes, "
                f"larger than chunk size {session.chunk_size_bytes}"
            )

        actual_hash = self.verifier.hash(data)
        if not self.verifier.matches(actual_hash, expected_chunk_hash):
            logger.warning(
                f"Chunk {chunk_index} of session {session_id} rejected: "
                f"expected {expected_chunk_hash}, got {actual_hash}"
            )
            raise ChunkHashMismatch(expected_chunk_hash, actual_hash)

        self.chunk_store.put(session_id, chunk_index, data)
        try:
            updated = self.session_store.record_chunk_received(session_id, chunk_index)
        except SessionNotFound:
            self._discard_orphaned_files(session_id)
            raise

        received = len(updated.received_chunks)
        logger.debug(f"Session {session_id}: chunk {chunk_index} stored ({received}/{updated.total_chunks})")
        return StoreChunkResult(
            session_id=session_id,
            chunk_index=chunk_index,
            chunk_hash=actual_hash,
            chunks_received=received,
            chunks_remaining=updated.total_chunks - received,
        )

    def get_status(self, session_id: str) -> SessionStatus:
        """Get session metadata and the ascending list of missing chunks."""
        return SessionStatus.from_session(self._require_session(session_id))

    def reassemble_and_verify(self, session_id: str,
                              owner_id: Optional[str] = None) -> CompletedFile:
        """Concatenate all chunks in index order and check the final hash.

        Args:
            session_id: Session identifier
            owner_id: If given, must match the session owner

        Returns:
            Handle to the verified completed file

        Raises:
            ChunksMissing: If any chunk has not been received
            FinalHashMismatch: If the payload does not match the declared hash
            SessionAlreadyCompleted: If the session was already verified
        """
        session = self._require_session(session_id, owner_id)
        if session.is_completed:
            raise SessionAlreadyCompleted(session_id)

        missing = session.missing_chunks()
        if missing:
            raise ChunksMissing(missing)

        chunks = self.chunk_store.read_all_ordered(session_id, session.total_chunks)
        payload = b"".join(chunks)
        actual_hash = self.verifier.hash(payload)

        if not self.verifier.matches(actual_hash, session.final_hash):
            logger.error(
                f"Final hash mismatch for session {session_id}: "
                f"expected {session.final_hash}, got {actual_hash} ({len(payload)} bytes)"
            )
            raise FinalHashMismatch(session.final_hash, actual_hash)

        location = self.chunk_store.put_completed(session_id, payload)
        try:
            self.session_store.mark_completed(session_id)
        except SessionNotFound:
            self._discard_orphaned_files(session_id)
            raise

        logger.info(f"Upload session {session_id} verified ({len(payload)} bytes)")
        return CompletedFile(
            session_id=session_id,
            kind=session.kind,
            subject_id=session.subject_id,
            location=location,
            size_bytes=len(payload),
            hash=actual_hash,
        )

    def read_completed_file(self, session_id: str) -> bytes:
        """Read the verified payload of a completed session."""
        return self.chunk_store.read_completed(session_id)

    def _stored_completed_file(self, session: UploadSession) -> CompletedFile:
        """Handle to the completed file kept from an earlier verification.

        The stored bytes are checked against the declared hash again; chunks
        are not reassembled.

        Raises:
            CompletedFileNotFound: If the completed file was already cleaned up
            FinalHashMismatch: If the stored file changed since verification
        """
        payload = self.chunk_store.read_completed(session.id)
        actual_hash = self.verifier.hash(payload)
        if not self.verifier.matches(actual_hash, session.final_hash):
            logger.error(
                f"Stored completed file for session {session.id} no longer matches: "
                f"expected {session.final_hash}, got {actual_hash}"
            )
            raise FinalHashMismatch(session.final_hash, actual_hash)

        return CompletedFile(
            session_id=session.id,
            kind=session.kind,
            subject_id=session.subject_id,
            location=self.chunk_store.completed_location(session.id),
            size_bytes=len(payload),
            hash=actual_hash,
        )

    def _discard_orphaned_files(self, session_id: str) -> None:
        # The record was removed by a concurrent cleanup after our write
        # recreated the session's storage; nothing would sweep it later.
        logger.warning(f"Session {session_id} deleted during write; removing its files")
        self.chunk_store.delete_all(session_id)

    def complete_upload(self, session_id: str,
                        owner_id: Optional[str] = None) -> ProcessingResult:
        """Verify a finished upload, hand it to its processor, then clean up.

        If an earlier call verified the upload but its processor failed, the
        stored completed file is processed again.

        Args:
            session_id: Session identifier
            owner_id: If given, must match the session owner

        Returns:
            ProcessingResult with the processor's item count
        """
        session = self._require_session(session_id, owner_id)
        with self._lock:
            processor = self._processors.get(session.kind)
        if processor is None:
            raise UnknownUploadKind(session.kind)

        if session.is_completed:
            logger.info(f"Retrying processing of completed upload session {session_id}")
            completed = self._stored_completed_file(session)
        else:
            completed = self.reassemble_and_verify(session_id, owner_id)

        try:
            processed = processor(completed, session.kind, session.subject_id)
        except Exception as e:
            logger.error(f"Processing {session.kind} upload {session_id} failed: {e}")
            raise

        self.cleanup_session_files(session_id)
        logger.info(f"Processed {processed} {session.kind} from upload session {session_id}")
        return ProcessingResult(
            session_id=session_id,
            kind=session.kind,
            items_processed=processed,
            hash=completed.hash,
        )

    def cleanup_session_files(self, session_id: str) -> None:
        """Delete chunks and any completed file; the session record is kept."""
        self.chunk_store.delete_all(session_id)

    def delete_session(self, session_id: str) -> None:
        """Delete a session's files and its record."""
        self.cleanup_session_files(session_id)
        self.session_store.delete(session_id)
        logger.info(f"Deleted upload session {session_id}")

    def _purge(self, session: UploadSession) -> None:
        try:
            self.cleanup_session_files(session.id)
        except Exception as e:
            # A leftover file only leaks disk; the record is still removed
            logger.warning(f"Failed to clean up files for session {session.id}: {e}")
        self.session_store.delete(session.id)

    def cleanup_expired_sessions(self, now: Optional[datetime] = None) -> int:
        """Remove pending sessions whose deadline has passed.

        Returns:
            Number of sessions removed
        """
        expired = self.session_store.list_expired(now or self._clock())
        for session in expired:
            self._purge(session)
        return len(expired)

    def cleanup_completed_sessions(self, cutoff: datetime) -> int:
        """Remove completed sessions finished before the cutoff.

        Returns:
            Number of sessions removed
        """
        old_sessions = self.session_store.list_completed_before(cutoff)
        for session in old_sessions:
            self._purge(session)
        return len(old_sessions)
