"""
Module for tracking and persisting upload session state.
"""
import json
import logging
import os
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .exceptions import (
    ChunksMissing,
    InvalidChunkIndex,
    SessionAlreadyCompleted,
    SessionNotFound,
    ValidationError,
)
from .hashing import HashVerifier, default_verifier
from .models import CreateSessionParams, UploadSession, utcnow

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = timedelta(hours=1)


def _session_to_dict(session: UploadSession) -> dict:
    return {
        'id': session.id,
        'owner_id': session.owner_id,
        'subject_id': session.subject_id,
        'kind': session.kind,
        'total_size_bytes': session.total_size_bytes,
        'total_chunks': session.total_chunks,
        'chunk_size_bytes': session.chunk_size_bytes,
        'final_hash': session.final_hash,
        'received_chunks': sorted(session.received_chunks),
        'created_at': session.created_at.isoformat(),
        'expires_at': session.expires_at.isoformat(),
        'completed_at': session.completed_at.isoformat() if session.completed_at else None,
    }


def _session_from_dict(data: dict) -> UploadSession:
    completed_at = data.get('completed_at')
    return UploadSession(
        id=data['id'],
        owner_id=data['owner_id'],
        subject_id=data['subject_id'],
        kind=data['kind'],
        total_size_bytes=data['total_size_bytes'],
        total_chunks=data['total_chunks'],
        chunk_size_bytes=data['chunk_size_bytes'],
        final_hash=data['final_hash'],
        received_chunks=set(data.get('received_chunks', [])),
        created_at=datetime.fromisoformat(data['created_at']),
        expires_at=datetime.fromisoformat(data['expires_at']),
        completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
    )


def _snapshot(session: UploadSession) -> UploadSession:
    return replace(session, received_chunks=set(session.received_chunks))


class SessionStore:
    """Tracks upload session metadata and received-chunk sets.

    Every session has its own lock, held across that session's mutation and
    its state file write. The registry lock only guards the in-memory maps,
    so work on one session never waits on another session's I/O.
    """

    def __init__(self, state_dir: Optional[Path] = None,
                 verifier: Optional[HashVerifier] = None,
                 session_ttl: timedelta = DEFAULT_SESSION_TTL,
                 clock: Callable[[], datetime] = utcnow):
        """Initialize the session store.

        Args:
            state_dir: Directory for per-session JSON state. If None, state is kept in memory only.
            verifier: Digest format checker for declared final hashes
            session_ttl: Time from creation until a pending session expires
            clock: Returns the current UTC time
        """
        self.state_dir = Path(state_dir) if state_dir else None
        if self.state_dir:
            self.state_dir.mkdir(parents=True, exist_ok=True)

        self.verifier = verifier or default_verifier
        self.session_ttl = session_ttl
        self._clock = clock
        self._sessions: Dict[str, UploadSession] = {}
        self._session_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

        self._load_state()

    def _state_path(self, session_id: str) -> Path:
        return self.state_dir / f"{session_id}.json"

    def _load_state(self) -> None:
        """Load persisted sessions from the state directory."""
        if not self.state_dir:
            return

        for path in sorted(self.state_dir.glob("*.json")):
            try:
                with open(path, 'r') as f:
                    session = _session_from_dict(json.load(f))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.error(f"Error loading session state {path}: {e}")
                continue

            self._sessions[session.id] = session
            self._session_locks[session.id] = threading.Lock()

        if self._sessions:
            logger.info(f"Loaded {len(self._sessions)} upload sessions from {self.state_dir}")

    def _save_session(self, session: UploadSession) -> None:
        """Write one session's state. Caller holds the session lock."""
        if not self.state_dir:
            return

        path = self._state_path(session.id)
        tmp_path = path.with_name(f".{path.name}.tmp")
        with open(tmp_path, 'w') as f:
            json.dump(_session_to_dict(session), f, indent=2)
        os.replace(tmp_path, path)

    def _session_lock(self, session_id: str) -> threading.Lock:
        with self._lock:
            lock = self._session_locks.get(session_id)
        if lock is None:
            raise SessionNotFound(session_id)
        return lock

    def _live_session(self, session_id: str) -> UploadSession:
        """Return the stored session. Caller holds the session lock."""
        session = self._sessions.get(session_id)
        if session is None:
            # Deleted while the caller waited on the lock
            raise SessionNotFound(session_id)
        return session

    def create(self, params: CreateSessionParams) -> UploadSession:
        """Create and persist a new pending session.

        Args:
            params: Validated session parameters

        Returns:
            The new session

        Raises:
            ValidationError: If the final hash is not well-formed
        """
        if not self.verifier.is_well_formed(params.final_hash):
            raise ValidationError(
                f"Invalid hash format: {params.final_hash!r} "
                f"(expected {self.verifier.algorithm}:...)"
            )

        now = self._clock()
        session = UploadSession(
            id=uuid.uuid4().hex,
            owner_id=params.owner_id,
            subject_id=params.subject_id,
            kind=params.kind,
            total_size_bytes=params.total_size_bytes,
            total_chunks=params.total_chunks,
            chunk_size_bytes=params.chunk_size_bytes,
            final_hash=params.final_hash,
            created_at=now,
            expires_at=now + self.session_ttl,
        )
        lock = threading.Lock()

        with lock:
            with self._lock:
                self._sessions[session.id] = session
                self._session_locks[session.id] = lock
            self._save_session(session)
            return _snapshot(session)

    def get(self, session_id: str) -> Optional[UploadSession]:
        """Get a copy of a session.

        Args:
            session_id: Session identifier

        Returns:
            UploadSession if found, None otherwise
        """
        try:
            lock = self._session_lock(session_id)
        except SessionNotFound:
            return None

        with lock:
            session = self._sessions.get(session_id)
            return _snapshot(session) if session else None

    def record_chunk_received(self, session_id: str, chunk_index: int) -> UploadSession:
        """Add a chunk index to the session's received set.

        The update is a set union under the session lock, so concurrent
        calls for different indices never lose each other's index.

        Args:
            session_id: Session identifier
            chunk_index: Index of the stored chunk

        Returns:
            Copy of the updated session
        """
        with self._session_lock(session_id):
            session = self._live_session(session_id)
            if session.is_completed:
                raise SessionAlreadyCompleted(session_id)
            if not 0 <= chunk_index < session.total_chunks:
                raise InvalidChunkIndex(chunk_index, session.total_chunks)

            if chunk_index not in session.received_chunks:
                session.received_chunks.add(chunk_index)
                self._save_session(session)
            return _snapshot(session)

    def mark_completed(self, session_id: str) -> UploadSession:
        """Set completed_at on a session that has every chunk.

        Args:
            session_id: Session identifier

        Returns:
            Copy of the completed session
        """
        with self._session_lock(session_id):
            session = self._live_session(session_id)
            if session.is_completed:
                raise SessionAlreadyCompleted(session_id)
            missing = session.missing_chunks()
            if missing:
                raise ChunksMissing(missing)

            session.completed_at = self._clock()
            self._save_session(session)
            return _snapshot(session)

    def _snapshot_all(self) -> List[UploadSession]:
        with self._lock:
            entries = [
                (session_id, self._session_locks[session_id])
                for session_id in self._sessions
            ]

        snapshots = []
        for session_id, lock in entries:
            with lock:
                session = self._sessions.get(session_id)
                if session is not None:
                    snapshots.append(_snapshot(session))
        return snapshots

    def list_all(self) -> List[UploadSession]:
        """List every session, oldest first."""
        return sorted(self._snapshot_all(), key=lambda s: s.created_at)

    def list_expired(self, now: datetime) -> List[UploadSession]:
        """List pending sessions whose deadline is at or before now."""
        return [
            s for s in self._snapshot_all()
            if not s.is_completed and s.is_expired(now)
        ]

    def list_completed_before(self, cutoff: datetime) -> List[UploadSession]:
        """List completed sessions finished before the cutoff."""
        return [
            s for s in self._snapshot_all()
            if s.completed_at is not None and s.completed_at < cutoff
        ]

    def delete(self, session_id: str) -> None:
        """Remove a session record. Deleting a missing session is a no-op."""
        try:
            lock = self._session_lock(session_id)
        except SessionNotFound:
            return

        with lock:
            with self._lock:
                removed = self._sessions.pop(session_id, None)
                self._session_locks.pop(session_id, None)
            if removed and self.state_dir:
                self._state_path(session_id).unlink(missing_ok=True)
