"""
Module for durable storage of upload chunks and completed files.
"""
import logging
import os
import re
import shutil
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Union

import boto3
from botocore.exceptions import ClientError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
    before_log,
    after_log
)

from .exceptions import ChunksMissing, CompletedFileNotFound

logger = logging.getLogger(__name__)

SESSIONS_SUBDIR = "sessions"
COMPLETE_NAME = "complete"
DELETE_BATCH_SIZE = 1000

_SESSION_ID_RE = re.compile(r"[A-Za-z0-9_-]+")


def chunk_name(chunk_index: int) -> str:
    """Zero-padded chunk name so lexical and index order agree."""
    return f"chunk-{chunk_index:06d}"


def is_retryable_error(exception: BaseException) -> bool:
    """Check if an exception should trigger a retry.

    Args:
        exception: The exception to check

    Returns:
        True if the error is retryable, False otherwise
    """
    if isinstance(exception, ClientError):
        error_code = exception.response['Error']['Code']
        return error_code in {
            'RequestTimeout',
            'RequestTimeoutException',
            'PriorRequestNotComplete',
            'ConnectionError',
            'ThrottlingException',
            'ThrottledException',
            'ServiceUnavailable',
            'SlowDown',
            'InternalError',
            'Throttling',
            '5XX'
        }
    return False


def _is_missing_key(exception: ClientError) -> bool:
    return exception.response['Error']['Code'] in {'NoSuchKey', '404', 'NotFound'}


s3_retry = retry(
    retry=retry_if_exception(is_retryable_error),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    before=before_log(logger, logging.DEBUG),
    after=after_log(logger, logging.DEBUG),
    reraise=True
)


class ChunkStore(ABC):
    """Storage for the chunks of in-progress uploads, isolated per session."""

    @abstractmethod
    def reserve(self, session_id: str) -> None:
        """Claim the storage namespace for a new session."""

    @abstractmethod
    def put(self, session_id: str, chunk_index: int, data: bytes) -> None:
        """Store a chunk, replacing any previous bytes for the same index."""

    @abstractmethod
    def read_all_ordered(self, session_id: str, chunk_count: int) -> List[bytes]:
        """Read chunks 0..chunk_count-1 in index order.

        Raises:
            ChunksMissing: If any index in the range is not stored
        """

    @abstractmethod
    def completed_location(self, session_id: str) -> str:
        """Location of the completed file, whether or not it exists yet."""

    @abstractmethod
    def put_completed(self, session_id: str, data: bytes) -> str:
        """Store the reassembled payload and return its location."""

    @abstractmethod
    def read_completed(self, session_id: str) -> bytes:
        """Read back the reassembled payload.

        Raises:
            CompletedFileNotFound: If no completed file is stored
        """

    @abstractmethod
    def delete_all(self, session_id: str) -> None:
        """Remove every chunk and the completed file. Idempotent."""


class LocalChunkStore(ChunkStore):
    """Keeps chunks as files under <root>/sessions/<session_id>/."""

    def __init__(self, root: Union[str, Path]):
        """Initialize the local chunk store.

        Args:
            root: Base upload directory
        """
        self.root = Path(root)
        self.sessions_dir = self.root / SESSIONS_SUBDIR
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

    def _session_dir(self, session_id: str) -> Path:
        if not _SESSION_ID_RE.fullmatch(session_id):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.sessions_dir / session_id

    def _write_atomic(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            with open(tmp_path, 'wb') as f:
                f.write(data)
            os.replace(tmp_path, path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    def reserve(self, session_id: str) -> None:
        self._session_dir(session_id).mkdir(parents=True, exist_ok=True)

    def put(self, session_id: str, chunk_index: int, data: bytes) -> None:
        path = self._session_dir(session_id) / chunk_name(chunk_index)
        self._write_atomic(path, data)
        logger.debug(f"Stored chunk {chunk_index} for session {session_id} ({len(data)} bytes)")

    def read_all_ordered(self, session_id: str, chunk_count: int) -> List[bytes]:
        session_dir = self._session_dir(session_id)
        paths = [session_dir / chunk_name(i) for i in range(chunk_count)]

        missing = [i for i, path in enumerate(paths) if not path.is_file()]
        if missing:
            raise ChunksMissing(missing)

        chunks = []
        for path in paths:
            with open(path, 'rb') as f:
                chunks.append(f.read())
        return chunks

    def completed_location(self, session_id: str) -> str:
        return str(self._session_dir(session_id) / COMPLETE_NAME)

    def put_completed(self, session_id: str, data: bytes) -> str:
        path = self._session_dir(session_id) / COMPLETE_NAME
        self._write_atomic(path, data)
        return str(path)

    def read_completed(self, session_id: str) -> bytes:
        path = self._session_dir(session_id) / COMPLETE_NAME
        try:
            with open(path, 'rb') as f:
                return f.read()
        except FileNotFoundError:
            raise CompletedFileNotFound(session_id) from None

    def delete_all(self, session_id: str) -> None:
        try:
            shutil.rmtree(self._session_dir(session_id))
        except FileNotFoundError:
            pass


class S3ChunkStore(ChunkStore):
    """Keeps chunks as S3 objects under <prefix>sessions/<session_id>/."""

    def __init__(self, bucket: str, prefix: str = "uploads/", s3_client=None):
        """Initialize the S3 chunk store.

        Args:
            bucket: S3 bucket name
            prefix: Key prefix for all session objects
            s3_client: Optional preconfigured boto3 S3 client
        """
        if not bucket:
            raise ValueError("bucket cannot be empty")
        self.bucket = bucket
        self.prefix = prefix
        self.s3_client = s3_client or boto3.client('s3')

    def _session_prefix(self, session_id: str) -> str:
        if not _SESSION_ID_RE.fullmatch(session_id):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return f"{self.prefix}{SESSIONS_SUBDIR}/{session_id}/"

    def _chunk_key(self, session_id: str, chunk_index: int) -> str:
        return self._session_prefix(session_id) + chunk_name(chunk_index)

    def _complete_key(self, session_id: str) -> str:
        return self._session_prefix(session_id) + COMPLETE_NAME

    @s3_retry
    def _put_object(self, key: str, data: bytes) -> None:
        self.s3_client.put_object(Bucket=self.bucket, Key=key, Body=data)

    @s3_retry
    def _get_object(self, key: str) -> Optional[bytes]:
        """Fetch an object body, or None if the key does not exist."""
        try:
            response = self.s3_client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_missing_key(e):
                return None
            raise
        return response['Body'].read()

    @s3_retry
    def _delete_batch(self, keys: List[str]) -> None:
        response = self.s3_client.delete_objects(
            Bucket=self.bucket,
            Delete={'Objects': [{'Key': key} for key in keys], 'Quiet': True}
        )
        for error in response.get('Errors', []):
            logger.error(f"Error deleting {error.get('Key')}: {error.get('Message')}")

    def reserve(self, session_id: str) -> None:
        # Object storage has no directories; validating the id is enough.
        self._session_prefix(session_id)

    def put(self, session_id: str, chunk_index: int, data: bytes) -> None:
        key = self._chunk_key(session_id, chunk_index)
        self._put_object(key, data)
        logger.debug(f"Stored chunk {chunk_index} for session {session_id} at s3://{self.bucket}/{key}")

    def read_all_ordered(self, session_id: str, chunk_count: int) -> List[bytes]:
        chunks = []
        missing = []
        for index in range(chunk_count):
            body = self._get_object(self._chunk_key(session_id, index))
            if body is None:
                missing.append(index)
            else:
                chunks.append(body)

        if missing:
            raise ChunksMissing(missing)
        return chunks

    def completed_location(self, session_id: str) -> str:
        return f"s3://{self.bucket}/{self._complete_key(session_id)}"

    def put_completed(self, session_id: str, data: bytes) -> str:
        self._put_object(self._complete_key(session_id), data)
        return self.completed_location(session_id)

    def read_completed(self, session_id: str) -> bytes:
        body = self._get_object(self._complete_key(session_id))
        if body is None:
            raise CompletedFileNotFound(session_id)
        return body

    def delete_all(self, session_id: str) -> None:
        paginator = self.s3_client.get_paginator('list_objects_v2')
        keys = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=self._session_prefix(session_id)):
            keys.extend(obj['Key'] for obj in page.get('Contents', []))

        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            self._delete_batch(keys[start:start + DELETE_BATCH_SIZE])

        if keys:
            logger.debug(f"Deleted {len(keys)} objects for session {session_id}")
