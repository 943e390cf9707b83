"""
Test fixtures for the chunked upload service.
"""
import hashlib
from datetime import datetime, timedelta, timezone

import boto3
import pytest
from moto import mock_aws as moto_mock_aws

from chunked_upload.chunk_store import LocalChunkStore, S3ChunkStore
from chunked_upload.hashing import HashVerifier
from chunked_upload.manager import UploadSessionManager
from chunked_upload.models import CreateSessionParams
from chunked_upload.session_store import SessionStore


class FakeClock:
    """Manually advanced clock returning timezone-aware UTC datetimes."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def sha256(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Keep boto3 away from real credentials."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def verifier():
    return HashVerifier()


@pytest.fixture
def tmp_upload_dir(tmp_path):
    """Create a temporary directory for chunk files."""
    upload_dir = tmp_path / "uploads"
    upload_dir.mkdir()
    return upload_dir


@pytest.fixture
def tmp_state_dir(tmp_path):
    """Create a temporary directory for session state."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def mock_aws():
    """Mock S3 client using moto."""
    with moto_mock_aws():
        s3 = boto3.client('s3')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def local_chunk_store(tmp_upload_dir):
    return LocalChunkStore(tmp_upload_dir)


@pytest.fixture
def s3_chunk_store(mock_aws):
    return S3ChunkStore(bucket='test-bucket', prefix='uploads/', s3_client=mock_aws)


@pytest.fixture
def session_store(tmp_state_dir, clock):
    return SessionStore(state_dir=tmp_state_dir, clock=clock)


@pytest.fixture
def manager(session_store, local_chunk_store, clock):
    return UploadSessionManager(session_store, local_chunk_store, clock=clock)


@pytest.fixture
def session_params():
    """Parameters for a three-chunk upload of b"abcdefghij"."""
    return CreateSessionParams(
        owner_id="user-1",
        subject_id="modpack-version-1",
        kind="items",
        total_size_bytes=10,
        total_chunks=3,
        chunk_size_bytes=4,
        final_hash=sha256(b"abcdefghij"),
    )
