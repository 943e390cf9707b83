"""
Tests for the local and S3 chunk stores.
"""
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError
from tenacity import wait_none

from chunked_upload.chunk_store import (
    LocalChunkStore,
    S3ChunkStore,
    chunk_name,
    is_retryable_error,
)
from chunked_upload.exceptions import ChunksMissing, CompletedFileNotFound


@pytest.fixture(params=["local", "s3"])
def chunk_store(request):
    """Run the shared contract tests against both backends."""
    return request.getfixturevalue(f"{request.param}_chunk_store")


@pytest.fixture(autouse=True)
def no_wait():
    """Remove wait time between retries for testing."""
    with patch.object(S3ChunkStore._put_object.retry, 'wait', wait_none()), \
            patch.object(S3ChunkStore._get_object.retry, 'wait', wait_none()):
        yield


def client_error(code: str, operation: str = 'test_operation') -> ClientError:
    return ClientError({'Error': {'Code': code, 'Message': f'{code} error'}}, operation)


def test_chunk_name_is_zero_padded():
    assert chunk_name(0) == "chunk-000000"
    assert chunk_name(42) == "chunk-000042"


def test_read_all_ordered_returns_index_order(chunk_store):
    """Test that chunks stored out of order come back in index order."""
    chunk_store.reserve("s1")
    chunk_store.put("s1", 2, b"ij")
    chunk_store.put("s1", 0, b"abcd")
    chunk_store.put("s1", 1, b"efgh")

    assert chunk_store.read_all_ordered("s1", 3) == [b"abcd", b"efgh", b"ij"]


def test_put_overwrites_existing_chunk(chunk_store):
    chunk_store.put("s1", 0, b"old!")
    chunk_store.put("s1", 0, b"new!")

    assert chunk_store.read_all_ordered("s1", 1) == [b"new!"]


def test_read_all_ordered_reports_missing_indices(chunk_store):
    chunk_store.put("s1", 0, b"abcd")
    chunk_store.put("s1", 3, b"mnop")

    with pytest.raises(ChunksMissing) as exc_info:
        chunk_store.read_all_ordered("s1", 4)

    assert exc_info.value.missing == [1, 2]


def test_sessions_are_isolated(chunk_store):
    chunk_store.put("s1", 0, b"one")
    chunk_store.put("s2", 0, b"two")

    chunk_store.delete_all("s1")

    assert chunk_store.read_all_ordered("s2", 1) == [b"two"]
    with pytest.raises(ChunksMissing):
        chunk_store.read_all_ordered("s1", 1)


def test_completed_file_round_trip(chunk_store):
    location = chunk_store.put_completed("s1", b"abcdefghij")

    assert "s1" in location
    assert location == chunk_store.completed_location("s1")
    assert chunk_store.read_completed("s1") == b"abcdefghij"


def test_read_completed_without_file_raises(chunk_store):
    with pytest.raises(CompletedFileNotFound):
        chunk_store.read_completed("s1")


def test_delete_all_removes_chunks_and_completed_file(chunk_store):
    chunk_store.put("s1", 0, b"abcd")
    chunk_store.put_completed("s1", b"abcd")

    chunk_store.delete_all("s1")

    with pytest.raises(CompletedFileNotFound):
        chunk_store.read_completed("s1")
    with pytest.raises(ChunksMissing):
        chunk_store.read_all_ordered("s1", 1)


def test_delete_all_is_idempotent(chunk_store):
    chunk_store.delete_all("never-created")
    chunk_store.put("s1", 0, b"abcd")
    chunk_store.delete_all("s1")
    chunk_store.delete_all("s1")


@pytest.mark.parametrize("session_id", ["../escape", "a/b", "", "s1\x00"])
def test_rejects_unsafe_session_ids(chunk_store, session_id):
    with pytest.raises(ValueError):
        chunk_store.put(session_id, 0, b"data")


def test_local_store_layout(local_chunk_store, tmp_upload_dir):
    """Test that chunks land in a per-session directory."""
    local_chunk_store.reserve("s1")
    assert (tmp_upload_dir / "sessions" / "s1").is_dir()

    local_chunk_store.put("s1", 7, b"data")
    location = local_chunk_store.put_completed("s1", b"data")

    session_dir = tmp_upload_dir / "sessions" / "s1"
    assert (session_dir / "chunk-000007").read_bytes() == b"data"
    assert location == str(session_dir / "complete")
    assert not list(session_dir.glob("*.tmp"))


def test_local_store_concurrent_writes_to_same_index(local_chunk_store):
    """Test that concurrent writes to one index leave one whole payload."""
    payloads = [bytes([i]) * 4096 for i in range(16)]

    with ThreadPoolExecutor(max_workers=8) as executor:
        list(executor.map(lambda p: local_chunk_store.put("s1", 0, p), payloads))

    [stored] = local_chunk_store.read_all_ordered("s1", 1)
    assert stored in payloads


def test_s3_store_uses_session_prefix(s3_chunk_store, mock_aws):
    s3_chunk_store.put("s1", 1, b"efgh")
    location = s3_chunk_store.put_completed("s1", b"abcdefgh")

    keys = [obj['Key'] for obj in mock_aws.list_objects_v2(Bucket='test-bucket')['Contents']]
    assert sorted(keys) == ["uploads/sessions/s1/chunk-000001", "uploads/sessions/s1/complete"]
    assert location == "s3://test-bucket/uploads/sessions/s1/complete"


def test_s3_delete_all_handles_many_objects(s3_chunk_store, mock_aws):
    """Test that bulk delete pages and batches over many chunks."""
    for index in range(1005):
        s3_chunk_store.put("s1", index, b"x")

    s3_chunk_store.delete_all("s1")

    response = mock_aws.list_objects_v2(Bucket='test-bucket', Prefix='uploads/sessions/s1/')
    assert response.get('KeyCount', 0) == 0


def test_s3_put_retries_on_transient_failure():
    """Test that chunk writes retry on throttling."""
    mock_client = MagicMock()
    mock_client.put_object.side_effect = [
        client_error('SlowDown', 'put_object'),
        client_error('RequestTimeout', 'put_object'),
        {},
    ]
    store = S3ChunkStore(bucket='test-bucket', s3_client=mock_client)

    store.put("s1", 0, b"abcd")

    assert mock_client.put_object.call_count == 3


def test_s3_put_gives_up_after_three_attempts():
    mock_client = MagicMock()
    mock_client.put_object.side_effect = client_error('ServiceUnavailable', 'put_object')
    store = S3ChunkStore(bucket='test-bucket', s3_client=mock_client)

    with pytest.raises(ClientError):
        store.put("s1", 0, b"abcd")

    assert mock_client.put_object.call_count == 3


def test_s3_put_does_not_retry_permanent_errors():
    mock_client = MagicMock()
    mock_client.put_object.side_effect = client_error('AccessDenied', 'put_object')
    store = S3ChunkStore(bucket='test-bucket', s3_client=mock_client)

    with pytest.raises(ClientError):
        store.put("s1", 0, b"abcd")

    assert mock_client.put_object.call_count == 1


def test_s3_store_requires_bucket():
    with pytest.raises(ValueError):
        S3ChunkStore(bucket='', s3_client=MagicMock())


def test_is_retryable_error():
    """Test error classification for retries."""
    retryable_codes = [
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
    ]

    non_retryable_codes = [
        'AccessDenied',
        'NoSuchBucket',
        'NoSuchKey',
        'InvalidRequest'
    ]

    for code in retryable_codes:
        assert is_retryable_error(client_error(code))

    for code in non_retryable_codes:
        assert not is_retryable_error(client_error(code))

    assert not is_retryable_error(ValueError("not an S3 error"))
