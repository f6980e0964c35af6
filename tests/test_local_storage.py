import gzip
import json
from pathlib import Path

import pytest

from boltcache.config import (
    Config,
    LatencyFailover,
    MaxLatencyRule,
    MemoryEviction,
    StorageBackend,
    clear_config,
    set_config,
)
from boltcache.local_storage import (
    CachedBlob,
    StorageError,
    build_local_cache_path,
    delete_all_from_cache,
    load_from_cache,
    store_in_cache,
)


def _config():
    return Config(
        app_id="testapp",
        gcs_bucket="",
        s3_bucket="",
        azure_container="",
        max_concurrent_requests=10,
        downstream_base_url="http://localhost",
        downstream_timeout_secs=5,
        memory_eviction=MemoryEviction(threshold_percent=80),
        latency_failover=LatencyFailover(
            default_max_latency_ms=200,
            path_rules=[MaxLatencyRule(pattern="^/api/test", max_latency_ms=100)],
        ),
        storage_backend=StorageBackend.LOCAL,
    )


@pytest.fixture(autouse=True)
def _workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    set_config(_config())
    yield tmp_path
    clear_config()


def _write_gzip(key, payload):
    path = build_local_cache_path(key)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(gzip.compress(payload))


def test_build_local_cache_path():
    assert build_local_cache_path("abc") == Path("storage/cache/testapp/abc.gz")


def test_build_local_cache_path_without_config():
    clear_config()
    assert build_local_cache_path("abc") is None


def test_store_and_load_cache_roundtrip():
    data = b"Hello, Cache!"
    headers = [("Content-Type", "text/plain"), ("X-Test", "true")]
    store_in_cache("test_key_unit", data, headers)
    assert load_from_cache("test_key_unit") == (data, headers)


def test_stored_file_is_gzipped_json():
    path = store_in_cache("fmt", b"Hello", [("X-Test", "true")])
    document = json.loads(gzip.decompress(path.read_bytes()))
    assert document == {"body": "SGVsbG8=", "headers": [["X-Test", "true"]]}


def test_load_from_nonexistent_cache():
    assert load_from_cache("nonexistent_key_12345") is None


def test_store_invalid_utf8_body():
    data = bytes([0xFF, 0xFE, 0xFD])
    store_in_cache("invalid_utf8", data, [])
    assert load_from_cache("invalid_utf8") == (data, [])


def test_load_fails_with_corrupt_gzip():
    path = build_local_cache_path("corrupt")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"not gzip")
    assert load_from_cache("corrupt") is None


def test_load_fails_on_invalid_json():
    _write_gzip("invalid_json", b"This is not JSON")
    assert load_from_cache("invalid_json") is None


def test_load_fails_on_base64_decode():
    bad_blob = json.dumps({"body": "!!!!NOTBASE64!!!!", "headers": [["X-Test", "true"]]})
    _write_gzip("invalid_base64", bad_blob.encode())
    assert load_from_cache("invalid_base64") is None


def test_load_without_config_returns_none():
    store_in_cache("k", b"v", [])
    clear_config()
    assert load_from_cache("k") is None


def test_store_with_null_byte_key_raises():
    with pytest.raises(StorageError):
        store_in_cache("key_with_invalid_path\0", b"invalid", [])


def test_store_directory_creation_error():
    blocker = Path("storage/cache/testapp/blocker")
    blocker.parent.mkdir(parents=True)
    blocker.write_bytes(b"")
    with pytest.raises(StorageError):
        store_in_cache("blocker/bad_path_key", b"data", [])


def test_store_without_config_raises():
    clear_config()
    with pytest.raises(StorageError):
        store_in_cache("k", b"v", [])


def test_cached_blob_to_json_format():
    blob = CachedBlob(body="SGVsbG8=", headers=[("X-Test", "true")])
    assert blob.to_json() == b'{"body":"SGVsbG8=","headers":[["X-Test","true"]]}'


def test_cached_blob_json_roundtrip():
    blob = CachedBlob.from_body(b"\x00\x01data", [("a", "1"), ("b", "2")])
    parsed = CachedBlob.from_json(blob.to_json())
    assert parsed == blob
    assert parsed.decode_body() == b"\x00\x01data"


@pytest.mark.parametrize(
    "raw",
    [
        b"This is not JSON",
        b"[]",
        b'{"headers": []}',
        b'{"body": "x", "headers": "nope"}',
        b'{"body": "x", "headers": [["only-one"]]}',
        b'{"body": "x", "headers": [[1, 2]]}',
    ],
)
def test_cached_blob_from_json_rejects_malformed(raw):
    with pytest.raises(StorageError):
        CachedBlob.from_json(raw)


def test_decode_body_rejects_invalid_base64():
    with pytest.raises(StorageError):
        CachedBlob(body="!!!!NOTBASE64!!!!").decode_body()


def test_delete_all_removes_only_gz_files():
    store_in_cache("one", b"1", [])
    store_in_cache("two", b"2", [])
    other = Path("storage/cache/testapp/notes.txt")
    other.write_text("keep")
    assert delete_all_from_cache() == 2
    assert load_from_cache("one") is None
    assert other.exists()


def test_delete_all_missing_directory_raises():
    with pytest.raises(StorageError):
        delete_all_from_cache()


def test_delete_all_without_config_raises():
    clear_config()
    with pytest.raises(StorageError):
        delete_all_from_cache()