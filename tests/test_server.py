import logging
from pathlib import Path

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer, make_mocked_request

from boltcache.admin import ALL_BACKENDS_MESSAGE, MEMORY_ONLY_MESSAGE
from boltcache.config import (
    Config,
    ConfigError,
    LatencyFailover,
    MemoryEviction,
    StorageBackend,
    clear_config,
    get_config,
)
from boltcache.latency import clear_latency_failures
from boltcache.memory import MEMORY_CACHE, CachedResponse
from boltcache.metrics import METRICS
from boltcache.proxy import NO_CACHE_MESSAGE, TOO_MANY_REQUESTS_MESSAGE
from boltcache.server import (
    DEFAULT_CONFIG_PATH,
    create_app,
    init_logging,
    init_selected_backend,
    main,
    metrics_handler,
    parse_args,
)


def make_config(**overrides):
    values = dict(
        app_id="test-app",
        gcs_bucket="",
        s3_bucket="",
        azure_container="",
        max_concurrent_requests=10,
        downstream_base_url="http://127.0.0.1:9",
        downstream_timeout_secs=1,
        memory_eviction=MemoryEviction(threshold_percent=100),
        latency_failover=LatencyFailover(default_max_latency_ms=1000, path_rules=[]),
        storage_backend=StorageBackend.LOCAL,
    )
    values.update(overrides)
    return Config(**values)


def _reset_state():
    clear_config()
    MEMORY_CACHE.clear()
    METRICS.reset()
    clear_latency_failures()


@pytest.fixture(autouse=True)
def isolated_state(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    _reset_state()
    yield
    _reset_state()


@pytest.fixture
def root_level():
    root = logging.getLogger()
    saved = root.level
    yield root
    root.setLevel(saved)


def test_parse_args_default_config_path():
    assert parse_args([]).config == DEFAULT_CONFIG_PATH
    assert DEFAULT_CONFIG_PATH == "config.yaml"


def test_parse_args_custom_config_path():
    assert parse_args(["--config", "config.prod.yaml"]).config == "config.prod.yaml"


def test_parse_args_version_exits_cleanly():
    with pytest.raises(SystemExit) as exc:
        parse_args(["--version"])
    assert exc.value.code == 0


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("debug", logging.DEBUG),
        ("WARN", logging.WARNING),
        ("error", logging.ERROR),
        ("nonsense", logging.INFO),
    ],
)
def test_init_logging_uses_log_level(monkeypatch, root_level, raw, expected):
    monkeypatch.setenv("LOG_LEVEL", raw)
    assert init_logging("test-app") == expected
    assert root_level.level == expected


def test_init_logging_defaults_to_info(monkeypatch, root_level):
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    assert init_logging("test-app") == logging.INFO
    assert root_level.level == logging.INFO


def test_init_selected_backend_without_config_fails():
    with pytest.raises(ConfigError):
        init_selected_backend(None)


@pytest.mark.parametrize("backend", list(StorageBackend))
def test_init_selected_backend_reports_backend(backend):
    config = make_config(storage_backend=backend, gcs_bucket="bucket")
    assert init_selected_backend(config) is backend


@pytest.mark.asyncio
async def test_metrics_handler_renders_counters():
    METRICS.increment("cachebolt_proxy_requests_total", {"uri": "/a"})
    response = await metrics_handler(make_mocked_request("GET", "/metrics"))
    assert response.status == 200
    assert "# TYPE cachebolt_proxy_requests_total counter" in response.text
    assert 'cachebolt_proxy_requests_total{uri="/a"} 1' in response.text


def test_create_app_without_config_fails():
    with pytest.raises(ConfigError):
        create_app(None)


def test_create_app_installs_config():
    config = make_config()
    create_app(config)
    assert get_config() is config


@pytest.mark.asyncio
async def test_downstream_failure_without_cache_returns_502():
    async with TestClient(TestServer(create_app(make_config()))) as client:
        response = await client.get("/missing")
        assert response.status == 502
        assert await response.text() == NO_CACHE_MESSAGE
    assert METRICS.counter_value("cachebolt_downstream_failures_total", {"uri": "/missing"}) == 1


@pytest.mark.asyncio
async def test_concurrency_limit_without_cache_returns_502():
    config = make_config(max_concurrent_requests=0)
    async with TestClient(TestServer(create_app(config))) as client:
        response = await client.get("/busy")
        assert response.status == 502
        assert await response.text() == TOO_MANY_REQUESTS_MESSAGE
    assert (
        METRICS.counter_value("cachebolt_rejected_due_to_concurrency_total", {"uri": "/busy"}) == 1
    )


@pytest.mark.asyncio
async def test_proxy_serves_and_caches_downstream_response():
    async def hello(request):
        return web.Response(text="hello", content_type="text/plain")

    downstream_app = web.Application()
    downstream_app.router.add_get("/hello", hello)
    async with TestServer(downstream_app) as downstream:
        config = make_config(downstream_base_url=f"http://{downstream.host}:{downstream.port}")
        async with TestClient(TestServer(create_app(config))) as client:
            first = await client.get("/hello")
            assert first.status == 200
            assert await first.text() == "hello"
            second = await client.get("/hello")
            assert second.status == 200
            assert await second.text() == "hello"
            assert second.headers["Content-Type"].startswith("text/plain")

    assert METRICS.counter_value("cachebolt_memory_hits_total", {"uri": "/hello"}) == 1
    assert METRICS.counter_value("cachebolt_proxy_requests_total", {"uri": "/hello"}) == 2
    assert len(MEMORY_CACHE) == 1


@pytest.mark.asyncio
async def test_metrics_route_reports_requests():
    async with TestClient(TestServer(create_app(make_config()))) as client:
        await client.get("/missing")
        response = await client.get("/metrics")
        assert response.status == 200
        assert 'cachebolt_proxy_requests_total{uri="/missing"} 1' in await response.text()


@pytest.mark.asyncio
async def test_delete_cache_clears_memory_only():
    MEMORY_CACHE.put("key", CachedResponse(body=b"data"))
    async with TestClient(TestServer(create_app(make_config()))) as client:
        response = await client.delete("/cache")
        assert response.status == 200
        assert await response.json() == {"message": MEMORY_ONLY_MESSAGE}
    assert len(MEMORY_CACHE) == 0


@pytest.mark.asyncio
async def test_delete_cache_with_backend_removes_files():
    cache_dir = Path("storage") / "cache" / "test-app"
    cache_dir.mkdir(parents=True)
    stored = cache_dir / "entry.gz"
    stored.write_bytes(b"x")
    MEMORY_CACHE.put("key", CachedResponse(body=b"data"))
    async with TestClient(TestServer(create_app(make_config()))) as client:
        response = await client.delete("/cache", params={"backend": "true"})
        assert response.status == 200
        assert await response.json() == {"message": ALL_BACKENDS_MESSAGE}
    assert not stored.exists()
    assert len(MEMORY_CACHE) == 0


def test_main_fails_for_missing_config():
    assert main(["--config", "nonexistent_config.yaml"]) == 1


def test_main_fails_for_empty_gcs_bucket(tmp_path):
    path = tmp_path / "invalid_config.yaml"
    path.write_text(
        """
app_id: fail-app
gcs_bucket: ""
s3_bucket: unused
azure_container: unused
max_concurrent_requests: 10
downstream_base_url: http://localhost
downstream_timeout_secs: 5
memory_eviction:
  threshold_percent: 70
latency_failover:
  default_max_latency_ms: 100
  path_rules: []
storage_backend: gcs
""",
        encoding="utf-8",
    )
    assert main(["--config", str(path)]) == 1
    assert get_config() is None


def test_main_fails_for_malformed_yaml(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("app_id: test\n  - invalid_yaml", encoding="utf-8")
    assert main(["--config", str(path)]) == 1