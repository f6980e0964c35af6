# boltcache

A caching reverse proxy built on aiohttp. Each `GET` request is forwarded to
a downstream service. The response goes into an in-memory LRU cache and, with
the `local` storage backend, into a gzip-compressed file on disk. When the
downstream service fails, times out, or has recently answered too slowly, the
proxy answers from the cache instead.

## Features

- Cache keys are the SHA-256 of the request URI plus its headers. Header names
  are lower-cased and sorted. Headers listed in `ignored_headers` are left out.
- An unbounded in-memory LRU cache (`boltcache.memory.MemoryCache`). After
  each insert, least recently used entries are evicted while system memory use
  is at or above `memory_eviction.threshold_percent` (80 when no configuration
  is installed). A background task checks memory use every second and tries to
  evict whenever the percentage has risen since the last check.
- Latency failover. If a downstream response takes longer than the limit for
  its path, that URI is served only from the cache for the next 300 seconds.
- A limit on concurrent downstream requests (`max_concurrent_requests`). When
  every slot is taken, a request is answered from memory if it can be, and
  otherwise gets `502 Too many concurrent requests and no cache available`.
- When neither cache has the entry, failures get
  `502 Downstream error and no cache`.
- Persistent cache files at `storage/cache/<app_id>/<key>.gz`, relative to the
  working directory. Each file is gzip-compressed JSON holding the
  base64-encoded body and the headers.
- Counters and latency summaries in the Prometheus text format at
  `GET /metrics`.
- `DELETE /cache` clears the memory cache. `DELETE /cache?backend=true` also
  deletes the persistent cache files of the current `app_id`.

## Installation

```
pip install .
```

## Configuration

The proxy reads a YAML file. Every key below is required, except
`ignored_headers`:

```yaml
app_id: my-service
gcs_bucket: ""
s3_bucket: ""
azure_container: ""
max_concurrent_requests: 200
downstream_base_url: http://localhost:8080
downstream_timeout_secs: 5
memory_eviction:
  threshold_percent: 80
latency_failover:
  default_max_latency_ms: 3000
  path_rules:
    - pattern: ^/api/products
      max_latency_ms: 1500
ignored_headers:
  - user-agent
  - x-request-id
storage_backend: local
```

`storage_backend` is one of `local`, `gcs`, `s3` or `azure`. If it is `gcs`,
`gcs_bucket` must not be empty. Path rules are regular expressions that are
searched for in the request URI. They are tried in order, and the first match
sets the limit. If no rule matches, the default is used. A rule with an
invalid pattern is skipped. Any problem reading or validating the file raises
`boltcache.config.ConfigError`.

## Running

```
boltcache --config config.yaml
```

`--config` defaults to `config.yaml`, and `--version` prints the version. The
server listens on `0.0.0.0:3000`. The `LOG_LEVEL` environment variable sets
the log level: `trace`, `debug`, `info` (default), `warn`, `warning`,
`error` or `off`. The command exits with status 1 if the configuration cannot
be loaded.

## Using it as a library

```python
from aiohttp import web

from boltcache.config import Config
from boltcache.server import create_app

config = Config.from_file("config.yaml")
app = create_app(config)  # also installs config as the shared configuration
web.run_app(app, port=3000)
```

Other entry points:

- `boltcache.admin.invalidate_cache(backend=False)` clears the caches and
  returns the JSON message body.
- `boltcache.local_storage.store_in_cache`, `load_from_cache` and
  `delete_all_from_cache` work on the on-disk cache.
- `boltcache.proxy.cache_key(uri, headers, ignored)` computes a cache key.
- `boltcache.metrics.METRICS` is the registry shown at `/metrics`.

## Limitations

- Only the `local` storage backend persists anything. `gcs`, `s3` and `azure`
  are accepted in the configuration, but no client for them exists. With those
  backends responses are cached in memory only, there is no persistent
  fallback, and `?backend=true` clears only local files.
- Only `GET` requests are proxied. There is no proxy route for the bare `/`
  path.
- Responses served from the cache always have status 200. Downstream
  responses are cached whatever their status.

## Tests

```
pip install .[test]
pytest
```