"""
Edge cache middleware for the Smart Health Hub API.

Hooks are attached to path prefixes through `EdgeCacheMiddleware`:

- `apply_entity_cache_headers` / `apply_cache_headers` set Cache-Control,
  Vary and Cache-Tag on successful GET responses.
- `invalidate_cache` drops the cache entries for the given tags after a
  successful mutation has been sent to the client.

`ResponseCacheMiddleware` stores whole GET/HEAD responses under its path
prefixes and answers repeats from the cache.

Hooks look the cache manager up on `request.app.state.cache_manager`.
"""

import dataclasses
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import Request, Response
from starlette.background import BackgroundTask, BackgroundTasks
from starlette.middleware.base import BaseHTTPMiddleware

from ..shared.caching import CacheManager, CacheOptions, EdgeCacheOptions, build_cache_control
from ..shared.logging_config import get_logger
from ..shared.metrics_collector import get_metrics_collector

logger = get_logger(__name__, 'edge_cache')

ResponseHook = Callable[[Request, Response], Awaitable[None]]

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
CACHEABLE_METHODS = frozenset({"GET", "HEAD"})

RESPONSE_CACHE_NAMESPACE = "response"
CACHED_RESPONSE_HEADERS = ("content-type", "content-language", "etag", "last-modified")
# latin-1 maps every byte to one code point, so bodies survive the JSON serializer
BODY_ENCODING = "latin-1"

ENTITY_CACHE_POLICIES: Dict[str, EdgeCacheOptions] = {
    # Low churn
    'providers': EdgeCacheOptions(max_age=60, s_max_age=3600, stale_while_revalidate=300, tags=['providers']),
    'patients': EdgeCacheOptions(max_age=60, s_max_age=300, stale_while_revalidate=60, tags=['patients']),
    # Frequent updates
    'claims': EdgeCacheOptions(max_age=60, s_max_age=60, stale_while_revalidate=10, tags=['claims']),
    'fhir': EdgeCacheOptions(max_age=60, s_max_age=300, stale_while_revalidate=60, tags=['fhir_resources']),
    # Analytics
    'charts': EdgeCacheOptions(max_age=3600, s_max_age=7200, stale_while_revalidate=600, tags=['charts']),
}

__all__ = [
    'ENTITY_CACHE_POLICIES',
    'EdgeCacheMiddleware',
    'RESPONSE_CACHE_NAMESPACE',
    'ResponseCacheMiddleware',
    'apply_cache_headers',
    'apply_entity_cache_headers',
    'build_cache_control',
    'invalidate_cache',
    'response_cache_key',
]


def _is_success(response: Response) -> bool:
    return 200 <= response.status_code < 300


def _get_manager(request: Request) -> Optional[CacheManager]:
    return getattr(request.app.state, "cache_manager", None)


def _path_matches(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix.rstrip("/") + "/")


def _set_edge_headers(request: Request, response: Response, options: EdgeCacheOptions) -> None:
    manager = _get_manager(request)
    if manager is not None:
        headers = manager.get_edge_cache_headers(options)
    else:
        headers = {"Cache-Control": build_cache_control(options), "Vary": "Accept-Encoding"}
        if options.tags:
            headers["Cache-Tag"] = ",".join(options.tags)

    for name, value in headers.items():
        response.headers[name] = value


def apply_cache_headers(options: EdgeCacheOptions) -> ResponseHook:
    """Hook setting edge cache headers from explicit options on GET 2xx responses."""
    async def hook(request: Request, response: Response) -> None:
        if request.method != "GET" or not _is_success(response):
            return
        _set_edge_headers(request, response, options)

    return hook


def apply_entity_cache_headers(entity_type: str) -> ResponseHook:
    """Hook setting the entity's edge cache policy on GET 2xx responses.

    Unknown entity types leave responses untouched.
    """
    options = ENTITY_CACHE_POLICIES.get(entity_type)
    if options is None:
        logger.warning(f"No edge cache policy for entity type {entity_type}", operation="apply_entity_cache_headers")

    async def hook(request: Request, response: Response) -> None:
        if options is None or request.method != "GET" or not _is_success(response):
            return
        _set_edge_headers(request, response, options)

    return hook


def _attach_background(response: Response, task: BackgroundTask) -> None:
    """Run the task after the response is sent, after any background already attached."""
    if response.background is None:
        response.background = task
    elif isinstance(response.background, BackgroundTasks):
        response.background.add_task(task.func, *task.args, **task.kwargs)
    else:
        response.background = BackgroundTasks([response.background, task])


async def _invalidate_tags(manager: CacheManager, tags: List[str], path: str) -> None:
    metrics = get_metrics_collector()
    for tag in tags:
        try:
            invalidated = await manager.invalidate_by_tag(tag)
        except Exception as e:
            invalidated = False
            logger.error(f"Error invalidating cache tag '{tag}': {e}", operation="invalidate_cache",
                         tag=tag, path=path)
        else:
            if not invalidated:
                logger.error(f"Error invalidating cache tag '{tag}'", operation="invalidate_cache",
                             tag=tag, path=path)

        metrics.get_counter('edge_cache_invalidations_total').increment(
            tag=tag, status='success' if invalidated else 'failure'
        )


def invalidate_cache(tags: List[str]) -> ResponseHook:
    """Hook invalidating tags after a successful POST/PUT/PATCH/DELETE.

    The invalidation runs as a background task, after the response is sent.
    """
    tags = list(tags)

    async def hook(request: Request, response: Response) -> None:
        if request.method not in MUTATING_METHODS or not _is_success(response):
            return

        manager = _get_manager(request)
        if manager is None:
            logger.warning("No cache manager on app state, skipping invalidation", operation="invalidate_cache")
            return

        _attach_background(response, BackgroundTask(_invalidate_tags, manager, tags, request.url.path))

    return hook


class EdgeCacheMiddleware(BaseHTTPMiddleware):
    """Runs edge cache hooks for requests under registered path prefixes."""

    def __init__(self, app, routes: Optional[Dict[str, List[ResponseHook]]] = None):
        super().__init__(app)
        self.routes = routes or {}

    def hooks_for(self, path: str) -> List[ResponseHook]:
        hooks: List[ResponseHook] = []
        for prefix, prefix_hooks in self.routes.items():
            if _path_matches(path, prefix):
                hooks.extend(prefix_hooks)
        return hooks

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        for hook in self.hooks_for(request.url.path):
            await hook(request, response)

        return response


def response_cache_key(
    request: Request,
    vary_by_query: Optional[List[str]] = None,
    vary_by_headers: Optional[List[str]] = None,
) -> str:
    """Key for a cached response: `METHOD:path`, then the query and any varying headers.

    Without `vary_by_query` every query parameter is part of the key.
    """
    key = f"{request.method}:{request.url.path}"

    query = sorted(request.query_params.multi_items())
    if vary_by_query:
        query = [(name, value) for name, value in query if name in vary_by_query]
    if query:
        key += f":query:{json.dumps(query, separators=(',', ':'))}"

    if vary_by_headers:
        headers = {
            name.lower(): request.headers[name] for name in vary_by_headers if name in request.headers
        }
        if headers:
            key += f":headers:{json.dumps(headers, sort_keys=True, separators=(',', ':'))}"

    return key


class ResponseCacheMiddleware(BaseHTTPMiddleware):
    """Serves repeated GET/HEAD requests under the given path prefixes from the cache.

    Successful responses are stored through the cache manager with their
    status, body and content headers. Lookups are marked with `X-Cache: HIT`
    or `MISS`. A successful mutation under a prefix drops the cached
    responses for that prefix.
    """

    def __init__(
        self,
        app,
        prefixes: List[str],
        options: Optional[CacheOptions] = None,
        vary_by_query: Optional[List[str]] = None,
        vary_by_headers: Optional[List[str]] = None,
        bypass: Optional[Callable[[Request], bool]] = None,
        key_func: Optional[Callable[[Request], str]] = None,
    ):
        super().__init__(app)
        self.prefixes = list(prefixes)
        options = options or CacheOptions()
        self.options = dataclasses.replace(options, namespace=options.namespace or RESPONSE_CACHE_NAMESPACE)
        self.vary_by_query = vary_by_query
        self.vary_by_headers = vary_by_headers
        self.bypass = bypass
        self.key_func = key_func

    def prefix_for(self, path: str) -> Optional[str]:
        for prefix in self.prefixes:
            if _path_matches(path, prefix):
                return prefix
        return None

    def cache_key(self, request: Request) -> str:
        if self.key_func is not None:
            return self.key_func(request)
        return response_cache_key(request, self.vary_by_query, self.vary_by_headers)

    async def dispatch(self, request: Request, call_next):
        prefix = self.prefix_for(request.url.path)
        manager = _get_manager(request)
        if prefix is None or manager is None:
            return await call_next(request)

        if request.method in MUTATING_METHODS:
            response = await call_next(request)
            if _is_success(response):
                _attach_background(response, BackgroundTask(self._invalidate_prefix, manager, prefix))
            return response

        if request.method not in CACHEABLE_METHODS or (self.bypass is not None and self.bypass(request)):
            return await call_next(request)

        cache_key = self.cache_key(request)
        metrics = get_metrics_collector()

        cached = await manager.get(cache_key, self.options)
        if cached is not None:
            metrics.get_counter('response_cache_lookups_total').increment(result='hit')
            logger.debug(f"Response cache hit: {cache_key}", operation="response_cache")
            return Response(
                content=cached['body'].encode(BODY_ENCODING),
                status_code=cached['status'],
                headers={**cached['headers'], 'X-Cache': 'HIT'},
            )

        metrics.get_counter('response_cache_lookups_total').increment(result='miss')
        response = await call_next(request)
        body = b"".join([chunk async for chunk in response.body_iterator])

        rebuilt = Response(content=body, status_code=response.status_code, background=response.background)
        rebuilt.raw_headers = list(response.raw_headers)
        rebuilt.headers['X-Cache'] = 'MISS'

        if _is_success(response) and 'set-cookie' not in response.headers:
            entry = {
                'status': response.status_code,
                'body': body.decode(BODY_ENCODING),
                'headers': {
                    name: response.headers[name] for name in CACHED_RESPONSE_HEADERS if name in response.headers
                },
            }
            _attach_background(rebuilt, BackgroundTask(self._store, manager, cache_key, entry))

        return rebuilt

    async def _store(self, manager: CacheManager, cache_key: str, entry: Dict[str, Any]) -> None:
        if not await manager.set(cache_key, entry, self.options):
            logger.error(f"Error caching response for {cache_key}", operation="response_cache")

    async def _invalidate_prefix(self, manager: CacheManager, prefix: str) -> None:
        for method in sorted(CACHEABLE_METHODS):
            if not await manager.invalidate_pattern(f"{method}:{prefix}", self.options.namespace):
                logger.error(f"Error invalidating cached responses for {method} {prefix}",
                             operation="response_cache")
