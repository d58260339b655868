"""
Tests for the edge cache middleware and the gateway application.
"""

from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from src.health_gateway.app import create_app, default_edge_routes
from src.health_gateway.cache_control import (
    ENTITY_CACHE_POLICIES,
    EdgeCacheMiddleware,
    ResponseCacheMiddleware,
    apply_cache_headers,
    apply_entity_cache_headers,
    invalidate_cache,
    response_cache_key,
)
from src.shared.caching import CacheOptions, EdgeCacheOptions
from src.shared.config import CacheSettings, RedisSettings, Settings
from src.shared.metrics_collector import get_metrics_collector


def build_app(manager) -> FastAPI:
    app = FastAPI()
    app.state.cache_manager = manager
    app.add_middleware(
        EdgeCacheMiddleware,
        routes={
            "/api/providers": [apply_entity_cache_headers("providers"), invalidate_cache(["providers"])],
            "/api/charts": [apply_entity_cache_headers("charts")],
            "/static": [apply_cache_headers(EdgeCacheOptions(max_age=86400, s_max_age=86400, immutable=True))],
        },
    )

    @app.get("/api/providers")
    async def list_providers():
        return [{"id": 1}]

    @app.get("/api/providers/{provider_id}")
    async def get_provider(provider_id: int):
        if provider_id == 0:
            return JSONResponse(status_code=404, content={"detail": "not found"})
        return {"id": provider_id}

    @app.post("/api/providers", status_code=201)
    async def create_provider():
        return {"id": 3}

    @app.put("/api/providers/{provider_id}")
    async def update_provider(provider_id: int):
        if provider_id == 0:
            return JSONResponse(status_code=400, content={"detail": "invalid"})
        return {"id": provider_id}

    @app.get("/api/providersearch")
    async def provider_search():
        return []

    @app.get("/static/app.js")
    async def static_asset():
        return {"asset": True}

    return app


@pytest.fixture
def client(memory_only_manager):
    return TestClient(build_app(memory_only_manager))


class TestEntityCacheHeaders:

    def test_policy_table(self):
        assert set(ENTITY_CACHE_POLICIES) == {'providers', 'patients', 'claims', 'fhir', 'charts'}
        assert ENTITY_CACHE_POLICIES['fhir'].tags == ['fhir_resources']
        assert ENTITY_CACHE_POLICIES['claims'].stale_while_revalidate == 10

    def test_get_success_sets_headers(self, client):
        response = client.get("/api/providers")

        assert response.status_code == 200
        assert response.headers["Cache-Control"] == "public, max-age=60, s-maxage=3600, stale-while-revalidate=300"
        assert response.headers["Vary"] == "Accept-Encoding"
        assert response.headers["Cache-Tag"] == "providers"

    def test_nested_path_gets_headers(self, client):
        response = client.get("/api/providers/7")
        assert response.headers["Cache-Tag"] == "providers"

    def test_error_response_has_no_cache_headers(self, client):
        response = client.get("/api/providers/0")
        assert response.status_code == 404
        assert "Cache-Control" not in response.headers

    def test_mutation_has_no_cache_headers(self, client):
        response = client.post("/api/providers")
        assert response.status_code == 201
        assert "Cache-Control" not in response.headers

    def test_prefix_matches_path_segments_only(self, client):
        response = client.get("/api/providersearch")
        assert "Cache-Control" not in response.headers

    def test_explicit_options(self, client):
        response = client.get("/static/app.js")
        assert response.headers["Cache-Control"] == "public, max-age=86400, s-maxage=86400, immutable"
        assert "Cache-Tag" not in response.headers

    def test_unknown_entity_type_is_ignored(self, memory_only_manager):
        app = FastAPI()
        app.state.cache_manager = memory_only_manager
        app.add_middleware(EdgeCacheMiddleware, routes={"/x": [apply_entity_cache_headers("invoices")]})

        @app.get("/x")
        async def endpoint():
            return {}

        response = TestClient(app).get("/x")
        assert response.status_code == 200
        assert "Cache-Control" not in response.headers


class TestInvalidateCache:

    def test_successful_mutation_invalidates_tag(self, client, memory_cache):
        memory_cache.set("api:providers", [{"id": 1}])
        memory_cache.set("api:providers:1", {"id": 1})
        memory_cache.set("api:patients", [{"id": 2}])

        response = client.post("/api/providers")

        assert response.status_code == 201
        assert not memory_cache.has("api:providers")
        assert not memory_cache.has("api:providers:1")
        assert memory_cache.has("api:patients")

    def test_failed_mutation_keeps_cache(self, client, memory_cache):
        memory_cache.set("api:providers", [{"id": 1}])

        response = client.put("/api/providers/0")

        assert response.status_code == 400
        assert memory_cache.has("api:providers")

    def test_get_does_not_invalidate(self, client, memory_cache):
        memory_cache.set("api:providers", [{"id": 1}])
        client.get("/api/providers")
        assert memory_cache.has("api:providers")

    def test_invalidation_failure_does_not_affect_response(self, memory_only_manager):
        memory_only_manager.invalidate_by_tag = AsyncMock(side_effect=RuntimeError("cache exploded"))
        client = TestClient(build_app(memory_only_manager))

        response = client.put("/api/providers/5")

        assert response.status_code == 200
        assert response.json() == {"id": 5}
        memory_only_manager.invalidate_by_tag.assert_awaited_once_with("providers")
        counter = get_metrics_collector().get_counter('edge_cache_invalidations_total')
        assert counter.get_value(tag='providers', status='failure') == 1

    def test_missing_manager_skips_invalidation(self):
        app = FastAPI()
        app.add_middleware(EdgeCacheMiddleware, routes={"/api/claims": [invalidate_cache(["claims"])]})

        @app.delete("/api/claims/{claim_id}")
        async def delete_claim(claim_id: str):
            return {"deleted": claim_id}

        response = TestClient(app).delete("/api/claims/c-1")
        assert response.status_code == 200


def build_response_cache_app(manager, **middleware_kwargs):
    app = FastAPI()
    app.state.cache_manager = manager
    app.state.calls = []
    app.add_middleware(ResponseCacheMiddleware, prefixes=["/api/providers"], **middleware_kwargs)

    @app.get("/api/providers")
    async def list_providers(page: int = 1):
        app.state.calls.append(page)
        return JSONResponse([{"id": page}], headers={"ETag": f'"providers-{page}"'})

    @app.get("/api/providers/{provider_id}")
    async def get_provider(provider_id: int):
        app.state.calls.append(provider_id)
        if provider_id == 0:
            return JSONResponse(status_code=404, content={"detail": "not found"})
        return {"id": provider_id}

    @app.post("/api/providers", status_code=201)
    async def create_provider():
        return {"id": 3}

    @app.get("/api/claims")
    async def list_claims():
        app.state.calls.append("claims")
        return []

    return app


class TestResponseCache:

    def test_miss_then_hit(self, memory_only_manager):
        app = build_response_cache_app(memory_only_manager)
        client = TestClient(app)

        first = client.get("/api/providers")
        second = client.get("/api/providers")

        assert first.headers["X-Cache"] == "MISS"
        assert second.headers["X-Cache"] == "HIT"
        assert second.status_code == 200
        assert second.json() == first.json() == [{"id": 1}]
        assert second.headers["content-type"] == "application/json"
        assert second.headers["etag"] == '"providers-1"'
        assert app.state.calls == [1]

        counter = get_metrics_collector().get_counter('response_cache_lookups_total')
        assert counter.get_value(result='miss') == 1
        assert counter.get_value(result='hit') == 1

    def test_query_string_is_part_of_key(self, memory_only_manager):
        app = build_response_cache_app(memory_only_manager)
        client = TestClient(app)

        assert client.get("/api/providers?page=1").headers["X-Cache"] == "MISS"
        assert client.get("/api/providers?page=2").headers["X-Cache"] == "MISS"
        assert client.get("/api/providers?page=2").json() == [{"id": 2}]
        assert app.state.calls == [1, 2]

    def test_vary_by_query_ignores_other_parameters(self, memory_only_manager):
        app = build_response_cache_app(memory_only_manager, vary_by_query=["page"])
        client = TestClient(app)

        client.get("/api/providers?page=2&utm_source=mail")
        response = client.get("/api/providers?utm_source=web&page=2")

        assert response.headers["X-Cache"] == "HIT"
        assert app.state.calls == [2]

    def test_vary_by_headers(self, memory_only_manager):
        app = build_response_cache_app(memory_only_manager, vary_by_headers=["Accept-Language"])
        client = TestClient(app)

        client.get("/api/providers", headers={"Accept-Language": "en"})
        assert client.get("/api/providers", headers={"Accept-Language": "de"}).headers["X-Cache"] == "MISS"
        assert client.get("/api/providers", headers={"Accept-Language": "en"}).headers["X-Cache"] == "HIT"

    def test_error_responses_not_cached(self, memory_only_manager):
        app = build_response_cache_app(memory_only_manager)
        client = TestClient(app)

        assert client.get("/api/providers/0").status_code == 404
        response = client.get("/api/providers/0")

        assert response.status_code == 404
        assert response.headers["X-Cache"] == "MISS"
        assert app.state.calls == [0, 0]

    def test_bypass(self, memory_only_manager):
        app = build_response_cache_app(
            memory_only_manager, bypass=lambda request: "authorization" in request.headers
        )
        client = TestClient(app)

        client.get("/api/providers", headers={"Authorization": "Bearer t"})
        response = client.get("/api/providers", headers={"Authorization": "Bearer t"})

        assert "X-Cache" not in response.headers
        assert app.state.calls == [1, 1]

    def test_paths_outside_prefixes_untouched(self, memory_only_manager):
        app = build_response_cache_app(memory_only_manager)
        client = TestClient(app)

        client.get("/api/claims")
        response = client.get("/api/claims")

        assert "X-Cache" not in response.headers
        assert app.state.calls == ["claims", "claims"]

    def test_successful_mutation_drops_cached_responses(self, memory_only_manager):
        app = build_response_cache_app(memory_only_manager)
        client = TestClient(app)

        client.get("/api/providers")
        client.get("/api/providers/7")
        assert client.post("/api/providers").status_code == 201

        assert client.get("/api/providers").headers["X-Cache"] == "MISS"
        assert client.get("/api/providers/7").headers["X-Cache"] == "MISS"

    def test_entries_use_response_namespace_and_ttl(self, memory_only_manager, memory_cache, clock):
        app = build_response_cache_app(memory_only_manager, options=CacheOptions(ttl=30))
        client = TestClient(app)

        client.get("/api/providers")
        assert memory_cache.has("response:GET:/api/providers")

        clock.advance(31)
        assert client.get("/api/providers").headers["X-Cache"] == "MISS"

    def test_key_format(self):
        from starlette.requests import Request

        request = Request({
            "type": "http",
            "method": "GET",
            "path": "/api/providers",
            "query_string": b"page=2&q=adams",
            "headers": [(b"accept-language", b"en")],
        })

        assert response_cache_key(request) == 'GET:/api/providers:query:[["page","2"],["q","adams"]]'
        assert response_cache_key(request, vary_by_query=["page"]) == 'GET:/api/providers:query:[["page","2"]]'
        assert response_cache_key(request, vary_by_query=["missing"], vary_by_headers=["Accept-Language"]) == (
            'GET:/api/providers:headers:{"accept-language":"en"}'
        )


class TestGatewayApp:

    @staticmethod
    def make_settings(**cache_overrides) -> Settings:
        return Settings(
            redis=RedisSettings(redis_url=None),
            cache=CacheSettings(**cache_overrides),
        )

    def test_default_edge_routes(self):
        routes = default_edge_routes()
        assert set(routes) == {'/api/providers', '/api/patients', '/api/claims', '/api/fhir', '/api/charts'}
        assert all(len(hooks) == 2 for hooks in routes.values())

    def test_lifespan_builds_memory_only_manager(self):
        app = create_app(settings=self.make_settings())

        with TestClient(app) as client:
            response = client.get("/health/cache")
            manager = app.state.cache_manager

            assert response.status_code == 200
            assert response.json()["status"] == "healthy"
            assert manager.is_distributed_available() is False
            assert "X-Correlation-ID" in response.headers

    def test_correlation_id_is_echoed(self):
        app = create_app(settings=self.make_settings())

        with TestClient(app) as client:
            response = client.get("/health/cache", headers={"X-Correlation-ID": "abc-123"})

        assert response.headers["X-Correlation-ID"] == "abc-123"

    def test_injected_redis_client(self, fake_redis):
        app = create_app(settings=self.make_settings(), redis_client=fake_redis)

        with TestClient(app) as client:
            health = client.get("/health/cache").json()

        assert health["status"] == "healthy"
        assert health["details"]["distributed"]["ping"] is True
        assert "ping" in fake_redis.calls

    def test_unreachable_redis_reports_degraded(self, fake_redis):
        from redis.exceptions import ConnectionError as RedisConnectionError

        fake_redis.fail_with = RedisConnectionError("Connection refused")
        app = create_app(settings=self.make_settings(), redis_client=fake_redis)

        with TestClient(app) as client:
            response = client.get("/health/cache")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"

    def test_warm_up_on_startup(self, make_data_source):
        data_source = make_data_source()
        app = create_app(data_source=data_source, settings=self.make_settings(cache_warm_up_interval=3600))

        with TestClient(app) as client:
            warmer = app.state.cache_warmer
            stats = client.get("/metrics/cache").json()

        assert warmer is not None
        assert data_source.fetch_counts['providers'] == 1
        assert set(stats["warming"]["tasks"]) == {'providers', 'patients', 'claims', 'fhir_resources'}

    def test_warm_up_disabled(self, make_data_source):
        data_source = make_data_source()
        app = create_app(data_source=data_source, settings=self.make_settings(cache_warm_up_enabled=False))

        with TestClient(app):
            pass

        assert data_source.fetch_counts == {}

    def test_response_cache_hits_carry_edge_headers(self):
        app = create_app(
            settings=self.make_settings(cache_response_ttl=120),
            response_cache_prefixes=["/api/charts"],
        )
        calls = []

        @app.get("/api/charts/claims-by-month")
        async def claims_by_month():
            calls.append(1)
            return {"jan": 4}

        with TestClient(app) as client:
            client.get("/api/charts/claims-by-month")
            response = client.get("/api/charts/claims-by-month")

        assert response.headers["X-Cache"] == "HIT"
        assert response.headers["Cache-Tag"] == "charts"
        assert response.json() == {"jan": 4}
        assert calls == [1]
