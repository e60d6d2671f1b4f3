"""Tests for calpush.api.app: factory wiring, health, CORS and lifespan."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi import FastAPI

from calpush import __version__
from calpush.api.app import create_app
from calpush.api.deps import get_runtime
from calpush.config import ConfigError, ServerConfig, ServiceConfig, StorageConfig
from calpush.core.state import InMemoryKeyValueStore
from calpush.providers.google import GoogleClientFactory

pytestmark = pytest.mark.unit


class TestAppFactory:
    def test_create_app_returns_fastapi_instance(self, app):
        assert isinstance(app, FastAPI)
        assert app.router.redirect_slashes is False

    def test_runtime_is_wired(self, app, store, clients):
        runtime = app.state.runtime
        assert runtime.store is store
        assert runtime.clients is clients
        assert app.dependency_overrides[get_runtime]() is runtime

    def test_defaults_use_memory_store_and_google_client(self):
        app = create_app()
        runtime = app.state.runtime
        assert isinstance(runtime.store, InMemoryKeyValueStore)
        assert isinstance(runtime.clients, GoogleClientFactory)
        assert runtime.credentials is not None

    def test_postgres_backend_defers_runtime_to_startup(self):
        config = ServiceConfig(
            storage=StorageConfig(backend="postgres", database_url="postgresql://db/calpush")
        )
        app = create_app(config)
        assert getattr(app.state, "runtime", None) is None


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client, runtime):
        runtime.directory.open("someone")
        response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "version": __version__, "open_streams": 1}


class TestCORSMiddleware:
    async def test_cors_allows_configured_origin(self, store, clients):
        config = ServiceConfig(server=ServerConfig(cors_origins=["http://localhost:5173"]))
        app = create_app(config, store=store, client_factory=clients)
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            response = await client.options(
                "/api/health",
                headers={
                    "origin": "http://localhost:5173",
                    "access-control-request-method": "GET",
                },
            )
        assert response.status_code == 200
        assert response.headers.get("access-control-allow-origin") == "http://localhost:5173"

    async def test_no_cors_by_default(self, client):
        response = await client.get("/api/health", headers={"origin": "http://evil.example"})
        assert "access-control-allow-origin" not in response.headers


class TestLifespan:
    async def test_postgres_store_connected_on_startup(self, clients):
        config = ServiceConfig(
            storage=StorageConfig(backend="postgres", database_url="postgresql://db/calpush")
        )
        pg_store = InMemoryKeyValueStore()
        pg_store.close = AsyncMock()
        app = create_app(config, client_factory=clients)

        with patch(
            "calpush.api.app.PostgresKeyValueStore.connect", AsyncMock(return_value=pg_store)
        ) as connect:
            async with app.router.lifespan_context(app):
                connect.assert_awaited_once_with("postgresql://db/calpush")
                assert app.state.runtime.store is pg_store

        pg_store.close.assert_awaited_once()
        assert clients.closed

    async def test_postgres_without_database_url_fails_startup(self, clients):
        config = ServiceConfig(storage=StorageConfig(backend="postgres"))
        app = create_app(config, client_factory=clients)
        with pytest.raises(ConfigError, match="database_url"):
            async with app.router.lifespan_context(app):
                pass

    async def test_shutdown_closes_streams_and_clients(self, app, runtime, clients):
        stream = runtime.directory.open("u1")
        async with app.router.lifespan_context(app):
            pass
        assert stream.closed
        assert clients.closed
