"""Shared fixtures for calpush API tests.

Apps are built with an in-memory store and the scripted calendar client, so
no lifespan, database or network is involved.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import httpx
import pytest
from fastapi import FastAPI

from calpush.api.app import create_app
from calpush.config import ChannelsConfig, ServiceConfig, StreamConfig
from calpush.runtime import CalpushRuntime

WEBHOOK = "https://calpush.example.com/api/notifications"
CHANNEL_TOKEN = "verify-me"
USER_HEADERS = {"X-Authenticated-User": "u1"}


@pytest.fixture
def config() -> ServiceConfig:
    return ServiceConfig(
        channels=ChannelsConfig(webhook_address=WEBHOOK, channel_token=CHANNEL_TOKEN),
        stream=StreamConfig(keepalive_seconds=0.05, queue_size=4),
    )


@pytest.fixture
def app(config, store, clients) -> FastAPI:
    return create_app(config, store=store, client_factory=clients)


@pytest.fixture
async def runtime(app) -> AsyncIterator[CalpushRuntime]:
    runtime = app.state.runtime
    yield runtime
    await runtime.channels.aclose()


@pytest.fixture
async def client(app) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client
