"""Fixtures for route tests."""

from __future__ import annotations

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from inspectra.models import Actor
from inspectra.web.app import create_app
from inspectra.web.auth import get_current_actor


class ApiClient:
    """AsyncClient plus a switch for the acting profile."""

    def __init__(self, app, client: AsyncClient):
        self.app = app
        self.client = client

    def act_as(self, actor: Actor) -> None:
        self.app.dependency_overrides[get_current_actor] = lambda: actor

    def anonymous(self) -> None:
        self.app.dependency_overrides.pop(get_current_actor, None)


@pytest_asyncio.fixture
async def api(engine_context, seed) -> ApiClient:
    app = create_app(context=engine_context)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        api_client = ApiClient(app, client)
        api_client.act_as(seed.owner)
        yield api_client
    await app.state.sessions.aclose()
