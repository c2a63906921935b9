"""
Tests for the aiohttp layer: session cookies, internal handlers, middleware and application setup.
"""

import json

import pytest
from aiohttp import web
from aiohttp.test_utils import make_mocked_request

from social.graze.authcore.app.config import HealthGaugeAppKey, MetricsClientAppKey, Settings
from social.graze.authcore.app.cookies import (
    clear_session_cookie,
    session_token,
    set_session_cookie,
)
from social.graze.authcore.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_ready,
)
from social.graze.authcore.app.server import start_web_server, statsd_middleware
from social.graze.authcore.core.session_manager import CookiePolicy
from social.graze.authcore.model.health import HealthGauge
from tests.test_helpers import MockStatsdClient


class TestSessionCookies:
    @pytest.mark.asyncio
    async def test_set_session_cookie(self, session_manager):
        grant = await session_manager.create_session("principal-1")
        response = web.Response()

        set_session_cookie(response, grant)

        morsel = response.cookies[grant.cookie.name]
        assert morsel.value == grant.token
        assert morsel["max-age"] == "86400"
        assert morsel["path"] == "/"
        assert morsel["httponly"] is True
        assert morsel["samesite"] == "Lax"
        assert not morsel["secure"]

    def test_production_cookie_attributes(self):
        policy = CookiePolicy.for_environment(True, name="sid", domain="example.com")
        response = web.Response()
        response.set_cookie(
            policy.name,
            "value",
            domain=policy.domain,
            secure=policy.secure,
            samesite=policy.same_site,
        )
        morsel = response.cookies["sid"]
        assert morsel["secure"] is True
        assert morsel["samesite"] == "Strict"
        assert morsel["domain"] == "example.com"

    def test_clear_session_cookie(self):
        response = web.Response()
        clear_session_cookie(response, CookiePolicy())

        assert response.cookies["auth_session"]["max-age"] == "0"
        assert response.cookies["auth_session"].value == ""

    def test_session_token(self):
        request = make_mocked_request(
            "GET", "/", headers={"Cookie": "auth_session=abc123; theme=dark"}
        )
        assert session_token(request, CookiePolicy()) == "abc123"
        assert session_token(make_mocked_request("GET", "/"), CookiePolicy()) == ""


class TestInternalHandlers:
    @pytest.mark.asyncio
    async def test_ready(self):
        app = web.Application()
        app[HealthGaugeAppKey] = HealthGauge(health_threshold=1)
        request = make_mocked_request("GET", "/internal/ready", app=app)

        assert (await handle_internal_ready(request)).status == 200

        await app[HealthGaugeAppKey].womp(2)
        response = await handle_internal_ready(request)
        assert response.status == 503
        assert json.loads(response.text) == {"gauge": 2, "threshold": 1}

        await app[HealthGaugeAppKey].tick()
        assert (await handle_internal_ready(request)).status == 200

    @pytest.mark.asyncio
    async def test_alive(self):
        request = make_mocked_request("GET", "/internal/alive")
        assert (await handle_internal_alive(request)).status == 200


class TestStatsdMiddleware:
    @pytest.fixture
    def app(self):
        app = web.Application()
        app[MetricsClientAppKey] = MockStatsdClient()
        return app

    @pytest.mark.asyncio
    async def test_records_request(self, app):
        async def handler(request):
            return web.Response(status=204)

        request = make_mocked_request("GET", "/internal/alive", app=app)
        response = await statsd_middleware(request, handler)

        metrics = app[MetricsClientAppKey]
        assert response.status == 204
        assert metrics.count("authcore.server.request.count", path="/internal/alive", status=204) == 1
        assert "authcore.server.request.time" in metrics.timers

    @pytest.mark.asyncio
    async def test_records_exception(self, app):
        async def handler(request):
            raise RuntimeError("boom")

        request = make_mocked_request("POST", "/internal/ready", app=app)
        with pytest.raises(RuntimeError):
            await statsd_middleware(request, handler)

        metrics = app[MetricsClientAppKey]
        assert metrics.count("authcore.server.request.exception", exception="RuntimeError") == 1
        assert metrics.count("authcore.server.request.count", status=0) == 1


class TestApplication:
    @pytest.mark.asyncio
    async def test_routes(self):
        settings = Settings(worker_id="worker-1")
        app = await start_web_server(settings)

        paths = {route.resource.canonical for route in app.router.routes()}
        assert {"/internal/alive", "/internal/ready"} <= paths
        assert await app[HealthGaugeAppKey].is_healthy() is True
        assert len(app.cleanup_ctx) == 1
