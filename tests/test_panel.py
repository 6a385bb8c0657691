import asyncio

import aiohttp.test_utils
import pytest
from aiohttp import web

from prism.config import Settings
from prism.errors import MarketplaceError, PanelAPIError
from prism.panel import PANEL_ACCEPT, PanelClient
from prism.plugins import MarketplaceClient


MAINTENANCE_PAGE = "<html>maintenance</html>"


def fake_panel_app(seen_headers: list):
    async def credentials(request):
        seen_headers.append(dict(request.headers))
        return web.json_response({"data": {"socket": "wss://node.test/ws", "token": "t0k3n"}})

    async def missing_user(request):
        return web.json_response({"errors": [{"code": "NotFoundHttpException"}]}, status=404)

    async def maintenance(request):
        return web.Response(text=MAINTENANCE_PAGE, content_type="text/html")

    app = web.Application()
    app.router.add_get("/api/client/servers/good1234/websocket", credentials)
    app.router.add_get("/api/application/users/404", missing_user)
    app.router.add_route("*", "/{tail:.*}", maintenance)
    return app


def run_against_panel(check, seen_headers=None):
    async def _run():
        server = aiohttp.test_utils.TestServer(fake_panel_app(seen_headers if seen_headers is not None else []))
        await server.start_server()
        try:
            return await check(str(server.make_url("")).rstrip("/"))
        finally:
            await server.close()

    return asyncio.run(_run())


def settings_for(base_url):
    return Settings(
        panel_url=base_url,
        application_key="ptla_application_key_value",
        client_key="ptlc_client_key_value",
        session_secret="test-session-secret",
    )


def test_credentials_request_carries_key_and_accept_header():
    seen = []

    async def check(base_url):
        panel = PanelClient(settings_for(base_url))
        try:
            return await panel.get_websocket_credentials("good1234")
        finally:
            await panel.close()

    assert run_against_panel(check, seen) == {"socket": "wss://node.test/ws", "token": "t0k3n"}
    assert seen[0]["Authorization"] == "Bearer ptlc_client_key_value"
    assert seen[0]["Accept"] == PANEL_ACCEPT


def test_missing_panel_user_is_none():
    async def check(base_url):
        panel = PanelClient(settings_for(base_url))
        try:
            return await panel.get_user("404")
        finally:
            await panel.close()

    assert run_against_panel(check) is None


def test_html_success_page_raises_panel_error():
    async def check(base_url):
        panel = PanelClient(settings_for(base_url))
        try:
            await panel.get_websocket_credentials("abcd1234")
        finally:
            await panel.close()

    with pytest.raises(PanelAPIError) as exc:
        run_against_panel(check)
    assert exc.value.status == 200
    assert exc.value.body == MAINTENANCE_PAGE


def test_html_marketplace_page_raises_marketplace_error():
    async def check(base_url):
        marketplace = MarketplaceClient(base_url=base_url)
        try:
            await marketplace.search("essentials")
        finally:
            await marketplace.close()

    with pytest.raises(MarketplaceError):
        run_against_panel(check)
