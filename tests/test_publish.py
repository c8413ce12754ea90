"""Tests for app publishing."""

import json

import httpx
import pytest

from chat.publish import app_url, prepare_code, publish_app

API_BASE = "https://vibesdiy.app"


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestPrepareCode:
    """Tests for code preparation."""

    def test_normalizes_exports_and_imports(self):
        """Exports become App and extra packages point at the CDN."""
        code = 'import confetti from "canvas-confetti";\r\nexport default function Party() {}\r\n'
        result = prepare_code(code)

        assert "\r" not in result
        assert 'from "https://esm.sh/canvas-confetti"' in result
        assert "export default function App()" in result

    def test_app_url(self):
        """The slug becomes a subdomain of the API host."""
        assert app_url("https://vibesdiy.app", "cool-app") == "https://cool-app.vibesdiy.app/"
        assert app_url("http://localhost:8787", "a") == "http://a.localhost:8787/"


class TestPublishApp:
    """Tests for publish_app."""

    @pytest.mark.asyncio
    async def test_success(self):
        """A successful publish returns the URL and records it."""
        seen = {}
        recorded = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "app": {"slug": "cool-app"}})

        async with mock_client(handler) as client:
            url = await publish_app(
                "sess1",
                "export default function X() {}",
                api_base_url=API_BASE,
                client=client,
                update_published_url=recorded.append,
            )

        assert url == "https://cool-app.vibesdiy.app/"
        assert recorded == [url]
        assert seen["url"] == "https://vibesdiy.app/api/apps"
        assert seen["body"]["chatId"] == "sess1"
        assert seen["body"]["code"] == "export default function App() {}"

    @pytest.mark.asyncio
    async def test_async_url_callback(self):
        """Async callbacks are awaited with the published URL."""
        recorded = []

        async def record(url: str) -> None:
            recorded.append(url)

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": True, "app": {"slug": "cool-app"}})

        async with mock_client(handler) as client:
            url = await publish_app(
                "sess1", "code", api_base_url=API_BASE, client=client, update_published_url=record
            )

        assert recorded == [url]

    @pytest.mark.asyncio
    async def test_server_error(self):
        """Error responses return None."""

        async with mock_client(lambda request: httpx.Response(500, text="down")) as client:
            assert await publish_app("s", "code", api_base_url=API_BASE, client=client) is None

    @pytest.mark.asyncio
    async def test_unsuccessful_response(self):
        """success false returns None and does not record a URL."""
        recorded = []

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": False})

        async with mock_client(handler) as client:
            url = await publish_app(
                "s",
                "code",
                api_base_url=API_BASE,
                client=client,
                update_published_url=recorded.append,
            )

        assert url is None
        assert recorded == []

    @pytest.mark.asyncio
    async def test_network_error(self):
        """Transport failures return None."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with mock_client(handler) as client:
            assert await publish_app("s", "code", api_base_url=API_BASE, client=client) is None

    @pytest.mark.asyncio
    async def test_missing_inputs(self):
        """Nothing is sent without code or a session."""
        assert await publish_app("s", "") is None
        assert await publish_app(None, "code") is None

    @pytest.mark.asyncio
    async def test_env_base_url(self, monkeypatch):
        """VIBES_API_BASE_URL sets the hosting API."""
        monkeypatch.setenv("VIBES_API_BASE_URL", "https://staging.vibesdiy.app/")
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json={"success": True, "app": {"slug": "x"}})

        async with mock_client(handler) as client:
            url = await publish_app("s", "code", client=client)

        assert seen == ["https://staging.vibesdiy.app/api/apps"]
        assert url == "https://x.staging.vibesdiy.app/"
