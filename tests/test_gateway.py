"""Tests for the gateway router."""

import json
from unittest.mock import AsyncMock

import boto3
import httpx
import pytest
from fastapi.testclient import TestClient
from langchain_core.language_models.fake_chat_models import FakeListChatModel
from moto import mock_aws

from callai.keys import KeyStore
from callai.types import Credits
from chat.models import AiChatMessageDocument
from chat.service import ChatService
from chat.sessions import VibeSession
from common.store import SessionStore
from gateway.router import (
    ANONYMOUS_KEY_LIMIT,
    BOT_USER_AGENT,
    IDENTIFIED_KEY_LIMIT,
    VIBE_CACHE_CONTROL,
    GatewayRouter,
    create_gateway_app,
    escape_html,
    render_vibe_meta,
)
from prompts.catalog import DocsLoader

CODE_RESPONSE = "Here you go.\n\n```jsx\nexport default function Timer() {}\n```\n"


def not_found(request: httpx.Request) -> httpx.Response:
    return httpx.Response(404)


def gateway_client(app, handler=not_found) -> TestClient:
    """TestClient whose outbound HTTP goes to handler."""
    router: GatewayRouter = app.state.router
    router.startup = AsyncMock()
    router._http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TestClient(app)


@pytest.fixture
def store():
    """Create a SessionStore backed by a mocked bucket."""
    with mock_aws():
        client = boto3.client(
            "s3",
            region_name="us-east-1",
            aws_access_key_id="testing",
            aws_secret_access_key="testing",
        )
        client.create_bucket(Bucket="test-bucket")
        yield SessionStore(bucket_name="test-bucket", client=client)


@pytest.fixture
def chat_service(store):
    """ChatService with canned model output."""

    async def stream(messages, options):
        yield "Here you go."
        yield CODE_RESPONSE

    async def select(messages, options) -> str:
        return json.dumps({"selected": ["fireproof"]})

    async def credits(api_key: str) -> Credits:
        return Credits(available=1.0, usage=0.25, limit=1.25)

    return ChatService(
        store,
        keys=KeyStore(current="sk-test"),
        loader=DocsLoader(fallback_url=None),
        call_ai_fn=select,
        stream_fn=stream,
        credits_fn=credits,
        title_llm=FakeListChatModel(responses=["Tiny Timer"]),
    )


class TestEscapeHtml:
    """Tests for escape_html."""

    def test_escapes_markup_and_quotes(self):
        """Markup characters and both quote styles are escaped."""
        assert escape_html("<a href=\"x\">'&'</a>") == (
            "&lt;a href=&quot;x&quot;&gt;&#039;&amp;&#039;&lt;/a&gt;"
        )


class TestRenderVibeMeta:
    """Tests for render_vibe_meta."""

    def test_defaults_without_source(self):
        """Without the app's HTML, the slug provides title and description."""
        page = render_vibe_meta("cool-app")

        assert "<title>cool-app - Vibes DIY</title>" in page
        assert "Check out cool-app - an AI-generated app created with Vibes DIY" in page
        assert '<meta property="og:url" content="https://vibes.diy/vibe/cool-app">' in page
        assert 'src="https://cool-app.vibesdiy.app/"' in page
        assert "https://cool-app.vibesdiy.app/screenshot.png" in page

    def test_uses_source_metadata(self):
        """Title and description are taken from the app's HTML and escaped."""
        source = (
            "<html><head><title>Tom's Timer</title>"
            '<meta name="description" content="Counts <down>"></head></html>'
        )
        page = render_vibe_meta("timer", source)

        assert "<title>Tom&#039;s Timer</title>" in page
        assert 'content="Counts &lt;down&gt;"' in page


class TestHealth:
    """Tests for the health endpoint."""

    def test_health_without_storage(self):
        """Health reports which services are configured."""
        with gateway_client(create_gateway_app()) as client:
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"gateway": "ok", "storage": False, "chat": False}

    def test_session_routes_need_storage(self):
        """Session routes return 503 without storage."""
        with gateway_client(create_gateway_app()) as client:
            assert client.get("/api/sessions").status_code == 503
            assert client.post("/api/chat", json={"prompt": "hi"}).status_code == 503


class TestGatewayRouterLifecycle:
    """Tests for startup and shutdown."""

    @pytest.mark.asyncio
    async def test_startup_and_shutdown(self):
        """The HTTP client exists only between startup and shutdown."""
        router = GatewayRouter()
        await router.startup()
        assert router._http_client is not None

        await router.shutdown()
        assert router._http_client is None

    def test_provisioning_key_from_env(self, monkeypatch):
        """The provisioning key falls back to the environment."""
        monkeypatch.setenv("SERVER_OPENROUTER_PROV_KEY", "prov-env")
        assert GatewayRouter()._get_provisioning_key() == "prov-env"
        assert GatewayRouter(provisioning_key="prov")._get_provisioning_key() == "prov"


class TestCallAiProxy:
    """Tests for the key provisioning proxy."""

    AUTH = {"Authorization": "Bearer user-token"}

    def test_requires_bearer_token(self):
        """Requests without a bearer token are rejected."""
        with gateway_client(create_gateway_app(provisioning_key="prov")) as client:
            response = client.post("/api/callai/create-key", json={})

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_requires_provisioning_key(self, monkeypatch):
        """A missing provisioning key is a server configuration error."""
        monkeypatch.delenv("SERVER_OPENROUTER_PROV_KEY", raising=False)
        with gateway_client(create_gateway_app()) as client:
            response = client.post("/api/callai/create-key", json={}, headers=self.AUTH)

        assert response.status_code == 500
        assert response.json() == {"error": "Server configuration error"}

    def test_create_anonymous_key(self):
        """Anonymous keys get the smaller limit and an anonymous label."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"key": "sk-or-new", "data": {"hash": "h1"}})

        with gateway_client(create_gateway_app(provisioning_key="prov"), handler) as client:
            response = client.post("/api/callai/create-key", headers=self.AUTH)

        assert response.status_code == 200
        assert response.json() == {"hash": "h1", "key": "sk-or-new"}
        assert seen["auth"] == "Bearer prov"
        assert seen["body"]["name"] == "Session Key"
        assert seen["body"]["label"].startswith("anonymous-session-")
        assert seen["body"]["limit"] == ANONYMOUS_KEY_LIMIT

    def test_create_identified_key(self):
        """Identified users get the larger limit and a labelled key."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"key": "sk-or-user", "data": {}})

        with gateway_client(create_gateway_app(provisioning_key="prov"), handler) as client:
            response = client.post(
                "/api/callai/create-key.json",
                json={"userId": "u42", "label": "laptop"},
                headers=self.AUTH,
            )

        assert response.status_code == 200
        assert seen["body"] == {
            "name": "User u42 Session",
            "label": "user-u42-laptop",
            "limit": IDENTIFIED_KEY_LIMIT,
        }

    def test_create_key_upstream_failure(self):
        """OpenRouter failures keep their status and details."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(402, json={"error": {"message": "Insufficient credits"}})

        with gateway_client(create_gateway_app(provisioning_key="prov"), handler) as client:
            response = client.post("/api/callai/create-key", json={}, headers=self.AUTH)

        assert response.status_code == 402
        assert response.json()["error"] == "Failed to create key"
        assert response.json()["details"] == {"error": {"message": "Insufficient credits"}}

    def test_create_key_malformed_response(self):
        """A response without a key is an invalid format."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": {}})

        with gateway_client(create_gateway_app(provisioning_key="prov"), handler) as client:
            response = client.post("/api/callai/create-key", json={}, headers=self.AUTH)

        assert response.status_code == 500
        assert response.json() == {"error": "Invalid API response format"}

    def test_check_credits(self):
        """Credits are looked up by key hash."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json={"data": {"limit": 1.25, "usage": 0.5}})

        with gateway_client(create_gateway_app(provisioning_key="prov"), handler) as client:
            response = client.post(
                "/api/callai/check-credits", json={"keyHash": "h1"}, headers=self.AUTH
            )

        assert response.status_code == 200
        assert response.json()["data"]["usage"] == 0.5
        assert seen == ["https://openrouter.ai/api/v1/keys/h1"]

    def test_check_credits_requires_hash(self):
        """A key hash is required."""
        with gateway_client(create_gateway_app(provisioning_key="prov")) as client:
            response = client.post("/api/callai/check-credits", json={}, headers=self.AUTH)

        assert response.status_code == 400
        assert response.json() == {"error": "Key hash is required"}

    def test_list_keys(self):
        """Keys are listed from OpenRouter."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": [{"hash": "h1"}]})

        with gateway_client(create_gateway_app(provisioning_key="prov"), handler) as client:
            response = client.post("/api/callai/list-keys", headers=self.AUTH)

        assert response.json() == {"data": [{"hash": "h1"}]}

    def test_network_failure(self):
        """Transport errors become 500 responses."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with gateway_client(create_gateway_app(provisioning_key="prov"), handler) as client:
            response = client.post("/api/callai/list-keys", headers=self.AUTH)

        assert response.status_code == 500
        assert "refused" in response.json()["error"]

    def test_invalid_action(self):
        """Unknown actions are rejected."""
        with gateway_client(create_gateway_app(provisioning_key="prov")) as client:
            response = client.post("/api/callai/delete-everything", json={}, headers=self.AUTH)

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid action"}


class TestVibeMeta:
    """Tests for the crawler metadata route."""

    def test_renders_app_metadata(self):
        """The app's title is used and the page is cacheable."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["agent"] = request.headers["user-agent"]
            return httpx.Response(200, text="<title>Tiny Timer</title>")

        with gateway_client(create_gateway_app(), handler) as client:
            response = client.get("/vibe/tiny-timer")

        assert response.status_code == 200
        assert "<title>Tiny Timer</title>" in response.text
        assert response.headers["cache-control"] == VIBE_CACHE_CONTROL
        assert seen == {"url": "https://tiny-timer.vibesdiy.app/", "agent": BOT_USER_AGENT}

    def test_unreachable_app_uses_defaults(self):
        """Fetch failures still render default metadata."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with gateway_client(create_gateway_app(), handler) as client:
            response = client.get("/vibe/tiny-timer")

        assert response.status_code == 200
        assert "<title>tiny-timer - Vibes DIY</title>" in response.text

    def test_invalid_slug(self):
        """Slugs that are not hostname labels are rejected."""
        with gateway_client(create_gateway_app()) as client:
            assert client.get("/vibe/Bad_Slug").status_code == 400


class TestSessionRoutes:
    """Tests for the session APIs."""

    def test_list_and_get(self, store):
        """Stored sessions are listed and readable."""
        session = VibeSession(store, "sess1")
        session.update_title("Tiny Timer")
        session.put_message(AiChatMessageDocument(session_id="sess1", text=CODE_RESPONSE))

        with gateway_client(create_gateway_app(store=store)) as client:
            listing = client.get("/api/sessions").json()
            detail = client.get("/api/sessions/sess1").json()

        assert [(v["id"], v["title"]) for v in listing] == [("sess1", "Tiny Timer")]
        assert detail["vibe"]["title"] == "Tiny Timer"
        assert detail["messages"][0]["type"] == "ai"

    def test_missing_and_invalid_sessions(self, store):
        """Unknown sessions are 404 and malformed ids 400."""
        with gateway_client(create_gateway_app(store=store)) as client:
            assert client.get("/api/sessions/nope").status_code == 404
            assert client.get("/api/sessions/Not-Valid").status_code == 400

    def test_favorite_and_delete(self, store):
        """Favorites toggle and deletion removes the session."""
        VibeSession(store, "sess1").update_title("T")

        with gateway_client(create_gateway_app(store=store)) as client:
            assert client.post("/api/sessions/sess1/favorite").json()["favorite"] is True
            assert client.delete("/api/sessions/sess1").json() == {"deleted": 1}
            assert client.get("/api/sessions/sess1").status_code == 404

    def test_screenshots(self, store):
        """Uploaded screenshots are served back with their content type."""
        VibeSession(store, "sess1").update_title("T")

        with gateway_client(create_gateway_app(store=store)) as client:
            assert client.get("/api/sessions/sess1/screenshot").status_code == 404
            assert client.post("/api/sessions/sess1/screenshot", content=b"").status_code == 400

            upload = client.post(
                "/api/sessions/sess1/screenshot",
                content=b"\x89PNG",
                headers={"Content-Type": "image/png"},
            )
            response = client.get("/api/sessions/sess1/screenshot")
            listing = client.get("/api/sessions").json()

        assert upload.json()["type"] == "screenshot"
        assert response.content == b"\x89PNG"
        assert response.headers["content-type"] == "image/png"
        assert listing[0]["screenshot"] == "/api/sessions/sess1/screenshot"

    def test_settings(self, store):
        """Settings are saved and loaded."""
        with gateway_client(create_gateway_app(store=store)) as client:
            assert client.get("/api/settings").json()["style_prompt"] == ""
            client.put("/api/settings", json={"style_prompt": "brutalist", "model": "v/m"})
            settings = client.get("/api/settings").json()

        assert settings["style_prompt"] == "brutalist"
        assert settings["model"] == "v/m"


class TestPublishRoute:
    """Tests for publishing from a session."""

    def test_publishes_latest_code(self, store):
        """The latest generated code is published and the URL recorded."""
        session = VibeSession(store, "sess1")
        session.update_title("T")
        session.put_message(AiChatMessageDocument(session_id="sess1", text=CODE_RESPONSE))
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "app": {"slug": "tiny-timer"}})

        app = create_gateway_app(store=store, api_base_url="https://vibesdiy.app")
        with gateway_client(app, handler) as client:
            response = client.post("/api/sessions/sess1/publish")

        assert response.json() == {"published_url": "https://tiny-timer.vibesdiy.app/"}
        assert seen["url"] == "https://vibesdiy.app/api/apps"
        assert seen["body"]["code"] == "export default function App() {}"
        assert session.vibe_doc().published_url == "https://tiny-timer.vibesdiy.app/"

    def test_explicit_code(self, store):
        """Code in the body is published instead of the session's."""
        VibeSession(store, "sess1").update_title("T")
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True, "app": {"slug": "x"}})

        app = create_gateway_app(store=store, api_base_url="https://vibesdiy.app")
        with gateway_client(app, handler) as client:
            client.post("/api/sessions/sess1/publish", json={"code": "export default App;"})

        assert bodies[0]["code"] == "export default App;"

    def test_no_code(self, store):
        """Sessions without code cannot be published."""
        VibeSession(store, "sess1").update_title("T")

        with gateway_client(create_gateway_app(store=store)) as client:
            response = client.post("/api/sessions/sess1/publish")

        assert response.status_code == 400

    def test_publish_failure(self, store):
        """Hosting failures are reported as bad gateway."""
        VibeSession(store, "sess1").update_title("T")

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="down")

        app = create_gateway_app(store=store, api_base_url="https://vibesdiy.app")
        with gateway_client(app, handler) as client:
            response = client.post("/api/sessions/sess1/publish", json={"code": "x"})

        assert response.status_code == 502


class TestChatRoutes:
    """Tests for the chat APIs."""

    def test_chat_turn(self, store, chat_service):
        """A chat turn returns the stored result."""
        app = create_gateway_app(store=store, chat_service=chat_service)
        with gateway_client(app) as client:
            response = client.post("/api/chat", json={"prompt": "a timer", "session_id": "sess1"})

        body = response.json()
        assert response.status_code == 200
        assert body["session_id"] == "sess1"
        assert body["title"] == "Tiny Timer"
        assert body["code"] == "export default function Timer() {}"
        assert [m.type for m in VibeSession(store, "sess1").messages()] == ["user", "ai"]

    def test_chat_generates_session_id(self, store, chat_service):
        """A new session id is created when none is given."""
        app = create_gateway_app(store=store, chat_service=chat_service)
        with gateway_client(app) as client:
            body = client.post("/api/chat", json={"prompt": "a timer"}).json()

        assert len(body["session_id"]) == 18

    def test_chat_invalid_session(self, store, chat_service):
        """Malformed session ids are rejected before the turn runs."""
        app = create_gateway_app(store=store, chat_service=chat_service)
        with gateway_client(app) as client:
            response = client.post("/api/chat", json={"prompt": "x", "session_id": "../x"})

        assert response.status_code == 400

    def test_chat_stream(self, store, chat_service):
        """The stream carries text updates then the final result."""
        app = create_gateway_app(store=store, chat_service=chat_service)
        with gateway_client(app) as client:
            response = client.post(
                "/api/chat/stream", json={"prompt": "a timer", "session_id": "sess1"}
            )

        assert response.headers["x-session-id"] == "sess1"
        events = [chunk for chunk in response.text.split("\n\n") if chunk]
        assert events[0] == 'data: {"text": "Here you go."}'
        assert events[1] == f"data: {json.dumps({'text': CODE_RESPONSE})}"
        kind, data = events[-1].split("\n")
        assert kind == "event: done"
        assert json.loads(data.removeprefix("data: "))["title"] == "Tiny Timer"
