"""Tests for the call-ai client, error recovery and schema helpers."""

import json

import httpx
import pytest

from callai.client import (
    FALLBACK_MODEL,
    build_request_body,
    call_ai,
    completions_url,
    stream_ai,
    to_messages,
)
from callai.errors import check_for_invalid_model_error, handle_api_error
from callai.keys import KeyStore
from callai.schema import build_response_format, recursively_add_additional_properties
from callai.types import CallAIError, CallAIOptions, Message

CHAT_URL = "https://chat.example.com"
KEYS_URL = "https://keys.example.com"


def completion(text: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": text}}]})


def sse(*deltas: str) -> httpx.Response:
    lines = [
        f"data: {json.dumps({'choices': [{'delta': {'content': delta}}]})}" for delta in deltas
    ]
    body = "\n\n".join([*lines, "data: [DONE]"]) + "\n\n"
    return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})


def make_store(current: str | None = "sk-old") -> KeyStore:
    store = KeyStore(current=current, refresh_endpoint=KEYS_URL, refresh_token="tok")
    return store


class TestRequestBuilding:
    """Tests for request helpers."""

    def test_to_messages_from_string(self):
        """A string prompt becomes one user message."""
        assert to_messages("hi") == [Message(role="user", content="hi")]

    def test_to_messages_from_dicts(self):
        """Dict messages are validated."""
        messages = to_messages([{"role": "system", "content": "s"}])
        assert messages[0].role == "system"

    def test_completions_url(self):
        """The completions path is appended to the chat URL."""
        options = CallAIOptions(chat_url="https://openrouter.ai/")
        assert completions_url(options) == "https://openrouter.ai/api/v1/chat/completions"

    def test_body_with_schema(self):
        """A schema becomes a strict json_schema response format."""
        options = CallAIOptions(
            model="m",
            max_tokens=10,
            transforms=["middle-out"],
            schema={"name": "pick", "properties": {"a": {"type": "string"}}},
        )
        body = build_request_body([Message(role="user", content="x")], options, stream=True)

        assert body["model"] == "m"
        assert body["stream"] is True
        assert body["max_tokens"] == 10
        assert body["transforms"] == ["middle-out"]
        assert body["response_format"]["type"] == "json_schema"
        assert body["response_format"]["json_schema"]["name"] == "pick"
        assert body["response_format"]["json_schema"]["strict"] is True


class TestSchema:
    """Tests for JSON schema helpers."""

    def test_adds_additional_properties(self):
        """Objects are closed and require every property."""
        schema = {
            "type": "object",
            "properties": {
                "items": {
                    "type": "array",
                    "items": {"type": "object", "properties": {"n": {"type": "number"}}},
                },
                "name": {"type": "string"},
            },
        }
        result = recursively_add_additional_properties(schema)

        assert result["additionalProperties"] is False
        assert result["required"] == ["items", "name"]
        nested = result["properties"]["items"]["items"]
        assert nested["additionalProperties"] is False
        assert nested["required"] == ["n"]
        assert "additionalProperties" not in schema

    def test_response_format_shape(self):
        """The response format wraps the processed schema."""
        fmt = build_response_format("r", {"properties": {"a": {"type": "string"}}})
        assert fmt["json_schema"]["schema"]["additionalProperties"] is False


class TestInvalidModelDetection:
    """Tests for check_for_invalid_model_error."""

    def test_404_is_invalid_model(self):
        """404 responses mean the model is unusable."""
        response = httpx.Response(404, json={"error": "nope"})
        is_invalid, data = check_for_invalid_model_error(response, "m")
        assert is_invalid is True
        assert data == {"error": "nope"}

    def test_message_mentions_model(self):
        """Other 4xx responses are judged by their message."""
        response = httpx.Response(422, json={"error": {"message": "Model is unavailable"}})
        assert check_for_invalid_model_error(response, "m")[0] is True

    def test_server_error_not_invalid_model(self):
        """5xx responses are never invalid-model errors."""
        response = httpx.Response(500, json={"error": "model crashed"})
        assert check_for_invalid_model_error(response, "m") == (False, None)

    def test_non_json_body(self):
        """Plain-text bodies are wrapped."""
        response = httpx.Response(400, text="bad request")
        is_invalid, data = check_for_invalid_model_error(response, "m")
        assert is_invalid is True
        assert data == {"error": "bad request"}


class TestHandleApiError:
    """Tests for handle_api_error."""

    @pytest.mark.asyncio
    async def test_non_key_error_raises_with_context(self):
        """Unrelated errors are wrapped with the context."""
        with pytest.raises(CallAIError, match="call_ai: kaboom") as exc_info:
            await handle_api_error(ValueError("kaboom"), "call_ai", store=make_store())
        assert exc_info.value.status == 500
        assert exc_info.value.error_type == "ValueError"

    @pytest.mark.asyncio
    async def test_skip_refresh_reraises(self):
        """skip_refresh re-raises the original error."""
        error = CallAIError("Unauthorized", status=401)
        with pytest.raises(CallAIError) as exc_info:
            await handle_api_error(error, "call_ai", skip_refresh=True, store=make_store())
        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_key_error_refreshes(self):
        """A key error refreshes the key and returns normally."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"key": {"key": "sk-fresh", "hash": "h"}})

        store = make_store()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await handle_api_error(
                CallAIError("Unauthorized", status=401), "call_ai", store=store, client=client
            )

        assert store.current == "sk-fresh"

    @pytest.mark.asyncio
    async def test_refresh_failure_raises(self):
        """When the refresh fails the error mentions both failures."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="down")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(CallAIError, match="Key refresh failed") as exc_info:
                await handle_api_error(
                    CallAIError("Unauthorized", status=401),
                    "call_ai",
                    store=make_store(),
                    client=client,
                )

        assert exc_info.value.status == 401
        assert exc_info.value.refresh_error is not None

    @pytest.mark.asyncio
    async def test_updates_refresh_token_once(self, monkeypatch):
        """A rejected refresh token is replaced and the refresh retried."""
        monkeypatch.setattr("callai.keys.MIN_REFRESH_INTERVAL", 0.0)
        tokens = []

        def handler(request: httpx.Request) -> httpx.Response:
            token = request.headers["authorization"].removeprefix("Bearer ")
            tokens.append(token)
            if token == "tok":
                return httpx.Response(401, text="expired")
            return httpx.Response(200, json={"key": "sk-after-token"})

        async def update_token(old: str) -> str:
            return "tok-2"

        store = make_store()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await handle_api_error(
                CallAIError("API key is required", status=401),
                "call_ai",
                update_refresh_token=update_token,
                store=store,
                client=client,
            )

        assert tokens == ["tok", "tok-2"]
        assert store.current == "sk-after-token"
        assert store.refresh_token == "tok-2"


class TestCallAi:
    """Tests for call_ai."""

    @pytest.mark.asyncio
    async def test_returns_content(self):
        """The assistant message content is returned."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["authorization"] == "Bearer sk-old"
            return completion("hello")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            text = await call_ai(
                "hi", CallAIOptions(chat_url=CHAT_URL), client=client, store=make_store()
            )

        assert text == "hello"

    @pytest.mark.asyncio
    async def test_refreshes_key_and_retries(self):
        """A 401 triggers one refresh and a retry with the new key."""
        auth_headers = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "keys.example.com":
                return httpx.Response(200, json={"key": "sk-new"})
            auth_headers.append(request.headers["authorization"])
            if request.headers["authorization"] == "Bearer sk-old":
                return httpx.Response(401, json={"error": "Invalid API key"})
            return completion("after refresh")

        store = make_store()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            text = await call_ai(
                "hi",
                CallAIOptions(chat_url=CHAT_URL, model=FALLBACK_MODEL),
                client=client,
                store=store,
            )

        assert text == "after refresh"
        assert auth_headers == ["Bearer sk-old", "Bearer sk-new"]
        assert store.current == "sk-new"

    @pytest.mark.asyncio
    async def test_falls_back_on_invalid_model(self):
        """An invalid model is retried once with the fallback model."""
        models = []

        def handler(request: httpx.Request) -> httpx.Response:
            model = json.loads(request.content)["model"]
            models.append(model)
            if model == "vendor/missing":
                return httpx.Response(404, json={"error": "model not found"})
            return completion("fallback ok")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            text = await call_ai(
                "hi",
                CallAIOptions(chat_url=CHAT_URL, model="vendor/missing"),
                client=client,
                store=make_store(),
            )

        assert text == "fallback ok"
        assert models == ["vendor/missing", FALLBACK_MODEL]

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        """Server errors are not retried with a new key."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="oops")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(CallAIError):
                await call_ai(
                    "hi",
                    CallAIOptions(chat_url=CHAT_URL, model=FALLBACK_MODEL),
                    client=client,
                    store=make_store(),
                )


class TestStreamAi:
    """Tests for stream_ai."""

    @pytest.mark.asyncio
    async def test_yields_accumulated_text(self):
        """Each delta yields the text so far."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content)["stream"] is True
            return sse("Hel", "lo", "!")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            chunks = [
                text
                async for text in stream_ai(
                    "hi", CallAIOptions(chat_url=CHAT_URL), client=client, store=make_store()
                )
            ]

        assert chunks == ["Hel", "Hello", "Hello!"]

    @pytest.mark.asyncio
    async def test_missing_key_is_provisioned(self):
        """Without a key, one is fetched from the key service before streaming."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "keys.example.com":
                return httpx.Response(200, json={"key": {"key": "sk-first"}})
            assert request.headers["authorization"] == "Bearer sk-first"
            return sse("ok")

        store = make_store(current=None)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            chunks = [
                text
                async for text in stream_ai(
                    "hi", CallAIOptions(chat_url=CHAT_URL), client=client, store=store
                )
            ]

        assert chunks == ["ok"]
        assert store.current == "sk-first"

    @pytest.mark.asyncio
    async def test_error_after_first_delta_not_recovered(self):
        """Once text has been yielded, errors propagate without a key refresh."""
        hosts = []

        class DroppedStream(httpx.AsyncByteStream):
            async def __aiter__(self):
                yield b'data: {"choices": [{"delta": {"content": "Hel"}}]}\n\n'
                raise httpx.ReadError("Unauthorized: connection dropped")

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            if request.url.host == "keys.example.com":
                return httpx.Response(200, json={"key": "sk-new"})
            return httpx.Response(
                200, stream=DroppedStream(), headers={"content-type": "text/event-stream"}
            )

        store = make_store()
        chunks = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(httpx.ReadError):
                async for text in stream_ai(
                    "hi", CallAIOptions(chat_url=CHAT_URL), client=client, store=store
                ):
                    chunks.append(text)

        assert chunks == ["Hel"]
        assert hosts == ["chat.example.com"]
        assert store.current == "sk-old"
