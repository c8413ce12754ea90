"""Chat-completion client with key refresh and model fallback."""

import json
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any

import httpx

from callai.env import call_ai_env
from callai.errors import MISSING_KEY_MESSAGE, check_for_invalid_model_error, handle_api_error
from callai.keys import KeyStore, key_store
from callai.schema import build_response_format
from callai.types import CallAIError, CallAIOptions, Message

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "openrouter/auto"
FALLBACK_MODEL = "openrouter/auto"
COMPLETIONS_PATH = "/api/v1/chat/completions"
REQUEST_TIMEOUT = 300.0

Prompt = str | Sequence[Message | dict[str, str]]


class InvalidModelError(CallAIError):
    """Raised when the provider rejects the requested model."""

    pass


def to_messages(prompt: Prompt) -> list[Message]:
    """Normalize a prompt string or message list into Message objects."""
    if isinstance(prompt, str):
        return [Message(role="user", content=prompt)]
    return [m if isinstance(m, Message) else Message.model_validate(m) for m in prompt]


def completions_url(options: CallAIOptions) -> str:
    """Return the chat-completions URL for the configured chat endpoint."""
    base = options.chat_url or call_ai_env.chat_url
    return f"{base.rstrip('/')}{COMPLETIONS_PATH}"


def build_request_body(
    messages: list[Message], options: CallAIOptions, stream: bool
) -> dict[str, Any]:
    """Assemble the JSON body for a chat-completion request."""
    body: dict[str, Any] = {
        "model": options.model or DEFAULT_MODEL,
        "messages": [m.model_dump() for m in messages],
        "stream": stream,
    }
    if options.max_tokens is not None:
        body["max_tokens"] = options.max_tokens
    if options.temperature is not None:
        body["temperature"] = options.temperature
    if options.transforms:
        body["transforms"] = options.transforms
    if options.schema_:
        body["response_format"] = build_response_format(
            options.schema_.get("name", "result"), options.schema_
        )
    return body


def _headers(api_key: str, options: CallAIOptions) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        **options.headers,
    }


def _is_debug(options: CallAIOptions, store: KeyStore) -> bool:
    return store.debug if options.debug is None else options.debug


def _raise_for_response(response: httpx.Response, model: str, debug: bool) -> None:
    """Raise InvalidModelError or CallAIError for an unsuccessful response."""
    if response.is_success:
        return
    is_invalid_model, error_data = check_for_invalid_model_error(response, model, debug)
    detail = json.dumps(error_data) if error_data is not None else response.text
    message = f"HTTP error! Status: {response.status_code} - {detail}"
    if is_invalid_model:
        raise InvalidModelError(message, status=response.status_code)
    raise CallAIError(message, status=response.status_code)


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)


@asynccontextmanager
async def _client_scope(client: httpx.AsyncClient | None):
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=httpx.Timeout(REQUEST_TIMEOUT)) as http:
        yield http


async def _next_attempt(
    error: Exception,
    options: CallAIOptions,
    tried: set[str],
    store: KeyStore,
    http: httpx.AsyncClient,
    context: str,
) -> CallAIOptions:
    """Return options for one more attempt, or raise when error is final."""
    model = options.model or DEFAULT_MODEL
    if isinstance(error, InvalidModelError) and "model" not in tried and model != FALLBACK_MODEL:
        tried.add("model")
        logger.warning(f"Model {model} unavailable, retrying with {FALLBACK_MODEL}")
        return options.model_copy(update={"model": FALLBACK_MODEL})

    if "key" in tried:
        raise error
    tried.add("key")

    await handle_api_error(
        error,
        context,
        debug=_is_debug(options, store),
        api_key=options.api_key,
        skip_refresh=options.skip_refresh,
        refresh_token=options.refresh_token,
        update_refresh_token=options.update_refresh_token,
        store=store,
        client=http,
    )
    return options.model_copy(update={"api_key": store.current, "skip_refresh": True})


async def _complete_once(
    http: httpx.AsyncClient, messages: list[Message], options: CallAIOptions, store: KeyStore
) -> str:
    api_key = options.api_key or store.current
    if not api_key:
        raise CallAIError(MISSING_KEY_MESSAGE, status=401)

    model = options.model or DEFAULT_MODEL
    response = await http.post(
        completions_url(options),
        json=build_request_body(messages, options, stream=False),
        headers=_headers(api_key, options),
    )
    _raise_for_response(response, model, _is_debug(options, store))

    data = response.json()
    if data.get("error"):
        raise CallAIError(_error_message(data["error"]), status=response.status_code)

    choices = data.get("choices") or []
    if not choices:
        raise CallAIError("Response contained no choices", status=response.status_code)
    return choices[0].get("message", {}).get("content") or ""


async def call_ai(
    prompt: Prompt,
    options: CallAIOptions | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    store: KeyStore | None = None,
) -> str:
    """
    Send a non-streaming chat completion and return the response text.

    An invalid-model response is retried once with FALLBACK_MODEL. A key
    error triggers one key refresh followed by one retry with the new key.

    Args:
        prompt: A user prompt string or a list of messages.
        options: Request options. A schema requests structured JSON output.
        client: Optional HTTP client to send requests with.
        store: Key store to use. Defaults to the module store.

    Returns:
        The assistant message content.

    Raises:
        CallAIError: If the request fails and cannot be recovered.
    """
    options = options or CallAIOptions()
    store = store or key_store
    messages = to_messages(prompt)
    tried: set[str] = set()

    async with _client_scope(client) as http:
        while True:
            try:
                return await _complete_once(http, messages, options, store)
            except (CallAIError, httpx.HTTPError) as e:
                options = await _next_attempt(e, options, tried, store, http, "call_ai")


async def _stream_once(
    http: httpx.AsyncClient, messages: list[Message], options: CallAIOptions, store: KeyStore
) -> AsyncIterator[str]:
    api_key = options.api_key or store.current
    if not api_key:
        raise CallAIError(MISSING_KEY_MESSAGE, status=401)

    model = options.model or DEFAULT_MODEL
    debug = _is_debug(options, store)
    async with http.stream(
        "POST",
        completions_url(options),
        json=build_request_body(messages, options, stream=True),
        headers=_headers(api_key, options),
    ) as response:
        if not response.is_success:
            await response.aread()
            _raise_for_response(response, model, debug)

        text = ""
        async for line in response.aiter_lines():
            line = line.strip()
            if not line.startswith("data:"):
                continue
            payload = line[len("data:") :].strip()
            if payload == "[DONE]":
                break
            try:
                chunk = json.loads(payload)
            except json.JSONDecodeError:
                logger.debug(f"Skipping malformed stream chunk: {payload[:80]}")
                continue
            if chunk.get("error"):
                raise CallAIError(_error_message(chunk["error"]), status=response.status_code)
            for choice in chunk.get("choices") or []:
                delta = (choice.get("delta") or {}).get("content")
                if delta:
                    text += delta
                    yield text


async def stream_ai(
    prompt: Prompt,
    options: CallAIOptions | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    store: KeyStore | None = None,
) -> AsyncIterator[str]:
    """
    Stream a chat completion, yielding the accumulated text after each delta.

    Recovery follows call_ai, but only until the first delta has been
    yielded; errors after that propagate unchanged.

    Args:
        prompt: A user prompt string or a list of messages.
        options: Request options.
        client: Optional HTTP client to send requests with.
        store: Key store to use. Defaults to the module store.

    Yields:
        The full response text received so far.

    Raises:
        CallAIError: If the request fails and cannot be recovered.
    """
    options = options or CallAIOptions()
    store = store or key_store
    messages = to_messages(prompt)
    tried: set[str] = set()

    async with _client_scope(client) as http:
        while True:
            started = False
            try:
                async for text in _stream_once(http, messages, options, store):
                    started = True
                    yield text
                return
            except (CallAIError, httpx.HTTPError) as e:
                if started:
                    raise
                options = await _next_attempt(e, options, tried, store, http, "stream_ai")
