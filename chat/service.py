"""Chat orchestration: from a user prompt to a stored, titled AI response."""

import asyncio
import inspect
import json
import logging
from collections.abc import AsyncIterator, Callable
from functools import partial
from typing import Any

import httpx
from langchain_core.language_models import BaseChatModel
from pydantic import BaseModel

from callai.client import call_ai, stream_ai
from callai.env import call_ai_env
from callai.keys import KeyStore, get_credits, is_new_key_error, key_store, refresh_api_key
from callai.types import CallAIError, CallAIOptions, Credits, Message
from chat.models import (
    AiChatMessageDocument,
    ChatMessageDocument,
    SystemChatMessageDocument,
    UserChatMessageDocument,
    UserSettings,
    VibeDocument,
)
from chat.segments import parse_content
from chat.sessions import VibeSession, load_settings
from chat.titles import generate_title
from common.store import SessionStore
from prompts.catalog import DocsLoader
from prompts.system_prompt import (
    CallAIFn,
    HistoryMessage,
    PromptOptions,
    make_base_system_prompt,
    normalize_model_id,
    resolve_effective_model,
)

logger = logging.getLogger(__name__)

MISSING_KEY_ERROR = "API key is required. Please log in or ensure your key is valid."
INSUFFICIENT_CREDITS_ERROR = "Insufficient credits. Please add credits or request a new key."
EMPTY_RESPONSE_ERROR = "The model returned an empty response. Please log in and try again."

MAX_TOKENS_AUTHENTICATED = 150000
MAX_TOKENS_ANONYMOUS = 75000

REQUEST_HEADERS = {"HTTP-Referer": "https://vibes.diy", "X-Title": "Vibes DIY"}

StreamFn = Callable[[list[Message], CallAIOptions], AsyncIterator[str]]
ContentCallback = Callable[[str], Any]


class SendResult(BaseModel):
    """Outcome of sending one chat message."""

    session_id: str
    message_id: str | None = None
    text: str = ""
    code: str = ""
    title: str | None = None
    needs_new_key: bool = False
    needs_login: bool = False
    error: str | None = None


def build_message_history(docs: list[ChatMessageDocument]) -> list[HistoryMessage]:
    """Map stored user and AI messages to conversation history, dropping system messages."""
    history = []
    for doc in docs:
        if not doc.text:
            continue
        if doc.type == "user":
            history.append(HistoryMessage(role="user", content=doc.text))
        elif doc.type == "ai":
            history.append(HistoryMessage(role="assistant", content=doc.text))
    return history


def credits_sufficient(credits: Credits) -> bool:
    """A key without a limit, or with a positive balance, can be used."""
    return credits.limit == 0 or credits.available > 0


def _error_body(text: str) -> dict | None:
    """Return the parsed body when a response is a JSON error object."""
    if not text.lstrip().startswith("{"):
        return None
    try:
        body = json.loads(text)
    except ValueError:
        return None
    return body if isinstance(body, dict) and body.get("error") else None


class ChatService:
    """
    Run chat turns against a session store.

    Every dependency with network side effects is injectable so the flow can
    be exercised without an LLM provider.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        keys: KeyStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        loader: DocsLoader | None = None,
        call_ai_fn: CallAIFn | None = None,
        stream_fn: StreamFn | None = None,
        credits_fn: Callable[[str], Any] | None = None,
        title_llm: BaseChatModel | None = None,
        call_ai_endpoint: str | None = None,
    ):
        """
        Initialize the chat service.

        Args:
            store: Session storage.
            keys: API key store. Defaults to the module key store.
            http_client: HTTP client shared by key, credit and completion calls.
            loader: Prompt catalog loader.
            call_ai_fn: Replacement for call_ai during library selection.
            stream_fn: Replacement for stream_ai.
            credits_fn: Replacement for get_credits.
            title_llm: Chat model for title generation.
            call_ai_endpoint: Endpoint for the library selection call. Defaults to
                CALLAI_ENDPOINT, then API_BASE_URL.
        """
        self.store = store
        self.keys = keys or key_store
        self.http_client = http_client
        self.loader = loader
        self.call_ai_fn = call_ai_fn or partial(call_ai, client=http_client, store=self.keys)
        self.stream_fn = stream_fn
        self.credits_fn = credits_fn
        self.title_llm = title_llm
        self.call_ai_endpoint = call_ai_endpoint or call_ai_env.callai_endpoint

    async def ensure_api_key(self) -> str | None:
        """Return the current key, provisioning one through the key service if needed."""
        if self.keys.current:
            return self.keys.current
        try:
            result = await refresh_api_key(
                None,
                self.keys.refresh_endpoint,
                self.keys.refresh_token,
                client=self.http_client,
                store=self.keys,
            )
        except CallAIError as e:
            logger.warning(f"Could not provision API key: {e}")
            return None
        return result.api_key

    async def check_credits(self, api_key: str) -> bool:
        """Whether the key has credits left. A failed lookup does not block the turn."""
        try:
            if self.credits_fn is not None:
                credits = await self.credits_fn(api_key)
            else:
                credits = await get_credits(api_key, self.http_client)
        except CallAIError as e:
            logger.warning(f"Credit check failed, continuing: {e}")
            return True
        return credits_sufficient(credits)

    def _stream(self, messages: list[Message], options: CallAIOptions) -> AsyncIterator[str]:
        if self.stream_fn is not None:
            return self.stream_fn(messages, options)
        return stream_ai(messages, options, client=self.http_client, store=self.keys)

    async def _record_error(
        self,
        session: VibeSession,
        result: SendResult,
        error: str,
        error_type: str,
        error_category: str,
    ) -> SendResult:
        message = SystemChatMessageDocument(
            session_id=session.session_id,
            text=error,
            error_type=error_type,
            error_category=error_category,
        )
        await asyncio.to_thread(session.put_message, message)
        result.error = error
        return result

    def _open_turn(
        self,
        session: VibeSession,
        prompt: str,
        settings: UserSettings | None,
        retry: bool,
    ) -> tuple[VibeDocument, UserSettings, list[ChatMessageDocument]]:
        """Load session state and save the user message. Blocking storage calls."""
        if not session.exists():
            session.update_vibe()
        vibe = session.vibe_doc()
        settings = settings or load_settings(self.store)
        docs = session.messages()
        if not retry:
            message = UserChatMessageDocument(session_id=session.session_id, text=prompt)
            session.put_message(message)
        return vibe, settings, docs

    async def send_message(
        self,
        session_id: str,
        prompt: str,
        *,
        model: str | None = None,
        settings: UserSettings | None = None,
        on_content: ContentCallback | None = None,
        retry: bool = False,
        user_id: str | None = None,
    ) -> SendResult:
        """
        Send a prompt in a session and store the response.

        The user message is saved first unless this is a retry. The key and
        its credits are checked before the system prompt is built from the
        session history and settings. The response is streamed, with each
        accumulated text passed to on_content, then saved as an AI message.
        The session gets a generated title the first time it has none.
        Failures are saved as system messages and reported in the result.

        Args:
            session_id: Session to send in.
            prompt: The user prompt. Blank prompts are ignored.
            model: Model override for this turn.
            settings: Global settings. Loaded from the store if omitted.
            on_content: Called with the response text so far, may be async.
            retry: Resend without saving the user message again.
            user_id: Identified users get a larger token budget.

        Returns:
            SendResult describing the stored response or the failure.
        """
        result = SendResult(session_id=session_id)
        if not prompt or not prompt.strip():
            return result

        session = VibeSession(self.store, session_id)
        vibe, settings, docs = await asyncio.to_thread(
            self._open_turn, session, prompt, settings, retry
        )

        history = build_message_history(docs)
        if retry and history and history[-1].role == "user" and history[-1].content == prompt:
            history = history[:-1]

        api_key = await self.ensure_api_key()
        if not api_key:
            result.needs_login = True
            result.needs_new_key = True
            return await self._record_error(
                session, result, MISSING_KEY_ERROR, "MissingKey", "auth"
            )

        if not await self.check_credits(api_key):
            result.needs_new_key = True
            return await self._record_error(
                session, result, INSUFFICIENT_CREDITS_ERROR, "InsufficientCredits", "credits"
            )

        effective_model = normalize_model_id(model) or resolve_effective_model(settings, vibe)

        selections: list[list[str]] = []
        prompt_result = await make_base_system_prompt(
            effective_model,
            PromptOptions(
                user_prompt=prompt,
                history=history,
                style_prompt=settings.style_prompt or None,
                dependencies=vibe.dependencies,
                dependencies_user_override=vibe.dependencies_user_override,
                instructional_text_override=vibe.instructional_text_override,
                demo_data_override=vibe.demo_data_override,
                call_ai_endpoint=self.call_ai_endpoint,
            ),
            selections.append,
            loader=self.loader,
            call_ai_fn=self.call_ai_fn,
        )
        if selections:
            await asyncio.to_thread(session.update_vibe, ai_selected_dependencies=selections[-1])

        messages = [
            Message(role="system", content=prompt_result.system_prompt),
            *(Message(role=m.role, content=m.content) for m in history),
            Message(role="user", content=prompt),
        ]
        options = CallAIOptions(
            api_key=api_key,
            model=effective_model,
            stream=True,
            transforms=["middle-out"],
            max_tokens=MAX_TOKENS_AUTHENTICATED if user_id else MAX_TOKENS_ANONYMOUS,
            headers=dict(REQUEST_HEADERS),
        )

        text = ""
        try:
            async for text in self._stream(messages, options):
                if on_content is not None:
                    outcome = on_content(text)
                    if inspect.isawaitable(outcome):
                        await outcome
        except (CallAIError, httpx.HTTPError) as e:
            logger.error(f"Streaming failed for session {session_id}: {e}")
            result.needs_new_key = is_new_key_error(e)
            category = "auth" if result.needs_new_key else "api"
            error_type = getattr(e, "error_type", None) or type(e).__name__
            return await self._record_error(session, result, str(e), error_type, category)

        error_body = _error_body(text)
        if error_body is not None:
            result.needs_new_key = True
            return await self._record_error(
                session, result, f"Error: {json.dumps(error_body)}", "ResponseError", "auth"
            )

        if not text.strip():
            result.needs_login = True
            return await self._record_error(
                session, result, EMPTY_RESPONSE_ERROR, "EmptyResponse", "auth"
            )

        ai_message = AiChatMessageDocument(session_id=session_id, text=text, model=effective_model)
        result.message_id = await asyncio.to_thread(session.put_message, ai_message)
        result.text = text

        segments, _ = parse_content(text)
        result.code = next((s.content for s in segments if s.type == "code"), "")

        if not vibe.title:
            title = await generate_title(segments, effective_model, api_key, llm=self.title_llm)
            await asyncio.to_thread(session.update_title, title)
            result.title = title
        else:
            result.title = vibe.title

        logger.info(f"Session {session_id}: stored response {result.message_id}")
        return result

