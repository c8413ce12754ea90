"""FastAPI gateway: key provisioning, share metadata and session APIs."""

import asyncio
import json
import logging
import os
import re
import time
from contextlib import asynccontextmanager
from functools import partial
from html import escape

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response, StreamingResponse
from pydantic import BaseModel

from chat.models import UserSettings
from chat.publish import publish_app
from chat.service import ChatService
from chat.segments import extract_code
from chat.sessions import (
    VibeSession,
    delete_vibe,
    generate_session_id,
    list_vibes,
    load_settings,
    save_settings,
    toggle_vibe_favorite,
)
from common.store import SessionStore, SessionStoreError
from security.utils import SecurityError, validate_session_id, validate_slug

logger = logging.getLogger(__name__)

OPENROUTER_KEYS_URL = "https://openrouter.ai/api/v1/keys"
IDENTIFIED_KEY_LIMIT = 2.5
ANONYMOUS_KEY_LIMIT = 1.25

VIBE_HOST_SUFFIX = "vibesdiy.app"
VIBE_SHARE_BASE = "https://vibes.diy/vibe"
BOT_USER_AGENT = "Mozilla/5.0 (compatible; VibesDIY-Bot/1.0)"
VIBE_CACHE_CONTROL = "public, max-age=3600"

IFRAME_ALLOW = (
    "accelerometer; autoplay; camera; clipboard-read; clipboard-write; encrypted-media; "
    "fullscreen; gamepad; geolocation; gyroscope; hid; microphone; midi; payment; "
    "picture-in-picture; publickey-credentials-get; screen-wake-lock; serial; usb; "
    "web-share; xr-spatial-tracking"
)
IFRAME_SANDBOX = (
    "allow-scripts allow-same-origin allow-forms allow-popups "
    "allow-popups-to-escape-sandbox allow-presentation allow-orientation-lock "
    "allow-pointer-lock allow-downloads allow-top-navigation"
)

_TITLE = re.compile(r"<title[^>]*>([^<]*)</title>", re.IGNORECASE)
_DESCRIPTION = re.compile(
    r"<meta[^>]*name=[\"']description[\"'][^>]*content=[\"']([^\"']*)[\"'][^>]*>",
    re.IGNORECASE,
)


class ChatRequest(BaseModel):
    prompt: str
    session_id: str | None = None
    model: str | None = None
    retry: bool = False
    user_id: str | None = None


class PublishRequest(BaseModel):
    code: str | None = None


def escape_html(text: str) -> str:
    """Escape text for HTML attributes and content, including single quotes."""
    return escape(text, quote=True).replace("&#x27;", "&#039;")


def error_response(message: str, status_code: int, details=None) -> JSONResponse:
    """JSON error body in the ``{"error": ...}`` shape used by the key proxy."""
    content = {"error": message}
    if details is not None:
        content["details"] = details
    return JSONResponse(content, status_code=status_code)


def render_vibe_meta(slug: str, source_html: str = "") -> str:
    """
    Render a crawler page for a published vibe.

    The title and description are taken from the app's own HTML when present.
    The page embeds the app in a full-window iframe.

    Args:
        slug: The published app slug.
        source_html: HTML of the published app, or empty if unavailable.

    Returns:
        HTML document with Open Graph and Twitter card metadata.
    """
    title_match = _TITLE.search(source_html)
    description_match = _DESCRIPTION.search(source_html)

    title = escape_html(title_match.group(1) if title_match else f"{slug} - Vibes DIY")
    description = escape_html(
        description_match.group(1)
        if description_match
        else f"Check out {slug} - an AI-generated app created with Vibes DIY"
    )
    app_url = f"https://{slug}.{VIBE_HOST_SUFFIX}/"
    image_url = f"{app_url}screenshot.png"

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">

  <title>{title}</title>
  <meta name="description" content="{description}">

  <!-- Open Graph -->
  <meta property="og:title" content="{title}">
  <meta property="og:description" content="{description}">
  <meta property="og:type" content="website">
  <meta property="og:url" content="{VIBE_SHARE_BASE}/{slug}">
  <meta property="og:image" content="{image_url}">
  <meta property="og:image:width" content="1200">
  <meta property="og:image:height" content="630">
  <meta property="og:site_name" content="Vibes DIY">

  <!-- Twitter Card -->
  <meta name="twitter:card" content="summary_large_image">
  <meta name="twitter:title" content="{title}">
  <meta name="twitter:description" content="{description}">
  <meta name="twitter:image" content="{image_url}">
  <meta name="twitter:site" content="@vibesdiy">

  <style>
    body, html {{ margin: 0; padding: 0; height: 100%; overflow: hidden; }}
    iframe {{ width: 100%; height: 100vh; border: none; }}
  </style>
</head>
<body>
  <iframe
    src="{app_url}"
    title="{title}"
    allow="{IFRAME_ALLOW}"
    sandbox="{IFRAME_SANDBOX}"
    allowfullscreen>
  </iframe>
</body>
</html>"""


class GatewayRouter:
    """
    Server-side handlers that need secrets or outbound HTTP.

    Owns the shared HTTP client used for OpenRouter key provisioning,
    fetching published apps and publishing.
    """

    def __init__(
        self,
        store: SessionStore | None = None,
        chat_service: ChatService | None = None,
        client_timeout: float = 30.0,
        api_base_url: str | None = None,
        provisioning_key: str | None = None,
    ):
        """
        Initialize the gateway router.

        Args:
            store: Session storage for the session APIs.
            chat_service: Chat orchestration for the chat APIs.
            client_timeout: Timeout for outbound HTTP requests in seconds.
            api_base_url: Hosting API base for publishing.
            provisioning_key: OpenRouter provisioning key. Defaults to
                SERVER_OPENROUTER_PROV_KEY env var.
        """
        self.store = store
        self.chat_service = chat_service
        self.client_timeout = client_timeout
        self.api_base_url = api_base_url
        self.provisioning_key = provisioning_key
        self._http_client: httpx.AsyncClient | None = None

    async def startup(self) -> None:
        """Initialize the HTTP client."""
        self._http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.client_timeout),
            follow_redirects=False,
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
        )
        logger.info("Gateway HTTP client initialized")

    async def shutdown(self) -> None:
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        logger.info("Gateway HTTP client closed")

    def _client(self) -> httpx.AsyncClient:
        if not self._http_client:
            raise HTTPException(status_code=503, detail="Gateway not initialized")
        return self._http_client

    def _get_provisioning_key(self) -> str | None:
        return self.provisioning_key or os.environ.get("SERVER_OPENROUTER_PROV_KEY")

    async def _openrouter(self, method: str, url: str, key: str, failure: str, **kwargs):
        response = await self._client().request(
            method, url, headers={"Authorization": f"Bearer {key}"}, **kwargs
        )
        data = response.json()
        if not response.is_success:
            logger.error(f"{failure}: {response.status_code} {data}")
            return data, error_response(failure, response.status_code, data)
        return data, None

    async def create_key(self, body: dict, key: str, user_id: str) -> JSONResponse:
        """
        Provision a spending-limited OpenRouter key for a user.

        Identified users get IDENTIFIED_KEY_LIMIT dollars, anonymous users
        ANONYMOUS_KEY_LIMIT, and the user id is folded into the key label.
        """
        identified = user_id != "anonymous"
        name = body.get("name") or "Session Key"
        label = body.get("label") or f"session-{int(time.time() * 1000)}"
        limit = IDENTIFIED_KEY_LIMIT if identified else ANONYMOUS_KEY_LIMIT

        payload = {
            "name": f"User {user_id} Session" if identified else name,
            "label": f"user-{user_id}-{label}" if identified else f"anonymous-{label}",
            "limit": limit,
        }
        logger.info(f"Creating key {payload['label']} with limit ${limit}")

        data, failure = await self._openrouter(
            "POST", OPENROUTER_KEYS_URL, key, "Failed to create key", json=payload
        )
        if failure:
            return failure

        if not data.get("key"):
            logger.error(f"Unexpected key creation response: {data}")
            return error_response("Invalid API response format", 500)

        return JSONResponse({**(data.get("data") or {}), "key": data["key"]})

    async def check_credits(self, body: dict, key: str) -> JSONResponse:
        """Look up a provisioned key's usage by hash."""
        key_hash = body.get("keyHash")
        if not key_hash:
            return error_response("Key hash is required", 400)

        data, failure = await self._openrouter(
            "GET", f"{OPENROUTER_KEYS_URL}/{key_hash}", key, "Failed to check credits"
        )
        return failure or JSONResponse(data)

    async def list_keys(self, key: str) -> JSONResponse:
        data, failure = await self._openrouter("GET", OPENROUTER_KEYS_URL, key, "Failed to list keys")
        return failure or JSONResponse(data)

    async def handle_callai(self, request: Request, action: str) -> JSONResponse:
        """
        Dispatch a key management action.

        Args:
            request: The incoming request, which must carry a bearer token.
            action: create-key, check-credits or list-keys. Any file
                extension is ignored.

        Returns:
            JSON response in the key proxy's ``{"error": ...}`` error shape.
        """
        auth = request.headers.get("authorization", "")
        if not auth.startswith("Bearer "):
            return error_response("Unauthorized", 401)

        try:
            body = await request.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        user_id = body.get("userId") or "anonymous"
        key = self._get_provisioning_key()
        if not key:
            logger.error("SERVER_OPENROUTER_PROV_KEY is not configured")
            return error_response("Server configuration error", 500)

        action = action.split(".")[0]
        try:
            if action == "create-key":
                return await self.create_key(body, key, user_id)
            if action == "check-credits":
                return await self.check_credits(body, key)
            if action == "list-keys":
                return await self.list_keys(key)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Key action {action} failed: {e}")
            return error_response(str(e), 500)

        return error_response("Invalid action", 400)

    async def vibe_meta(self, slug: str) -> HTMLResponse:
        """
        Serve crawler metadata for a published vibe.

        Raises:
            HTTPException: If the slug is not a valid hostname label.
        """
        try:
            validate_slug(slug)
        except SecurityError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        source_html = ""
        try:
            response = await self._client().get(
                f"https://{slug}.{VIBE_HOST_SUFFIX}/", headers={"User-Agent": BOT_USER_AGENT}
            )
            if response.is_success:
                source_html = response.text
            else:
                logger.warning(f"Vibe {slug} returned {response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Error fetching vibe metadata for {slug}: {e}")

        return HTMLResponse(
            render_vibe_meta(slug, source_html),
            headers={"Cache-Control": VIBE_CACHE_CONTROL},
        )

    def require_store(self) -> SessionStore:
        if self.store is None:
            raise HTTPException(status_code=503, detail="Session storage not configured")
        return self.store

    def require_chat(self) -> ChatService:
        if self.chat_service is None:
            raise HTTPException(status_code=503, detail="Chat service not configured")
        return self.chat_service

    def session(self, session_id: str) -> VibeSession:
        """
        Open a session, validating its id.

        Raises:
            HTTPException: 400 for an invalid id, 503 without storage.
        """
        store = self.require_store()
        try:
            validate_session_id(session_id)
        except SecurityError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return VibeSession(store, session_id)

    def existing_session(self, session_id: str) -> VibeSession:
        session = self.session(session_id)
        if not session.exists():
            raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
        return session


def create_gateway_app(
    store: SessionStore | None = None,
    chat_service: ChatService | None = None,
    client_timeout: float = 30.0,
    api_base_url: str | None = None,
    provisioning_key: str | None = None,
) -> FastAPI:
    """
    Create the Vibes DIY FastAPI gateway.

    Args:
        store: Session storage. Session routes return 503 without it.
        chat_service: Chat orchestration. Chat routes return 503 without it.
        client_timeout: Timeout for outbound HTTP requests.
        api_base_url: Hosting API base for publishing.
        provisioning_key: OpenRouter provisioning key.

    Returns:
        Configured FastAPI application. The router is available as
        ``app.state.router``.
    """
    router = GatewayRouter(
        store=store,
        chat_service=chat_service,
        client_timeout=client_timeout,
        api_base_url=api_base_url,
        provisioning_key=provisioning_key,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await router.startup()
        yield
        await router.shutdown()

    app = FastAPI(
        title="Vibes DIY Gateway",
        description="Key provisioning, share metadata and session APIs for Vibes DIY",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.router = router

    # Add CORS middleware for browser requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SessionStoreError)
    async def store_error_handler(request: Request, exc: SessionStoreError):
        logger.error(f"Storage error on {request.url.path}: {exc}")
        return JSONResponse({"detail": str(exc)}, status_code=502)

    @app.get("/health")
    async def health_check():
        """Gateway health check endpoint."""
        return {
            "gateway": "ok",
            "storage": router.store is not None,
            "chat": router.chat_service is not None,
        }

    @app.post("/api/callai/{action}")
    async def callai_action(request: Request, action: str):
        """OpenRouter key provisioning for browser clients."""
        return await router.handle_callai(request, action)

    @app.get("/vibe/{slug}")
    async def vibe_meta(slug: str):
        """Crawler page with Open Graph metadata for a published vibe."""
        return await router.vibe_meta(slug)

    @app.post("/api/chat")
    async def chat(request: ChatRequest):
        """Run one chat turn and return the stored result."""
        service = router.require_chat()
        session_id = request.session_id or generate_session_id()
        router.session(session_id)
        result = await service.send_message(
            session_id,
            request.prompt,
            model=request.model,
            retry=request.retry,
            user_id=request.user_id,
        )
        return result.model_dump()

    @app.post("/api/chat/stream")
    async def chat_stream(request: ChatRequest):
        """
        Run one chat turn as server-sent events.

        Emits ``data: {"text": ...}`` with the response so far, then a final
        ``done`` event carrying the result, or an ``error`` event.
        """
        service = router.require_chat()
        session_id = request.session_id or generate_session_id()
        router.session(session_id)

        async def events():
            queue: asyncio.Queue = asyncio.Queue()

            async def on_content(text: str) -> None:
                await queue.put(("content", text))

            async def run() -> None:
                try:
                    result = await service.send_message(
                        session_id,
                        request.prompt,
                        model=request.model,
                        retry=request.retry,
                        user_id=request.user_id,
                        on_content=on_content,
                    )
                    await queue.put(("done", result.model_dump_json()))
                except Exception as e:
                    logger.error(f"Chat stream failed for {session_id}: {e}")
                    await queue.put(("error", json.dumps({"error": str(e)})))

            task = asyncio.create_task(run())
            try:
                while True:
                    kind, payload = await queue.get()
                    if kind == "content":
                        yield f"data: {json.dumps({'text': payload})}\n\n"
                        continue
                    yield f"event: {kind}\ndata: {payload}\n\n"
                    break
            finally:
                if not task.done():
                    task.cancel()

        return StreamingResponse(
            events(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Session-Id": session_id},
        )

    @app.get("/api/sessions")
    def sessions_list():
        """Summaries of all stored vibes, newest first."""
        return [vibe.model_dump() for vibe in list_vibes(router.require_store())]

    @app.get("/api/sessions/{session_id}")
    def session_get(session_id: str):
        """A session's vibe document and messages."""
        session = router.existing_session(session_id)
        return {
            "vibe": session.vibe_doc().to_doc(),
            "messages": [message.to_doc() for message in session.messages()],
        }

    @app.delete("/api/sessions/{session_id}")
    def session_delete(session_id: str):
        router.session(session_id)
        deleted = delete_vibe(router.require_store(), session_id)
        return {"deleted": deleted}

    @app.post("/api/sessions/{session_id}/favorite")
    def session_favorite(session_id: str):
        router.existing_session(session_id)
        vibe = toggle_vibe_favorite(router.require_store(), session_id)
        return vibe.to_doc()

    @app.post("/api/sessions/{session_id}/publish")
    async def session_publish(session_id: str, request: PublishRequest | None = None):
        """Publish the given code, or the latest generated code in the session."""
        session = await asyncio.to_thread(router.existing_session, session_id)
        code = request.code if request else None
        if not code:
            messages = await asyncio.to_thread(session.messages)
            ai_texts = [m.text for m in messages if m.type == "ai"]
            code = extract_code(ai_texts[-1]) if ai_texts else ""
        if not code:
            raise HTTPException(status_code=400, detail="No code to publish")

        url = await publish_app(
            session_id,
            code,
            api_base_url=router.api_base_url,
            client=router._client(),
            update_published_url=partial(asyncio.to_thread, session.update_published_url),
        )
        if not url:
            raise HTTPException(status_code=502, detail="Failed to publish app")
        return {"published_url": url}

    @app.post("/api/sessions/{session_id}/screenshot")
    async def screenshot_upload(session_id: str, request: Request):
        """Store the request body as the session's newest screenshot."""
        session = await asyncio.to_thread(router.existing_session, session_id)
        data = await request.body()
        if not data:
            raise HTTPException(status_code=400, detail="Screenshot body is empty")
        content_type = request.headers.get("content-type") or "image/png"
        screenshot = await asyncio.to_thread(session.add_screenshot, data, content_type)
        return screenshot.to_doc()

    @app.get("/api/sessions/{session_id}/screenshot")
    def screenshot_get(session_id: str):
        session = router.existing_session(session_id)
        found = session.latest_screenshot_file()
        if found is None:
            raise HTTPException(status_code=404, detail="No screenshot")
        data, content_type = found
        return Response(content=data, media_type=content_type)

    @app.get("/api/settings")
    def settings_get():
        return load_settings(router.require_store()).to_doc()

    @app.put("/api/settings")
    def settings_put(settings: UserSettings):
        return save_settings(router.require_store(), settings).to_doc()

    return app
