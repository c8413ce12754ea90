"""Publish generated apps to the hosting API."""

import inspect
import logging
import os
from collections.abc import Callable
from urllib.parse import urlparse

import httpx

from chat.exports import normalize_component_exports, transform_imports

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://vibesdiy.app"
PUBLISH_TIMEOUT = 30.0


def prepare_code(code: str) -> str:
    """Normalize line endings and exports, and point extra imports at the CDN."""
    code = code.replace("\r\n", "\n").strip()
    return transform_imports(normalize_component_exports(code))


def app_url(api_base_url: str, slug: str) -> str:
    """Subdomain URL of a published app."""
    parsed = urlparse(api_base_url)
    scheme = parsed.scheme or "https"
    return f"{scheme}://{slug}.{parsed.netloc}/"


async def publish_app(
    session_id: str | None,
    code: str | None,
    *,
    api_base_url: str | None = None,
    client: httpx.AsyncClient | None = None,
    update_published_url: Callable[[str], object] | None = None,
) -> str | None:
    """
    Publish an app and return its public URL.

    Args:
        session_id: Chat session the app belongs to.
        code: Component source.
        api_base_url: Hosting API base. Defaults to VIBES_API_BASE_URL env var.
        client: HTTP client to reuse.
        update_published_url: Called with the URL after a successful publish, may be async.

    Returns:
        The app URL, or None if inputs are missing or publishing fails.
    """
    if not code or not session_id:
        logger.warning("Publish skipped: code or session ID missing")
        return None

    base = (api_base_url or os.environ.get("VIBES_API_BASE_URL") or DEFAULT_API_BASE_URL).rstrip(
        "/"
    )
    payload = {"chatId": session_id, "code": prepare_code(code)}

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=PUBLISH_TIMEOUT)

    try:
        response = await client.post(f"{base}/api/apps", json=payload)
        if response.status_code >= 400:
            logger.error(f"Publish failed: {response.status_code} {response.text}")
            return None

        data = response.json()
        slug = (data.get("app") or {}).get("slug") if data.get("success") else None
        if not slug:
            logger.error(f"Publish response missing app slug: {data}")
            return None

        url = app_url(base, slug)
        if update_published_url is not None:
            outcome = update_published_url(url)
            if inspect.isawaitable(outcome):
                await outcome
        logger.info(f"Published {session_id} to {url}")
        return url
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"Error publishing app: {e}")
        return None
    finally:
        if owns_client:
            await client.aclose()
