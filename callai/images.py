"""Image generation client for the image proxy."""

import logging
from typing import Any

import httpx

from callai.env import call_ai_env
from callai.keys import key_store
from callai.types import CallAIError

logger = logging.getLogger(__name__)

GENERATE_PATH = "/api/openai-image/generate"
EDIT_PATH = "/api/openai-image/edit"
DEFAULT_IMAGE_MODEL = "gpt-image-1"
IMAGE_TIMEOUT = 120.0


async def image_gen(
    prompt: str,
    *,
    images: list[tuple[str, bytes, str]] | None = None,
    api_key: str | None = None,
    img_url: str | None = None,
    model: str = DEFAULT_IMAGE_MODEL,
    size: str = "auto",
    quality: str = "auto",
    client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """
    Generate an image, or edit uploaded images, from a prompt.

    Args:
        prompt: Description of the image to produce.
        images: Optional (filename, content, content_type) tuples. When given
            the edit endpoint is used.
        api_key: Bearer token for the proxy. Defaults to the stored key.
        img_url: Base URL of the image proxy. Defaults to CALLAI_IMG_URL.
        model: Image model name.
        size: Requested image size.
        quality: Requested image quality.
        client: Optional HTTP client to send the request with.

    Returns:
        The provider payload, e.g. ``{"created": ..., "data": [{"b64_json": ...}]}``.

    Raises:
        CallAIError: If the request fails.
    """
    base = (img_url or call_ai_env.img_url).rstrip("/")
    token = api_key or key_store.current or "VIBES_DIY"
    headers = {"Authorization": f"Bearer {token}"}

    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=httpx.Timeout(IMAGE_TIMEOUT))
    try:
        if images:
            logger.info(f"Editing {len(images)} image(s) with {model}")
            response = await http.post(
                f"{base}{EDIT_PATH}",
                data={"prompt": prompt, "model": model, "size": size, "quality": quality},
                files=[("image[]", image) for image in images],
                headers=headers,
            )
        else:
            logger.info(f"Generating image with {model}")
            response = await http.post(
                f"{base}{GENERATE_PATH}",
                json={"prompt": prompt, "model": model, "size": size, "quality": quality},
                headers=headers,
            )
    except httpx.HTTPError as e:
        raise CallAIError(f"Image request failed: {e}", original_error=e) from e
    finally:
        if owns_client:
            await http.aclose()

    if not response.is_success:
        raise CallAIError(
            f"Image request failed: {response.status_code} {response.text}",
            status=response.status_code,
        )
    return response.json()
