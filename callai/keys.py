"""API key storage, refresh and credit lookup for call-ai."""

import asyncio
import logging
import time
from typing import Any

import httpx

from callai.env import CallAIEnv, call_ai_env
from callai.types import CallAIError, Credits, KeyMetadata, RefreshResult

logger = logging.getLogger(__name__)

KEYS_API_PATH = "/api/keys"
CLIENT_KEY_NAME = "call-ai-client"
OPENROUTER_AUTH_KEY_URL = "https://openrouter.ai/api/v1/auth/key"

# Minimum seconds between two refresh attempts
MIN_REFRESH_INTERVAL = 2.0
REFRESH_POLL_INTERVAL = 0.1

# Status assumed when an error carries none, so message checks still apply
DEFAULT_ERROR_STATUS = 450

AUTH_TERMS = ("unauthorized", "forbidden", "authentication", "api key", "apikey", "auth")
INVALID_KEY_TERMS = (
    "invalid api key",
    "invalid key",
    "incorrect api key",
    "incorrect key",
    "authentication failed",
    "not authorized",
)
RATE_LIMIT_TERMS = ("rate limit", "too many requests", "quota", "exceed")
BILLING_TERMS = ("billing", "payment", "subscription", "account")


class KeyStore:
    """In-memory record of the active key and refresh state."""

    def __init__(
        self,
        current: str | None = None,
        refresh_endpoint: str = "https://vibecode.garden",
        refresh_token: str | None = "use-vibes",
    ):
        self.current = current
        self.refresh_endpoint = refresh_endpoint
        self.refresh_token = refresh_token
        self.is_refreshing = False
        self.last_refresh_attempt = 0.0
        self.metadata: dict[str, KeyMetadata] = {}
        self.debug = False

    def load(self, env: CallAIEnv) -> None:
        """Reset the store from environment settings."""
        self.current = env.api_key
        self.refresh_endpoint = env.refresh_endpoint
        self.refresh_token = env.refresh_token
        self.debug = env.debug


key_store = KeyStore()


def init_key_store(env: CallAIEnv | None = None) -> KeyStore:
    """Initialize the module key store from the environment."""
    key_store.load(env or call_ai_env)
    return key_store


init_key_store()


def error_status(error: Any) -> int | None:
    """Pull an HTTP status off an exception or error-like object."""
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
    return None


def is_new_key_error(error: Any, debug: bool = False) -> bool:
    """
    Decide whether an error means the current key should be replaced.

    An error without a status is treated as a client error, so the decision
    rests on its message.

    Args:
        error: The exception or error value to inspect.
        debug: Log the decision when True.

    Returns:
        True for 4xx errors that mention auth, invalid keys, rate limits or billing.
    """
    status = error_status(error) or DEFAULT_ERROR_STATUS
    message = str(error or "").lower()

    is_4xx = 400 <= status < 500

    is_auth_error = status in (401, 403) or any(term in message for term in AUTH_TERMS)
    is_invalid_key_error = any(term in message for term in INVALID_KEY_TERMS)
    is_openai_key_error = "openai" in message and (
        "api key" in message or "authentication" in message
    )
    is_rate_limit_error = status == 429 or any(term in message for term in RATE_LIMIT_TERMS)
    is_billing_error = any(term in message for term in BILLING_TERMS)

    needs_new_key = is_4xx and (
        is_auth_error
        or is_invalid_key_error
        or is_openai_key_error
        or is_rate_limit_error
        or is_billing_error
    )

    if debug and needs_new_key:
        logger.debug(f"Detected error requiring key refresh: {message}")

    return needs_new_key


def get_hash_from_key(key: str | None, store: KeyStore | None = None) -> str | None:
    """Return the stored hash for a key, if its metadata is known."""
    if not key:
        return None
    store = store or key_store
    metadata = store.metadata.get(key)
    return metadata.hash if metadata else None


def store_key_metadata(data: dict[str, Any] | KeyMetadata, store: KeyStore | None = None) -> None:
    """Remember metadata for a key, indexed by the key string."""
    store = store or key_store
    metadata = data if isinstance(data, KeyMetadata) else KeyMetadata.model_validate(data)
    if not metadata.key:
        return
    if metadata.created is None:
        metadata.created = time.time()
    store.metadata[metadata.key] = metadata


def _extract_key(data: dict[str, Any]) -> str:
    """Read the new key from either refresh response format."""
    key = data.get("key")
    if isinstance(key, dict) and key.get("key"):
        return key["key"]
    if isinstance(key, str) and key:
        return key
    raise CallAIError("Invalid response from key refresh endpoint: missing or malformed key")


async def refresh_api_key(
    current_key: str | None,
    endpoint: str | None,
    refresh_token: str | None,
    *,
    debug: bool | None = None,
    client: httpx.AsyncClient | None = None,
    store: KeyStore | None = None,
) -> RefreshResult:
    """
    Obtain a fresh API key from the key service.

    Only one refresh runs at a time; concurrent callers wait for it and reuse
    its key. Attempts are spaced at least MIN_REFRESH_INTERVAL seconds apart.

    Args:
        current_key: The key being replaced, or None for a first key.
        endpoint: Base URL of the key service.
        refresh_token: Bearer token for the key service.
        debug: Log request and response details. Defaults to the store setting.
        client: Optional HTTP client to send the request with.
        store: Key store to update. Defaults to the module store.

    Returns:
        RefreshResult with the new key and whether it was a top-up of the old one.

    Raises:
        CallAIError: If configuration is missing or the service rejects the request.
    """
    store = store or key_store
    debug = store.debug if debug is None else debug

    if not endpoint:
        raise CallAIError("No API key refresh endpoint specified")
    if not refresh_token:
        raise CallAIError("No API key refresh token specified")

    if store.is_refreshing:
        logger.debug("API key refresh already in progress, waiting")
        while store.is_refreshing:
            await asyncio.sleep(REFRESH_POLL_INTERVAL)
        if not store.current:
            raise CallAIError("Concurrent API key refresh did not produce a key")
        return RefreshResult(api_key=store.current, topup=False)

    elapsed = time.time() - store.last_refresh_attempt
    if elapsed < MIN_REFRESH_INTERVAL:
        if debug:
            logger.debug(f"Rate limiting key refresh, last attempt was {elapsed:.2f}s ago")
        await asyncio.sleep(MIN_REFRESH_INTERVAL - elapsed)

    store.is_refreshing = True
    store.last_refresh_attempt = time.time()

    url = f"{endpoint.rstrip('/')}{KEYS_API_PATH}"
    payload = {
        "key": current_key,
        "hash": get_hash_from_key(current_key, store),
        "name": CLIENT_KEY_NAME,
    }
    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {refresh_token}",
    }

    if debug:
        logger.debug(f"Refreshing API key from {url}")

    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=httpx.Timeout(30.0))
    try:
        try:
            response = await http.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise CallAIError(f"API key refresh request failed: {e}", original_error=e) from e

        if debug:
            logger.debug(f"Key refresh response status: {response.status_code}")

        if not response.is_success:
            error_text = response.text
            detail = f" - {error_text}" if error_text else ""
            raise CallAIError(
                f"API key refresh failed: {response.status_code} "
                f"{response.reason_phrase}{detail}",
                status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise CallAIError(
                f"Invalid JSON from key refresh endpoint: {e}", original_error=e
            ) from e
        if not isinstance(data, dict):
            raise CallAIError("Invalid response from key refresh endpoint: expected an object")
        new_key = _extract_key(data)

        nested = data["key"] if isinstance(data.get("key"), dict) else {}
        metadata = data.get("metadata") or nested.get("metadata")
        if metadata:
            store_key_metadata(metadata, store)

        store.current = new_key

        hash_value = data.get("hash") or nested.get("hash")
        topup = bool(
            current_key and hash_value and hash_value == get_hash_from_key(current_key, store)
        )

        logger.info(f"API key {'topped up' if topup else 'refreshed'}: {new_key[:10]}...")
        return RefreshResult(api_key=new_key, topup=topup)
    finally:
        store.is_refreshing = False
        if owns_client:
            await http.aclose()


async def get_credits(api_key: str, client: httpx.AsyncClient | None = None) -> Credits:
    """
    Fetch the credit balance of an OpenRouter key.

    Args:
        api_key: The key to inspect.
        client: Optional HTTP client to send the request with.

    Returns:
        Credits with the available balance, usage and limit.

    Raises:
        CallAIError: If the lookup fails.
    """
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=httpx.Timeout(30.0))
    try:
        response = await http.get(
            OPENROUTER_AUTH_KEY_URL, headers={"Authorization": f"Bearer {api_key}"}
        )
    except httpx.HTTPError as e:
        raise CallAIError(f"Failed to fetch key credits: {e}", original_error=e) from e
    finally:
        if owns_client:
            await http.aclose()

    if not response.is_success:
        raise CallAIError(
            f"Failed to fetch key credits: {response.status_code}",
            status=response.status_code,
        )

    try:
        body = response.json()
    except ValueError as e:
        raise CallAIError(f"Invalid credits response: {e}", original_error=e) from e
    data = (body.get("data") or body) if isinstance(body, dict) else None
    if not isinstance(data, dict):
        raise CallAIError("Invalid credits response: expected an object")
    limit = data.get("limit") or 0
    usage = data.get("usage") or 0

    credits = Credits(available=max(limit - usage, 0), usage=usage, limit=limit)
    if credits.limit > 0 and credits.available < 0.2:
        logger.warning(f"Low credits on key: ${credits.available:.2f} remaining")
    return credits
