"""Error classification and recovery for call-ai requests."""

import json
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from callai.keys import KeyStore, error_status, is_new_key_error, key_store, refresh_api_key
from callai.types import CallAIError

logger = logging.getLogger(__name__)

MISSING_KEY_MESSAGE = "API key is required"
INVALID_MODEL_TERMS = ("model", "engine", "not found", "invalid", "unavailable")

_STATUS_IN_MESSAGE = re.compile(r"status: (\d+)", re.IGNORECASE)


def _status_from(error: BaseException, message: str) -> int | None:
    status = error_status(error)
    if status:
        return status
    match = _STATUS_IN_MESSAGE.search(message)
    return int(match.group(1)) if match else None


async def handle_api_error(
    error: BaseException,
    context: str,
    *,
    debug: bool | None = None,
    api_key: str | None = None,
    endpoint: str | None = None,
    skip_refresh: bool = False,
    refresh_token: str | None = None,
    update_refresh_token: Callable[[str], Awaitable[str]] | None = None,
    store: KeyStore | None = None,
    client: httpx.AsyncClient | None = None,
) -> None:
    """
    Try to recover from a failed request, or raise a descriptive error.

    Key-related errors trigger one key refresh. When that fails and an
    update_refresh_token callback is supplied, a new refresh token is fetched
    and the refresh is tried once more. Returning normally means a fresh key
    is in the store and the caller may retry.

    Args:
        error: The error raised by the request.
        context: Short description of the failed operation.
        debug: Log details of the decision.
        api_key: Key that failed. Defaults to the store's current key.
        endpoint: Key service URL. Defaults to the store's endpoint.
        skip_refresh: Re-raise the error unchanged when True.
        refresh_token: Key service token. Defaults to the store's token.
        update_refresh_token: Coroutine returning a replacement refresh token.
        store: Key store to use. Defaults to the module store.
        client: Optional HTTP client for the refresh request.

    Raises:
        CallAIError: If the error is not recoverable.
    """
    store = store or key_store
    debug = store.debug if debug is None else debug

    message = getattr(error, "message", None) or str(error)
    status = _status_from(error, message)
    is_missing_key = MISSING_KEY_MESSAGE in message

    if debug:
        logger.debug(
            f"{context} error: {message} (status={status}, missing_key={is_missing_key})"
        )

    if skip_refresh:
        raise error

    if is_new_key_error(error, debug) or is_missing_key:
        current_key = api_key or store.current
        refresh_endpoint = endpoint or store.refresh_endpoint
        token = refresh_token or store.refresh_token

        try:
            try:
                result = await refresh_api_key(
                    current_key, refresh_endpoint, token, debug=debug, client=client, store=store
                )
            except Exception as initial_error:
                if not (update_refresh_token and token):
                    raise
                try:
                    new_token = await update_refresh_token(token)
                except Exception as token_error:
                    logger.warning(f"Failed to update refresh token: {token_error}")
                    raise initial_error from token_error
                if not new_token or new_token == token:
                    raise
                store.refresh_token = new_token
                result = await refresh_api_key(
                    current_key,
                    refresh_endpoint,
                    new_token,
                    debug=debug,
                    client=client,
                    store=store,
                )
        except Exception as refresh_error:
            logger.warning(f"API key refresh failed: {refresh_error}")
            raise CallAIError(
                f"{message} (Key refresh failed: {refresh_error})",
                status=status or 401,
                original_error=error,
                refresh_error=refresh_error,
                content_type="text/plain",
            ) from error

        if store.current != result.api_key:
            store.current = result.api_key
        logger.info(f"{'Topped up' if result.topup else 'Refreshed'} API key after {context} error")
        return

    raise CallAIError(
        f"{context}: {message}",
        status=status or 500,
        original_error=error,
        error_type=type(error).__name__,
    ) from error


def check_for_invalid_model_error(
    response: httpx.Response, model: str, debug: bool = False
) -> tuple[bool, Any]:
    """
    Decide whether a failed response means the requested model is unusable.

    Args:
        response: The provider response, with its body already read.
        model: The model that was requested.
        debug: Log the decision when True.

    Returns:
        Tuple of (is_invalid_model, error_data). error_data is None for
        responses that are not client errors.
    """
    if response.status_code < 400 or response.status_code >= 500:
        return False, None

    try:
        error_data = response.json()
    except (json.JSONDecodeError, ValueError):
        text = response.text
        error_data = {"error": text or f"Error {response.status_code}: {response.reason_phrase}"}

    is_invalid = response.status_code in (400, 404)

    if not is_invalid and isinstance(error_data, dict):
        error = error_data.get("error")
        text = None
        if isinstance(error, str):
            text = error
        elif isinstance(error, dict) and isinstance(error.get("message"), str):
            text = error["message"]
        if text:
            lowered = text.lower()
            is_invalid = any(term in lowered for term in INVALID_MODEL_TERMS)

    if debug and is_invalid:
        logger.debug(f"Detected invalid model error for {model!r}: {error_data}")

    return is_invalid, error_data
