"""Encode app state into shareable URL fragments."""

import base64
import binascii
import json
import logging
from urllib.parse import quote, unquote

logger = logging.getLogger(__name__)


def encode_state_to_url(code: str, dependencies: dict[str, str] | None = None) -> str:
    """
    Encode code and dependencies as base64 of URI-encoded JSON.

    Returns:
        The encoded state, or an empty string if encoding fails.
    """
    try:
        payload = json.dumps(
            {"code": code, "dependencies": dependencies or {}}, separators=(",", ":")
        )
        return base64.b64encode(quote(payload, safe="").encode("ascii")).decode("ascii")
    except (TypeError, ValueError) as e:
        logger.warning(f"Error encoding state: {e}")
        return ""


def decode_state_from_url(encoded: str) -> dict:
    """
    Decode state produced by encode_state_to_url.

    Returns:
        Dict with ``code`` and ``dependencies``; empty values if decoding fails.
    """
    try:
        state = json.loads(unquote(base64.b64decode(encoded, validate=True).decode("ascii")))
        return {
            "code": state.get("code") or "",
            "dependencies": state.get("dependencies") or {},
        }
    except (binascii.Error, UnicodeDecodeError, ValueError, AttributeError) as e:
        logger.warning(f"Error decoding state: {e}")
        return {"code": "", "dependencies": {}}
