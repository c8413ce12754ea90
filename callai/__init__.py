"""LLM gateway client with key refresh and error recovery."""

from callai.client import DEFAULT_MODEL, FALLBACK_MODEL, InvalidModelError, call_ai, stream_ai
from callai.env import CallAIEnv, call_ai_env
from callai.errors import check_for_invalid_model_error, handle_api_error
from callai.images import image_gen
from callai.keys import (
    KeyStore,
    get_credits,
    get_hash_from_key,
    init_key_store,
    is_new_key_error,
    key_store,
    refresh_api_key,
    store_key_metadata,
)
from callai.schema import recursively_add_additional_properties
from callai.types import CallAIError, CallAIOptions, Credits, KeyMetadata, Message, RefreshResult

__all__ = [
    "call_ai",
    "stream_ai",
    "image_gen",
    "DEFAULT_MODEL",
    "FALLBACK_MODEL",
    "InvalidModelError",
    "CallAIEnv",
    "call_ai_env",
    "handle_api_error",
    "check_for_invalid_model_error",
    "KeyStore",
    "key_store",
    "init_key_store",
    "is_new_key_error",
    "refresh_api_key",
    "get_hash_from_key",
    "store_key_metadata",
    "get_credits",
    "recursively_add_additional_properties",
    "CallAIError",
    "CallAIOptions",
    "Credits",
    "KeyMetadata",
    "Message",
    "RefreshResult",
]
