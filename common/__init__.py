"""Shared storage and URL-state helpers."""

from common.sharing import decode_state_from_url, encode_state_to_url
from common.store import SessionStore, SessionStoreError

__all__ = ["SessionStore", "SessionStoreError", "encode_state_to_url", "decode_state_from_url"]
