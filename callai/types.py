"""Shared types for the call-ai client."""

from collections.abc import Awaitable, Callable
from typing import Any, Literal

from pydantic import BaseModel, Field


class CallAIError(Exception):
    """Raised when a call-ai request or key operation fails."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        original_error: BaseException | None = None,
        refresh_error: BaseException | None = None,
        error_type: str | None = None,
        content_type: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.original_error = original_error
        self.refresh_error = refresh_error
        self.error_type = error_type
        self.content_type = content_type


class Message(BaseModel):
    """A single chat-completion message."""

    role: Literal["system", "user", "assistant"]
    content: str


class KeyMetadata(BaseModel):
    """Metadata returned alongside a provisioned key."""

    key: str | None = None
    hash: str | None = None
    created: Any = None
    expires: Any = None
    remaining: float | None = None
    limit: float | None = None


class RefreshResult(BaseModel):
    """Outcome of a key refresh."""

    api_key: str
    topup: bool = False


class Credits(BaseModel):
    """Credit balance for an OpenRouter key, in dollars."""

    available: float
    usage: float
    limit: float


class CallAIOptions(BaseModel):
    """Options accepted by call_ai and stream_ai."""

    api_key: str | None = None
    model: str | None = None
    chat_url: str | None = None
    schema_: dict[str, Any] | None = Field(default=None, alias="schema")
    max_tokens: int | None = None
    temperature: float | None = None
    stream: bool = False
    transforms: list[str] | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    skip_refresh: bool = False
    refresh_token: str | None = None
    update_refresh_token: Callable[[str], Awaitable[str]] | None = None
    debug: bool | None = None

    model_config = {"populate_by_name": True}
