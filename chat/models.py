"""Documents stored in a session database."""

import time
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter


def now_ms() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


class Segment(BaseModel):
    """A run of markdown or code inside an AI response."""

    type: Literal["markdown", "code"]
    content: str


class Document(BaseModel):
    """Base for stored documents; the id is serialized as ``_id``."""

    id: str | None = Field(default=None, alias="_id")

    model_config = {"populate_by_name": True}

    def to_doc(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class _ChatMessageBase(Document):
    session_id: str
    text: str = ""
    created_at: int = Field(default_factory=now_ms)


class UserChatMessageDocument(_ChatMessageBase):
    type: Literal["user"] = "user"


class AiChatMessageDocument(_ChatMessageBase):
    type: Literal["ai"] = "ai"
    model: str | None = None


class SystemChatMessageDocument(_ChatMessageBase):
    type: Literal["system"] = "system"
    error_type: str | None = None
    error_category: str | None = None


ChatMessageDocument = Annotated[
    UserChatMessageDocument | AiChatMessageDocument | SystemChatMessageDocument,
    Field(discriminator="type"),
]

chat_message_adapter: TypeAdapter[ChatMessageDocument] = TypeAdapter(ChatMessageDocument)

MESSAGE_TYPES = frozenset(["user", "ai", "system"])


class VibeDocument(Document):
    """Per-session metadata kept under the fixed id ``vibe``."""

    id: str | None = Field(default="vibe", alias="_id")
    title: str = ""
    encoded_title: str = ""
    created_at: int = Field(default_factory=now_ms)
    remix_of: str = ""
    published_url: str | None = None
    favorite: bool = False
    selected_model: str | None = None
    dependencies: list[str] | None = None
    dependencies_user_override: bool = False
    ai_selected_dependencies: list[str] | None = None
    instructional_text_override: bool | None = None
    demo_data_override: bool | None = None


class ScreenshotDocument(Document):
    type: Literal["screenshot"] = "screenshot"
    session_id: str
    created_at: int = Field(default_factory=now_ms)
    files: list[str] = Field(default_factory=list, alias="_files")


class UserSettings(Document):
    """Global preferences kept in the settings database."""

    id: str | None = Field(default="user_settings", alias="_id")
    style_prompt: str = ""
    user_prompt: str = ""
    model: str | None = None


class LocalVibe(BaseModel):
    """Summary of a stored vibe for listings."""

    id: str
    title: str
    slug: str
    created: str
    favorite: bool = False
    published_url: str | None = None
    screenshot: str | None = None
