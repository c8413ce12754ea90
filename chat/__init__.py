"""Chat sessions, response parsing and orchestration."""

from chat.exports import normalize_component_exports, transform_imports
from chat.models import (
    AiChatMessageDocument,
    ChatMessageDocument,
    LocalVibe,
    ScreenshotDocument,
    Segment,
    SystemChatMessageDocument,
    UserChatMessageDocument,
    UserSettings,
    VibeDocument,
)
from chat.publish import publish_app
from chat.segments import extract_code, parse_content, parse_dependencies
from chat.service import ChatService, SendResult, build_message_history
from chat.sessions import (
    VibeSession,
    delete_vibe,
    encode_title,
    generate_session_id,
    get_session_database_name,
    list_vibes,
    load_settings,
    save_settings,
    toggle_vibe_favorite,
)
from chat.stream_parser import StreamParser
from chat.titles import generate_title

__all__ = [
    "ChatService",
    "SendResult",
    "build_message_history",
    "VibeSession",
    "generate_session_id",
    "get_session_database_name",
    "encode_title",
    "list_vibes",
    "delete_vibe",
    "toggle_vibe_favorite",
    "load_settings",
    "save_settings",
    "parse_content",
    "parse_dependencies",
    "extract_code",
    "StreamParser",
    "normalize_component_exports",
    "transform_imports",
    "publish_app",
    "generate_title",
    "Segment",
    "ChatMessageDocument",
    "UserChatMessageDocument",
    "AiChatMessageDocument",
    "SystemChatMessageDocument",
    "VibeDocument",
    "ScreenshotDocument",
    "UserSettings",
    "LocalVibe",
]
