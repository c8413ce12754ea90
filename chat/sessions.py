"""Session databases: chat messages, vibe metadata and screenshots."""

import logging
import random
import time
from datetime import datetime, timezone
from urllib.parse import quote

from chat.models import (
    MESSAGE_TYPES,
    ChatMessageDocument,
    LocalVibe,
    ScreenshotDocument,
    UserSettings,
    VibeDocument,
    chat_message_adapter,
)
from common.store import SessionStore
from security.utils import validate_session_id

logger = logging.getLogger(__name__)

SESSION_DB_PREFIX = "vibe-"
SETTINGS_DATABASE = "vibes-chats"
VIBE_DOC_ID = "vibe"
SETTINGS_DOC_ID = "user_settings"
SCREENSHOT_FILE = "screenshot.png"

DEFAULT_VIBE_TITLE = "Unnamed Vibe"
DEFAULT_CREATED = "2025-02-02T15:17:00Z"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    digits = ""
    while value:
        value, remainder = divmod(value, 36)
        digits = _BASE36[remainder] + digits
    return digits or "0"


def generate_session_id() -> str:
    """Time-ordered id: base36 milliseconds padded with ``f``, then 9 random base36 chars."""
    timestamp = _to_base36(int(time.time() * 1000)).rjust(9, "f")
    suffix = "".join(random.choice(_BASE36) for _ in range(9))
    return timestamp + suffix


def get_session_database_name(session_id: str) -> str:
    """
    Name of the database holding a session.

    Raises:
        ValueError: If session_id is empty.
    """
    if not session_id:
        raise ValueError("Session ID is required")
    return f"{SESSION_DB_PREFIX}{validate_session_id(session_id)}"


def encode_title(title: str) -> str:
    """URL-safe form of a title, with spaces as hyphens."""
    encoded = quote(title or "untitled-chat", safe="-_.!~*'()")
    return encoded.lower().replace("%20", "-")


def _iso_from_ms(ms: int | None) -> str:
    if not ms:
        return DEFAULT_CREATED
    created = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return created.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class VibeSession:
    """Read and write one session's database."""

    def __init__(self, store: SessionStore, session_id: str):
        self.store = store
        self.session_id = session_id
        self.database = get_session_database_name(session_id)

    def vibe_doc(self) -> VibeDocument:
        """The session's vibe document, or a fresh one if none is stored."""
        doc = self.store.get(self.database, VIBE_DOC_ID)
        return VibeDocument.model_validate(doc) if doc else VibeDocument()

    def exists(self) -> bool:
        return self.store.get(self.database, VIBE_DOC_ID) is not None

    def update_vibe(self, **fields) -> VibeDocument:
        """Merge fields into the vibe document and save it."""
        vibe = self.vibe_doc().model_copy(update=fields)
        self.store.put(self.database, vibe.to_doc())
        return vibe

    def update_title(self, title: str) -> VibeDocument:
        return self.update_vibe(title=title, encoded_title=encode_title(title))

    def update_published_url(self, url: str) -> VibeDocument:
        return self.update_vibe(published_url=url)

    def messages(self) -> list[ChatMessageDocument]:
        """Chat messages in creation order."""
        docs = [
            doc for doc in self.store.all_docs(self.database) if doc.get("type") in MESSAGE_TYPES
        ]
        messages = [chat_message_adapter.validate_python(doc) for doc in docs]
        return sorted(messages, key=lambda m: m.created_at)

    def put_message(self, message: ChatMessageDocument) -> str:
        doc_id = self.store.put(self.database, message.to_doc())
        message.id = doc_id
        return doc_id

    def add_screenshot(self, data: bytes, content_type: str = "image/png") -> ScreenshotDocument:
        """Store a screenshot as a document with one attached file."""
        screenshot = ScreenshotDocument(session_id=self.session_id, files=[SCREENSHOT_FILE])
        screenshot.id = self.store.put(self.database, screenshot.to_doc())
        self.store.put_file(self.database, screenshot.id, SCREENSHOT_FILE, data, content_type)
        return screenshot

    def latest_screenshot(self) -> ScreenshotDocument | None:
        docs = self.store.query(self.database, "type", "screenshot")
        if not docs:
            return None
        screenshots = [ScreenshotDocument.model_validate(doc) for doc in docs]
        return max(screenshots, key=lambda s: s.created_at)

    def latest_screenshot_file(self) -> tuple[bytes, str] | None:
        """Data and content type of the newest screenshot, if any."""
        screenshot = self.latest_screenshot()
        if screenshot is None or not screenshot.files:
            return None
        return self.store.get_file(self.database, screenshot.id, screenshot.files[0])


def list_vibes(store: SessionStore) -> list[LocalVibe]:
    """
    Summarize every stored vibe, newest first.

    Databases without a vibe document are skipped.

    Args:
        store: The session store.

    Returns:
        List of LocalVibe summaries.
    """
    vibes = []
    for database in store.list_databases(SESSION_DB_PREFIX):
        session_id = database[len(SESSION_DB_PREFIX) :]
        doc = store.get(database, VIBE_DOC_ID)
        if not doc:
            continue
        vibe = VibeDocument.model_validate(doc)
        has_screenshot = bool(store.list_files(database, SCREENSHOT_FILE))
        vibes.append(
            LocalVibe(
                id=session_id,
                title=vibe.title or DEFAULT_VIBE_TITLE,
                slug=vibe.remix_of or session_id,
                created=_iso_from_ms(vibe.created_at),
                favorite=vibe.favorite,
                published_url=vibe.published_url,
                screenshot=f"/api/sessions/{session_id}/screenshot" if has_screenshot else None,
            )
        )
    return sorted(vibes, key=lambda v: v.created, reverse=True)


def delete_vibe(store: SessionStore, session_id: str) -> int:
    """Delete a vibe's whole database, returning the number of objects removed."""
    return store.delete_database(get_session_database_name(session_id))


def toggle_vibe_favorite(store: SessionStore, session_id: str) -> VibeDocument:
    """Flip the favorite flag on a vibe."""
    session = VibeSession(store, session_id)
    vibe = session.vibe_doc()
    return session.update_vibe(favorite=not vibe.favorite)


def load_settings(store: SessionStore) -> UserSettings:
    doc = store.get(SETTINGS_DATABASE, SETTINGS_DOC_ID)
    return UserSettings.model_validate(doc) if doc else UserSettings()


def save_settings(store: SessionStore, settings: UserSettings) -> UserSettings:
    store.put(SETTINGS_DATABASE, settings.to_doc())
    return settings
