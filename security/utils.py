"""Validation of identifiers that end up in storage keys and hostnames."""

import re


class SecurityError(Exception):
    """Raised when a security violation is detected."""

    pass


# Patterns that indicate potentially dangerous names
DANGEROUS_PATTERNS = [
    r"\.\.",  # Parent directory traversal
    r"/",  # Key separators
    r"\\",  # Windows separators
    r"^~",  # Home directory expansion
    r"^\.",  # Hidden or relative names
]

# Characters that should not appear in names
FORBIDDEN_CHARS = frozenset("\x00\n\r\t")

MAX_NAME_LENGTH = 128

_SESSION_ID = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
_SLUG = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


def is_safe_name(value: str) -> bool:
    """
    Checks if a name is safe to use as a single storage key segment.

    A safe name:
    - Is not empty and not longer than MAX_NAME_LENGTH
    - Does not contain path separators or traversal sequences
    - Does not contain null bytes, tabs or newlines
    - Does not start with a dot or tilde

    Args:
        value: The name to check.

    Returns:
        True if the name is safe, False otherwise.
    """
    if not value or len(value) > MAX_NAME_LENGTH:
        return False

    if any(char in value for char in FORBIDDEN_CHARS):
        return False

    for pattern in DANGEROUS_PATTERNS:
        if re.search(pattern, value):
            return False

    return True


def validate_session_id(session_id: str) -> str:
    """
    Validates a chat session id.

    Args:
        session_id: The id to validate.

    Returns:
        The session id unchanged.

    Raises:
        SecurityError: If the id is empty or not a lowercase alphanumeric name.
    """
    if not session_id:
        raise SecurityError("Session ID cannot be empty")

    if not is_safe_name(session_id) or not _SESSION_ID.fullmatch(session_id):
        raise SecurityError(f"Invalid session ID: '{session_id}'")

    return session_id


def validate_slug(slug: str) -> str:
    """
    Validates a published app slug, which becomes a DNS label.

    Raises:
        SecurityError: If the slug is not a valid lowercase hostname label.
    """
    if not slug:
        raise SecurityError("Slug cannot be empty")

    if not _SLUG.fullmatch(slug):
        raise SecurityError(f"Invalid slug: '{slug}'")

    return slug


def validate_document_id(document_id: str) -> str:
    """Validates a document id, raising SecurityError if unsafe."""
    if not is_safe_name(document_id):
        raise SecurityError(f"Invalid document ID: '{document_id}'")
    return document_id
