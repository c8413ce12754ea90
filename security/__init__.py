"""Security utilities for Vibes DIY."""

from security.utils import (
    SecurityError,
    is_safe_name,
    validate_document_id,
    validate_session_id,
    validate_slug,
)

__all__ = [
    "is_safe_name",
    "validate_session_id",
    "validate_slug",
    "validate_document_id",
    "SecurityError",
]
