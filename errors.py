"""Exception hierarchy for the novel library."""
from typing import Optional


class NovelLibraryError(Exception):
    """Base exception for all novel library errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


class NoContent(NovelLibraryError):
    """Auto ingestion was requested without any source text."""

    status_code = 400

    def __init__(self, message: str = "No content to translate"):
        super().__init__(message)


class TranslationFailed(NovelLibraryError):
    """The provider exhausted its retries, failed fatally or returned malformed JSON."""

    status_code = 502


class PersistenceFailed(NovelLibraryError):
    """A store write failed."""

    status_code = 500


class DuplicateUsername(PersistenceFailed):
    """Registration collided with an existing username."""

    status_code = 409

    def __init__(self, username: str):
        super().__init__("Username already taken", {"username": username})
        self.username = username


class NotFound(NovelLibraryError):
    """A referenced novel, chapter, user or job does not exist."""

    status_code = 404

    def __init__(self, entity: str, entity_id=None):
        super().__init__(f"{entity} not found", {"id": entity_id} if entity_id is not None else None)
        self.entity = entity


class PermissionDenied(NovelLibraryError):
    """The current session lacks the role needed for the operation."""

    status_code = 403
