"""Shared error types for the context cache.

Exceeding a token budget is not an error: retrieval is best effort and
reports excluded candidates through `RetrievalResult.alternative_available`.
"""

from __future__ import annotations

from typing import Any


class ContextCacheError(Exception):
    """Base error for the context cache."""

    code = "context_cache_error"

    def to_dict(self) -> dict[str, Any]:
        return {"error": {"code": self.code, "message": str(self)}}


class ValidationError(ContextCacheError):
    """Malformed input; rejected before any store mutation."""

    code = "validation_error"


class NotFoundError(ContextCacheError):
    """Lookup of an unknown record or session id."""

    code = "not_found"


class SummarizationFailed(ContextCacheError):
    """External summarizer failed or timed out; the raw buffer is kept."""

    code = "summarization_failed"

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.session_id is not None:
            payload["error"]["session_id"] = self.session_id
        return payload


class IndexCorruption(ContextCacheError):
    """Index content disagrees with stored records. Internal, self-healed."""

    code = "index_corruption"


class StorageError(ContextCacheError):
    """The persistence backend could not write a record."""

    code = "storage_error"
