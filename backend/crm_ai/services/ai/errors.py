"""
Error taxonomy for the AI request pipeline.

- ContentRejectedError: input failed the safety filter (terminal, pre-LLM)
- QuotaExceededError: daily budget reached (terminal, pre-LLM)
- UpstreamError: an LLM / embedding / moderation / vector-store call failed
- IndexingError: one record failed during (re-)indexing

Only QuotaExceededError escapes ``AIOrchestrator.generate_response``; every
other failure is converted into a fallback response at that boundary.
"""
from typing import Optional


class CRMAIError(Exception):
    """Base class for all pipeline errors."""


class ContentRejectedError(CRMAIError):
    def __init__(self, reason: str, severity: str, message: Optional[str] = None, verdict=None):
        super().__init__(message or f"Content rejected: {reason}")
        self.reason = reason
        self.severity = severity
        self.verdict = verdict


class QuotaExceededError(CRMAIError):
    def __init__(self, user_id: str, limit: int, used: Optional[int] = None):
        detail = f"{used}/{limit}" if used is not None else f"limit {limit}"
        super().__init__(f"Daily AI request limit exceeded ({detail})")
        self.user_id = user_id
        self.used = used
        self.limit = limit


class UpstreamError(CRMAIError):
    """A collaborator call raised or returned an unusable payload."""

    collaborator = "upstream"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LLMError(UpstreamError):
    collaborator = "llm"


class ModerationError(UpstreamError):
    collaborator = "moderation"

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in (401, 403)


class EmbeddingError(UpstreamError):
    collaborator = "embedding"


class VectorStoreError(UpstreamError):
    collaborator = "vector_store"


class EmbeddingModelMismatchError(VectorStoreError):
    """A collection was built with a different embedding model than the query."""

    def __init__(self, collection: str, indexed_model: str, query_model: str):
        super().__init__(
            f"Collection {collection} was indexed with {indexed_model!r} "
            f"but is being used with {query_model!r}; re-index the collection"
        )
        self.collection = collection
        self.indexed_model = indexed_model
        self.query_model = query_model


class IndexingError(CRMAIError):
    def __init__(self, collection: str, record_id: str, cause: BaseException):
        super().__init__(f"Failed to index {collection}/{record_id}: {cause}")
        self.collection = collection
        self.record_id = record_id
        self.cause = cause
