"""
Pydantic models for the AI request pipeline.

These are the records that flow between the content filter, quota tracker,
response cache, vector store and orchestrator, plus the caller-facing
``GenerateOptions`` / ``AIResponse`` contract.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# CONTENT SAFETY
# ============================================================================

class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


class ModerationReason(str, Enum):
    APPROVED = "content_approved"
    INVALID_INPUT = "invalid_input"
    MALICIOUS_INPUT = "malicious_input"
    PROFANITY = "profanity"
    VIOLENCE = "violence/threat"
    HATE_SPEECH = "hate_speech"
    SEXUAL_CONTENT = "sexual_content"
    SPAM = "spam/phishing"
    PERSONAL_INFO = "personal_information"
    PERSONAL_ATTACK = "personal_attack"
    NOT_BUSINESS_RELATED = "not_business_related"
    EXTERNAL_MODERATION = "external_moderation"
    MODERATION_UNAVAILABLE = "moderation_unavailable"
    FILTERING_ERROR = "filtering_error"


class VerdictSource(str, Enum):
    PATTERN = "pattern"
    BUSINESS_CONTEXT = "business-context"
    EXTERNAL_MODERATION = "external-moderation"


class ModerationVerdict(BaseModel):
    """Allow/block decision for one piece of text."""

    allowed: bool
    reason: ModerationReason
    severity: Severity = Severity.LOW
    source: VerdictSource = VerdictSource.PATTERN
    details: List[str] = Field(default_factory=list)

    @classmethod
    def allow(cls, source: VerdictSource = VerdictSource.PATTERN, details: Optional[List[str]] = None) -> "ModerationVerdict":
        return cls(
            allowed=True,
            reason=ModerationReason.APPROVED,
            severity=Severity.LOW,
            source=source,
            details=details or [],
        )

    @classmethod
    def block(
        cls,
        reason: ModerationReason,
        severity: Severity,
        source: VerdictSource,
        details: Optional[List[str]] = None,
    ) -> "ModerationVerdict":
        return cls(allowed=False, reason=reason, severity=severity, source=source, details=details or [])


# ============================================================================
# RETRIEVAL
# ============================================================================

class SimilarityResult(BaseModel):
    """One nearest-neighbour hit from a vector collection."""

    id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    document: str = ""
    similarity: float = Field(..., ge=0.0, le=1.0)
    distance: float


class EmbeddingRecord(BaseModel):
    """A stored vector together with its source text and metadata."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    collection: str
    id: str
    vector: List[float]
    document: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    indexed_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# QUOTA / AUDIT
# ============================================================================

class QuotaState(BaseModel):
    user_id: str
    window_start: datetime
    used: int = Field(..., ge=0)
    limit: int = Field(..., ge=0)

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def exceeded(self) -> bool:
        return self.used >= self.limit


class AuditStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


# Entries with these statuses count against the daily quota.
QUOTA_COUNTED_STATUSES = (AuditStatus.COMPLETED, AuditStatus.PENDING)

FEEDBACK_REQUEST_TYPE = "feedback"


class AuditLogEntry(BaseModel):
    """Append-only record of one pipeline invocation (or feedback event)."""

    model_config = ConfigDict(frozen=True)

    feature: str
    request_type: str
    user_id: Optional[str] = None
    input_summary: str = ""
    output_summary: str = ""
    status: AuditStatus
    start_time: datetime
    end_time: datetime
    response_time_ms: int = Field(0, ge=0)
    error_message: Optional[str] = None
    estimated_cost: float = Field(0.0, ge=0.0)
    model: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# REQUEST / RESPONSE CONTRACT
# ============================================================================

class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class GenerateOptions(BaseModel):
    """Caller-overridable options for ``generate_response``."""

    user_id: Optional[str] = None
    entity_id: Optional[str] = None
    model: Optional[str] = None
    max_tokens: int = Field(500, gt=0)
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    top_p: float = Field(1.0, gt=0.0, le=1.0)
    frequency_penalty: float = Field(0.0, ge=-2.0, le=2.0)
    presence_penalty: float = Field(0.0, ge=-2.0, le=2.0)
    skip_cache: bool = False
    enable_content_filtering: bool = True
    filter_response: bool = False
    # Free text to screen in place of the whole user prompt. Agents set it to
    # the caller or record text they embed in a prompt they assembled.
    screen_text: Optional[str] = None
    rag_context: List[SimilarityResult] = Field(default_factory=list)

    @field_validator("user_id", "entity_id")
    @classmethod
    def blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value


class AIResponse(BaseModel):
    """Result of ``generate_response``: either generated content or a fallback."""

    content: str
    model: Optional[str] = None
    usage: Usage = Field(default_factory=Usage)
    confidence: int = Field(..., ge=0, le=100)
    timestamp: datetime = Field(default_factory=utcnow)
    filtered: bool = False
    fallback: bool = False
    from_cache: bool = False
    payload: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    rejection: Optional[ModerationVerdict] = None


class CacheEntry(BaseModel):
    key: str
    payload: AIResponse
    created_at: datetime
    ttl_seconds: float
