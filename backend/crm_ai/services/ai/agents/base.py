"""
Shared plumbing for the feature agents.

Each agent:
- Builds a retrieval query and pulls similar history from the vector store
- Builds system/user prompts
- Calls the orchestrator (filter, quota, cache, LLM, audit live there)
- Parses the JSON answer into the feature's payload model

Retrieval failures degrade to an empty context. Unparseable answers degrade
to a typed default built from the raw text. QuotaExceededError from the
orchestrator is not caught here.
"""
import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, Field, ValidationError

from crm_ai.core.logging import get_logger
from crm_ai.core.metrics import record_agent_schema_failure
from crm_ai.services.ai.features import Feature
from crm_ai.services.ai.schema import AIResponse, GenerateOptions, SimilarityResult, utcnow

logger = get_logger(__name__)


class AgentResult(BaseModel):
    """What a feature agent hands back to its caller."""

    feature: Feature
    payload: Any
    confidence: int
    fallback: bool = False
    filtered: bool = False
    from_cache: bool = False
    parsed: bool = True
    rag_context: List[SimilarityResult] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)


def money(value: Optional[float]) -> str:
    return f"${(value or 0):,.0f}"


def free_text(*chunks: Optional[str]) -> str:
    """Newline-joined free-form CRM text (notes, objections) that goes into a prompt."""
    return "\n".join(c.strip() for c in chunks if c and c.strip())


def strip_code_fence(content: str) -> str:
    """Models sometimes wrap JSON in ```json fences."""
    text = (content or "").strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


class FeatureAgent:
    """Base class; subclasses set ``feature`` and ``payload_model``."""

    feature: Feature
    payload_model: Type[BaseModel]

    def __init__(self, orchestrator=None, vector_store=None):
        if orchestrator is None:
            from crm_ai.services.ai.orchestration import get_ai_orchestrator

            orchestrator = get_ai_orchestrator()
        self.orchestrator = orchestrator
        self.vector_store = vector_store if vector_store is not None else orchestrator.vector_store

    async def retrieve(
        self,
        collection: str,
        query: str,
        top_k: int,
        where: Optional[Dict[str, Any]] = None,
    ) -> List[SimilarityResult]:
        if self.vector_store is None:
            return []
        try:
            return await self.vector_store.query(collection, query, top_k=top_k, where=where)
        except Exception as e:
            logger.warning(
                "agent_retrieval_failed",
                feature=self.feature.value,
                collection=str(getattr(collection, "value", collection)),
                error=str(e),
                error_type=type(e).__name__,
            )
            return []

    def default_payload(self, content: str) -> BaseModel:
        """Typed payload used when the answer is not valid JSON."""
        raise NotImplementedError

    def coerce(self, data: Any) -> BaseModel:
        return self.payload_model.model_validate(data)

    def parse(self, content: str) -> Optional[BaseModel]:
        try:
            data = json.loads(strip_code_fence(content))
        except (TypeError, ValueError) as exc:
            record_agent_schema_failure(self.feature.value)
            logger.warning("agent_invalid_json", feature=self.feature.value, error=str(exc))
            return None

        try:
            return self.coerce(data)
        except ValidationError as exc:
            record_agent_schema_failure(self.feature.value)
            logger.warning(
                "agent_schema_invalid",
                feature=self.feature.value,
                error_count=exc.error_count(),
            )
            return None

    async def run(
        self,
        system_prompt: str,
        user_prompt: str,
        rag_context: List[SimilarityResult],
        user_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        max_tokens: int = 500,
        screen_text: str = "",
    ) -> AgentResult:
        """
        ``screen_text`` is the free text embedded in ``user_prompt``; only it
        goes through the content filter, never the assembled prompt.
        """
        response: AIResponse = await self.orchestrator.generate_response(
            self.feature,
            system_prompt,
            user_prompt,
            GenerateOptions(
                user_id=user_id,
                entity_id=entity_id,
                max_tokens=max_tokens,
                rag_context=rag_context,
                screen_text=screen_text,
            ),
        )

        parsed = True
        if response.fallback:
            payload = self.coerce(response.payload or self.feature.fallback.payload_dict())
        else:
            payload = self.parse(response.content)
            if payload is None:
                parsed = False
                payload = self.default_payload(response.content)

        return AgentResult(
            feature=self.feature,
            payload=payload,
            confidence=response.confidence,
            fallback=response.fallback,
            filtered=response.filtered,
            from_cache=response.from_cache,
            parsed=parsed,
            rag_context=rag_context,
            timestamp=response.timestamp,
        )
