"""
AI request pipeline.

``AIOrchestrator.generate_response`` runs, in order:

1. Content filter on the user prompt, or on ``options.screen_text`` when the
   prompt was assembled by an agent (rejected -> fallback, LLM never called)
2. Quota check (exceeded -> QuotaExceededError, the only error callers see)
3. Response cache lookup
4. LLM completion
5. Optional content filter on the generated text
6. Confidence score
7. Cache write
8. Audit log entry (exactly one per call) and usage counter increment

Any other failure becomes the feature's fallback response. Audit writes,
usage increments and cache writes are best-effort: a failure is logged and
never changes the outcome.
"""
import math
import time
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Sequence, Union

from crm_ai.core.circuit_breaker import all_circuit_breakers
from crm_ai.core.config import get_settings
from crm_ai.core.logging import bind_request_context, get_logger
from crm_ai.core.metrics import (
    record_ai_request,
    record_confidence,
    record_fallback,
    record_llm_cost,
)
from crm_ai.core.tracing import get_tracer, record_exception, set_span_attribute
from crm_ai.services.ai.content_filter import RESPONSE_CONTEXT
from crm_ai.services.ai.errors import ContentRejectedError, QuotaExceededError
from crm_ai.services.ai.features import FALLBACK_CONFIDENCE, Feature
from crm_ai.services.ai.schema import (
    AIResponse,
    AuditLogEntry,
    AuditStatus,
    GenerateOptions,
    ModerationVerdict,
    SimilarityResult,
    Usage,
)

logger = get_logger(__name__)
tracer = get_tracer("crm_ai.orchestration")

SUMMARY_CHARS = 200
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Crude token estimate: one token per four characters, rounded up."""
    return math.ceil(len(text or "") / CHARS_PER_TOKEN)


def estimate_cost(system_prompt: str, user_prompt: str, output: str, cost_per_1k_tokens: float) -> float:
    """Estimated USD cost for both prompts plus the generated output."""
    tokens = estimate_tokens(system_prompt) + estimate_tokens(user_prompt) + estimate_tokens(output)
    return tokens / 1000.0 * cost_per_1k_tokens


def compute_confidence(
    content: str,
    completion_tokens: int,
    rag_context: Sequence[SimilarityResult] = (),
) -> int:
    """
    Confidence in [0, 100]:
    50 base, up to +30 from the average similarity of the retrieval context,
    +10 above 200 characters, +10 more above 500, +10 above 50 completion tokens.
    """
    score = 50.0
    if rag_context:
        similarities = [max(0.0, min(1.0, ctx.similarity)) for ctx in rag_context]
        score += sum(similarities) / len(similarities) * 30
    length = len(content or "")
    if length > 200:
        score += 10
    if length > 500:
        score += 10
    if completion_tokens > 50:
        score += 10
    return int(min(max(round(score), 0), 100))


def _summary(text: Optional[str]) -> str:
    return (text or "")[:SUMMARY_CHARS]


class AIOrchestrator:
    """Composes filter, quota, cache, LLM and audit into one request pipeline."""

    def __init__(
        self,
        llm_client,
        content_filter,
        quota_tracker,
        response_cache,
        audit_repository,
        usage_store=None,
        vector_store=None,
        default_model: str = "gpt-4",
        cost_per_1k_tokens: float = 0.01,
    ):
        self.llm_client = llm_client
        self.content_filter = content_filter
        self.quota_tracker = quota_tracker
        self.response_cache = response_cache
        self.audit_repository = audit_repository
        self.usage_store = usage_store
        self.vector_store = vector_store
        self.default_model = default_model
        self.cost_per_1k_tokens = cost_per_1k_tokens

    async def generate_response(
        self,
        feature: Union[Feature, str],
        system_prompt: str,
        user_prompt: str,
        options: Union[GenerateOptions, Dict[str, Any], None] = None,
    ) -> AIResponse:
        """
        Produce an AI response for one feature request.

        Raises:
            ValueError: ``feature`` is not one of the known features.
            QuotaExceededError: the user has used up today's budget.
        """
        feature = Feature(feature)
        if options is None:
            options = GenerateOptions()
        elif isinstance(options, dict):
            options = GenerateOptions.model_validate(options)

        with bind_request_context(feature=feature.value, user_id=options.user_id):
            with tracer.start_as_current_span("ai.generate_response"):
                set_span_attribute("ai.feature", feature.value)
                set_span_attribute("ai.user_id", options.user_id)
                return await self._run_pipeline(feature, system_prompt, user_prompt, options)

    async def _run_pipeline(
        self,
        feature: Feature,
        system_prompt: str,
        user_prompt: str,
        options: GenerateOptions,
    ) -> AIResponse:
        started = time.time()
        start_time = datetime.now(timezone.utc)
        model = options.model or self.default_model

        # 1) Content filter: nothing blocked here may reach the LLM.
        if options.enable_content_filtering:
            try:
                await self._screen_input(feature, user_prompt, options)
            except ContentRejectedError as rejected:
                verdict = rejected.verdict
                await self._audit(
                    feature, options, system_prompt, user_prompt, start_time,
                    status=AuditStatus.REJECTED,
                    error_message=f"content_rejected:{verdict.reason.value}",
                    metadata={"severity": verdict.severity.value, "source": verdict.source.value},
                )
                record_ai_request(feature.value, "rejected", time.time() - started)
                return self._fallback(
                    feature,
                    feature.fallback.rejected_message,
                    reason="content_rejected",
                    filtered=True,
                    rejection=verdict,
                    error=f"Content filtering: {verdict.reason.value}",
                )

        # 2) Quota
        if options.user_id:
            allowed, state = await self.quota_tracker.check(options.user_id)
            if not allowed:
                await self._audit(
                    feature, options, system_prompt, user_prompt, start_time,
                    status=AuditStatus.REJECTED,
                    error_message="quota_exceeded",
                )
                record_ai_request(feature.value, "quota_exceeded", time.time() - started)
                raise QuotaExceededError(
                    options.user_id,
                    limit=state.limit if state else self.quota_tracker.daily_limit,
                    used=state.used if state else None,
                )

        try:
            # 3) Cache
            cache_key = self.response_cache.build_key(feature, system_prompt, user_prompt, options)
            if not options.skip_cache:
                entry = self.response_cache.get(cache_key)
                if entry is not None:
                    response = entry.payload.model_copy(update={"from_cache": True})
                    await self._audit(
                        feature, options, system_prompt, user_prompt, start_time,
                        status=AuditStatus.COMPLETED,
                        output=response.content,
                        model=response.model,
                        metadata={"cache_hit": True},
                    )
                    set_span_attribute("ai.cache_hit", True)
                    record_ai_request(feature.value, "cache_hit", time.time() - started)
                    return response

            # 4) LLM
            completion = await self.llm_client.chat(
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                model=model,
                max_tokens=options.max_tokens,
                temperature=options.temperature,
                top_p=options.top_p,
                frequency_penalty=options.frequency_penalty,
                presence_penalty=options.presence_penalty,
            )
            cost = estimate_cost(system_prompt, user_prompt, completion.content, self.cost_per_1k_tokens)
            record_llm_cost(feature.value, cost)

            # 5) Optional response filter
            if options.filter_response:
                output_verdict = await self.content_filter.filter(completion.content, RESPONSE_CONTEXT)
                if not output_verdict.allowed:
                    await self._audit(
                        feature, options, system_prompt, user_prompt, start_time,
                        status=AuditStatus.COMPLETED,
                        model=completion.model,
                        estimated_cost=cost,
                        error_message=f"response_filtered:{output_verdict.reason.value}",
                        metadata={"response_filtered": True},
                    )
                    await self._increment_usage(options.user_id)
                    record_ai_request(feature.value, "response_filtered", time.time() - started)
                    return self._fallback(
                        feature,
                        feature.fallback.rejected_message,
                        reason="response_filtered",
                        filtered=True,
                        rejection=output_verdict,
                        model=completion.model,
                        usage=completion.usage,
                    )

            # 6) Confidence
            confidence = compute_confidence(
                completion.content, completion.usage.completion_tokens, options.rag_context
            )
            response = AIResponse(
                content=completion.content,
                model=completion.model,
                usage=completion.usage,
                confidence=confidence,
            )
        except Exception as e:
            record_exception(e)
            logger.warning(
                "ai_generate_response_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._audit(
                feature, options, system_prompt, user_prompt, start_time,
                status=AuditStatus.FAILED,
                model=model,
                error_message=str(e) or type(e).__name__,
            )
            record_ai_request(feature.value, "failed", time.time() - started)
            return self._fallback(
                feature,
                feature.fallback.unavailable_message,
                reason=type(e).__name__,
                error=str(e) or type(e).__name__,
            )

        # 7) Cache write
        try:
            self.response_cache.set(cache_key, response)
        except Exception as e:
            logger.warning("ai_cache_set_failed", key=cache_key, error=str(e), error_type=type(e).__name__)

        # 8) Audit and usage
        await self._audit(
            feature, options, system_prompt, user_prompt, start_time,
            status=AuditStatus.COMPLETED,
            output=response.content,
            model=response.model,
            estimated_cost=cost,
            metadata={"confidence": confidence, "total_tokens": response.usage.total_tokens},
        )
        await self._increment_usage(options.user_id)

        duration = time.time() - started
        record_ai_request(feature.value, "completed", duration)
        record_confidence(feature.value, confidence)
        logger.info(
            "ai_response_generated",
            model=response.model,
            confidence=confidence,
            prompt_tokens=response.usage.prompt_tokens,
            completion_tokens=response.usage.completion_tokens,
            duration_ms=int(duration * 1000),
        )
        return response

    async def _screen_input(
        self, feature: Feature, user_prompt: str, options: GenerateOptions
    ) -> ModerationVerdict:
        """Raises ContentRejectedError (carrying the verdict) when the input is blocked."""
        if options.screen_text is None:
            verdict = await self.content_filter.filter(user_prompt, feature.value)
        elif not options.screen_text.strip():
            # Assembled purely from structured fields; nothing free-form to screen.
            return ModerationVerdict.allow()
        else:
            verdict = await self.content_filter.filter(
                options.screen_text, feature.value, enforce_length=False
            )
        if not verdict.allowed:
            raise ContentRejectedError(
                verdict.reason.value, verdict.severity.value, verdict=verdict
            )
        return verdict

    def _fallback(
        self,
        feature: Feature,
        message: str,
        reason: str,
        filtered: bool = False,
        rejection: Optional[ModerationVerdict] = None,
        error: Optional[str] = None,
        model: Optional[str] = None,
        usage: Optional[Usage] = None,
    ) -> AIResponse:
        record_fallback(feature.value, reason)
        return AIResponse(
            content=message,
            model=model,
            usage=usage or Usage(),
            confidence=FALLBACK_CONFIDENCE,
            filtered=filtered,
            fallback=True,
            payload=feature.fallback.payload_dict(),
            error=error,
            rejection=rejection,
        )

    async def _audit(
        self,
        feature: Feature,
        options: GenerateOptions,
        system_prompt: str,
        user_prompt: str,
        start_time: datetime,
        status: AuditStatus,
        output: Optional[str] = None,
        model: Optional[str] = None,
        estimated_cost: float = 0.0,
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        end_time = datetime.now(timezone.utc)
        entry_metadata = {
            "system_prompt_chars": len(system_prompt or ""),
            "user_prompt_chars": len(user_prompt or ""),
            "entity_id": options.entity_id,
            "rag_context_count": len(options.rag_context),
        }
        entry_metadata.update(metadata or {})
        try:
            entry = AuditLogEntry(
                feature=feature.value,
                request_type=feature.request_type,
                user_id=options.user_id,
                input_summary=_summary(user_prompt),
                output_summary=_summary(output),
                status=status,
                start_time=start_time,
                end_time=end_time,
                response_time_ms=max(0, int((end_time - start_time).total_seconds() * 1000)),
                error_message=error_message,
                estimated_cost=estimated_cost,
                model=model,
                metadata=entry_metadata,
            )
            await self.audit_repository.append(entry)
        except Exception as e:
            logger.warning(
                "ai_audit_write_failed",
                status=status.value,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _increment_usage(self, user_id: Optional[str]) -> None:
        if not user_id or self.usage_store is None:
            return
        try:
            await self.usage_store.increment(
                user_id, limit=self.quota_tracker.daily_limit, today=date.today()
            )
        except Exception as e:
            logger.warning(
                "ai_usage_increment_failed",
                error=str(e),
                error_type=type(e).__name__,
            )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clear_cache(self) -> int:
        return self.response_cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        return self.response_cache.stats()

    async def health_check(self) -> Dict[str, Any]:
        """Probe the LLM and report vector store, cache and circuit breaker state."""
        checked_at = datetime.now(timezone.utc).isoformat()
        try:
            probe = await self.llm_client.chat(
                messages=[{"role": "user", "content": "Hello"}],
                model=self.default_model,
                max_tokens=5,
            )
            vector_health = await self.vector_store.health_check() if self.vector_store else None
        except Exception as e:
            logger.warning("ai_health_check_failed", error=str(e), error_type=type(e).__name__)
            return {
                "status": "unhealthy",
                "healthy": False,
                "error": str(e),
                "timestamp": checked_at,
            }

        return {
            "status": "healthy",
            "healthy": True,
            "llm": {"status": "connected", "model": probe.model},
            "vector_store": vector_health,
            "cache": self.cache_stats(),
            "circuit_breakers": {
                name: breaker.get_metrics() for name, breaker in all_circuit_breakers().items()
            },
            "timestamp": checked_at,
        }


_ai_orchestrator: Optional[AIOrchestrator] = None


def get_ai_orchestrator() -> AIOrchestrator:
    """Global singleton accessor wired from settings."""
    global _ai_orchestrator
    if _ai_orchestrator is None:
        from crm_ai.services.ai.cache import get_response_cache
        from crm_ai.services.ai.content_filter import get_content_filter
        from crm_ai.services.ai.llm_client import get_llm_client
        from crm_ai.services.ai.persistence import get_audit_repository, get_usage_store
        from crm_ai.services.ai.quota import get_quota_tracker
        from crm_ai.services.rag.vector_store import get_vector_store

        settings = get_settings()
        _ai_orchestrator = AIOrchestrator(
            llm_client=get_llm_client(),
            content_filter=get_content_filter(),
            quota_tracker=get_quota_tracker(),
            response_cache=get_response_cache(),
            audit_repository=get_audit_repository(),
            usage_store=get_usage_store(),
            vector_store=get_vector_store(),
            default_model=settings.llm_model,
            cost_per_1k_tokens=settings.llm_cost_per_1k_tokens,
        )
    return _ai_orchestrator
