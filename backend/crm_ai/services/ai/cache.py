"""
Response cache for ``AIOrchestrator.generate_response``.

Keys:
- entity-scoped: ``{feature}:{entity_id}:{hash(json([system_prompt, user_prompt]))[:16]}``
- generic:       ``{feature}_{fingerprint(all parameters)}``

Entity-scoped keys take precedence so two deals never share an entry even
when their prompts are similar. TTL: 15 minutes by default.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from crm_ai.core.cache import TTLCache, fingerprint, hash_text
from crm_ai.core.config import get_settings
from crm_ai.core.logging import get_logger
from crm_ai.core.metrics import record_cache_hit, record_cache_miss
from crm_ai.services.ai.schema import AIResponse, CacheEntry, GenerateOptions

logger = get_logger(__name__)

CACHE_TYPE = "ai_response"
DEFAULT_TTL_SECONDS = 15 * 60


class ResponseCache:
    """Bounded TTL cache of AIResponse objects."""

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, max_entries: int = 1000, clock=None):
        kwargs = {"clock": clock} if clock is not None else {}
        self._cache: TTLCache[CacheEntry] = TTLCache(CACHE_TYPE, ttl_seconds, max_entries, **kwargs)

    @property
    def ttl_seconds(self) -> float:
        return self._cache.ttl_seconds

    @staticmethod
    def build_key(
        feature: str,
        system_prompt: str,
        user_prompt: str,
        options: Optional[GenerateOptions] = None,
    ) -> str:
        feature = getattr(feature, "value", feature)
        options = options or GenerateOptions()
        if options.entity_id:
            prompt_hash = hash_text(json.dumps([system_prompt, user_prompt]))[:16]
            return f"{feature}:{options.entity_id}:{prompt_hash}"

        params: Dict[str, Any] = {
            "feature": feature,
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "model": options.model,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "top_p": options.top_p,
            "frequency_penalty": options.frequency_penalty,
            "presence_penalty": options.presence_penalty,
        }
        return f"{feature}_{fingerprint(params)}"

    def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._cache.get(key)
        if entry is None:
            record_cache_miss(CACHE_TYPE)
            logger.debug("ai_cache_miss", key=key)
            return None
        record_cache_hit(CACHE_TYPE)
        logger.debug("ai_cache_hit", key=key)
        return entry

    def set(self, key: str, payload: AIResponse) -> CacheEntry:
        entry = CacheEntry(
            key=key,
            payload=payload,
            created_at=datetime.now(timezone.utc),
            ttl_seconds=self._cache.ttl_seconds,
        )
        self._cache.set(key, entry)
        return entry

    def delete(self, key: str) -> bool:
        return self._cache.delete(key)

    def clear(self) -> int:
        count = self._cache.clear()
        logger.info("ai_cache_cleared", entries=count)
        return count

    def sweep(self) -> int:
        return self._cache.sweep()

    def stats(self) -> Dict[str, Any]:
        return self._cache.stats()

    def __len__(self) -> int:
        return len(self._cache)


_response_cache: Optional[ResponseCache] = None


def get_response_cache() -> ResponseCache:
    global _response_cache
    if _response_cache is None:
        settings = get_settings()
        _response_cache = ResponseCache(
            ttl_seconds=settings.cache_ttl_seconds,
            max_entries=settings.cache_max_entries,
        )
    return _response_cache
