"""
Async client for an OpenAI-compatible completion and moderation API.

- Uses httpx directly; no provider SDKs.
- Every call goes through a per-endpoint circuit breaker.
- Transport errors, non-2xx responses and open circuits surface as
  ``LLMError`` / ``ModerationError`` so callers can fall back.

Environment configuration (see ``crm_ai.core.config``):
- LLM_API_BASE: Base URL for API (default: https://api.openai.com/v1)
- LLM_API_KEY: API key / bearer token
- LLM_MODEL: Default completion model (default: gpt-4)
- LLM_TIMEOUT_SECONDS: Request timeout in seconds (default: 30)
"""
import time
from typing import Any, Dict, List, Optional, Type

import httpx
from pydantic import BaseModel, Field

from crm_ai.core.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError, get_circuit_breaker
from crm_ai.core.config import get_settings
from crm_ai.core.logging import get_logger
from crm_ai.core.metrics import (
    record_llm_request,
    record_llm_tokens,
    record_upstream_error,
)
from crm_ai.services.ai.errors import LLMError, ModerationError, UpstreamError
from crm_ai.services.ai.schema import Usage

logger = get_logger(__name__)


class ChatCompletion(BaseModel):
    content: str
    model: str
    usage: Usage = Field(default_factory=Usage)
    finish_reason: Optional[str] = None


class ModerationResult(BaseModel):
    flagged: bool
    categories: List[str] = Field(default_factory=list)


class LLMClient:
    """Async HTTP client for chat completions and content moderation."""

    def __init__(
        self,
        api_base: str,
        api_key: Optional[str],
        model: str,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        chat_breaker: Optional[CircuitBreaker] = None,
        moderation_breaker: Optional[CircuitBreaker] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self.chat_breaker = chat_breaker or get_circuit_breaker("llm_chat")
        self.moderation_breaker = moderation_breaker or get_circuit_breaker("llm_moderation")

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def _post(self, path: str, json_payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST and decode JSON. Non-2xx responses raise ``httpx.HTTPStatusError``."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        url = f"{self.api_base}{path}"
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.post(url, headers=headers, json=json_payload)
            response.raise_for_status()
            return response.json()

    async def _guarded_post(
        self,
        breaker: CircuitBreaker,
        path: str,
        payload: Dict[str, Any],
        error_cls: Type[UpstreamError],
    ) -> Dict[str, Any]:
        collaborator = error_cls.collaborator
        try:
            return await breaker.call_async(self._post, path, json_payload=payload)
        except CircuitBreakerOpenError as exc:
            record_upstream_error(collaborator, "circuit_open")
            logger.warning(f"{collaborator}_circuit_open", breaker=breaker.name)
            raise error_cls(str(exc)) from exc
        except httpx.TimeoutException as exc:
            record_upstream_error(collaborator, "timeout")
            logger.warning(
                f"{collaborator}_timeout",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise error_cls(f"{collaborator} request timed out") from exc
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            record_upstream_error(collaborator, f"http_{status_code}")
            logger.warning(
                f"{collaborator}_http_error",
                status_code=status_code,
                error=str(exc),
            )
            raise error_cls(f"{collaborator} returned HTTP {status_code}", status_code=status_code) from exc
        except httpx.HTTPError as exc:
            record_upstream_error(collaborator, "http_error")
            logger.warning(
                f"{collaborator}_http_error",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise error_cls(str(exc) or type(exc).__name__) from exc
        except ValueError as exc:
            record_upstream_error(collaborator, "invalid_json")
            logger.warning(f"{collaborator}_invalid_json", error=str(exc))
            raise error_cls("Response body was not valid JSON") from exc

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        max_tokens: int = 500,
        temperature: float = 0.7,
        top_p: float = 1.0,
        frequency_penalty: float = 0.0,
        presence_penalty: float = 0.0,
        response_format: Optional[Dict[str, Any]] = None,
    ) -> ChatCompletion:
        """
        Call the chat completion endpoint.

        Args:
            messages: OpenAI-style chat messages
            model: Model override (defaults to the client's model)
            max_tokens: Max tokens for completion
            response_format: Optional response_format for JSON mode

        Returns:
            The first choice's content with model name and token usage.

        Raises:
            LLMError: key missing, transport failure, non-2xx or empty output.
        """
        model = model or self.model
        if not self.api_key:
            record_upstream_error("llm", "missing_api_key")
            raise LLMError("LLM API key not configured")

        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "top_p": top_p,
            "frequency_penalty": frequency_penalty,
            "presence_penalty": presence_penalty,
        }
        if response_format:
            payload["response_format"] = response_format

        start = time.time()
        try:
            data = await self._guarded_post(self.chat_breaker, "/chat/completions", payload, LLMError)
        finally:
            record_llm_request(model, time.time() - start)

        choices = data.get("choices") or []
        content = ""
        finish_reason = None
        if choices:
            first = choices[0] or {}
            content = ((first.get("message") or {}).get("content") or "").strip()
            finish_reason = first.get("finish_reason")
        if not content:
            record_upstream_error("llm", "empty_completion")
            logger.warning("llm_empty_completion", model=model, finish_reason=finish_reason)
            raise LLMError("LLM returned no content")

        usage_raw = data.get("usage") or {}
        usage = Usage(
            prompt_tokens=int(usage_raw.get("prompt_tokens") or 0),
            completion_tokens=int(usage_raw.get("completion_tokens") or 0),
        )
        record_llm_tokens(model, usage.prompt_tokens, usage.completion_tokens)

        return ChatCompletion(
            content=content,
            model=data.get("model") or model,
            usage=usage,
            finish_reason=finish_reason,
        )

    async def moderate(self, text: str) -> ModerationResult:
        """
        Run text through the moderation endpoint.

        Raises:
            ModerationError: with ``status_code`` 401 when no key is configured
            or the provider rejects our credentials.
        """
        if not self.api_key:
            record_upstream_error("moderation", "missing_api_key")
            raise ModerationError("Moderation API key not configured", status_code=401)

        data = await self._guarded_post(
            self.moderation_breaker, "/moderations", {"input": text}, ModerationError
        )
        results = data.get("results") or []
        if not results:
            raise ModerationError("Moderation response had no results")

        result = results[0] or {}
        categories = result.get("categories") or {}
        return ModerationResult(
            flagged=bool(result.get("flagged")),
            categories=sorted(name for name, hit in categories.items() if hit),
        )


_llm_client: Optional[LLMClient] = None


def get_llm_client() -> LLMClient:
    """Global LLM client built from settings."""
    global _llm_client
    if _llm_client is None:
        settings = get_settings()
        _llm_client = LLMClient(
            api_base=settings.llm_api_base,
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            timeout_seconds=settings.llm_timeout_seconds,
        )
    return _llm_client
