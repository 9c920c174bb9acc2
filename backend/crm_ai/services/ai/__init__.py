"""
AI request pipeline.

Every feature request goes through ``AIOrchestrator.generate_response``:
content filter, quota, response cache, LLM, audit. Feature agents build the
prompts and retrieval context; the orchestrator never retrieves by itself.
"""

from .features import Feature
from .orchestration import AIOrchestrator, get_ai_orchestrator
from .schema import AIResponse, GenerateOptions

__all__ = ["AIOrchestrator", "AIResponse", "Feature", "GenerateOptions", "get_ai_orchestrator"]
