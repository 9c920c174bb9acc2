"""Feature agents: retrieval + prompt building + payload parsing per feature."""

from .base import AgentResult
from .deal_coach import DealCoachAgent
from .objection_handler import ObjectionHandlerAgent
from .persona_builder import PersonaBuilderAgent
from .win_loss import WinLossExplainerAgent

__all__ = [
    "AgentResult",
    "DealCoachAgent",
    "ObjectionHandlerAgent",
    "PersonaBuilderAgent",
    "WinLossExplainerAgent",
]
