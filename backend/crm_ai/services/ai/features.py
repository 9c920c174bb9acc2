"""
The four user-facing AI features and their fallback payloads.

``Feature`` is a closed set. Every member must have a ``FeatureFallback``
registered below; the module refuses to import otherwise, so adding a
feature without a schema-compatible fallback fails immediately.
"""
from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Feature(str, Enum):
    DEAL_COACH = "deal_coach"
    PERSONA_BUILDER = "persona_builder"
    OBJECTION_HANDLER = "objection_handler"
    WIN_LOSS_EXPLAINER = "win_loss_explainer"

    @property
    def request_type(self) -> str:
        return _REQUEST_TYPES[self]

    @property
    def fallback(self) -> "FeatureFallback":
        return _FALLBACKS[self]


_REQUEST_TYPES = {
    Feature.DEAL_COACH: "suggest",
    Feature.PERSONA_BUILDER: "build",
    Feature.OBJECTION_HANDLER: "generate",
    Feature.WIN_LOSS_EXPLAINER: "explain",
}


# ============================================================================
# PAYLOAD SHAPES (shared with the feature agents' parsed results)
# ============================================================================

class PayloadModel(BaseModel):
    """Accepts both snake_case and camelCase keys from model output."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class CoachingSuggestion(PayloadModel):
    action: str
    reasoning: str = ""
    priority: str = "medium"
    timeline: str = ""


class DealCoachPayload(PayloadModel):
    suggestions: List[CoachingSuggestion] = Field(default_factory=list)


class ObjectionResponsePayload(PayloadModel):
    response: str
    approach: str = "logical"
    follow_up: str = ""
    tips: List[str] = Field(default_factory=list)


class PersonaPayload(PayloadModel):
    communication_style: str = ""
    decision_making: str = ""
    motivations: List[str] = Field(default_factory=list)
    concerns: List[str] = Field(default_factory=list)
    engagement_level: str = "medium"
    preferred_approach: str = ""
    key_insights: List[str] = Field(default_factory=list)


class WinLossPayload(PayloadModel):
    outcome: str = "unknown"
    primary_factors: List[str] = Field(default_factory=list)
    timeline: str = ""
    objection_handling: str = ""
    engagement_level: str = ""
    key_lessons: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class FeatureFallback(BaseModel):
    """Canned content for one feature."""

    unavailable_message: str
    rejected_message: str
    payload: BaseModel

    def payload_dict(self) -> Dict[str, Any]:
        return self.payload.model_dump()


FALLBACK_CONFIDENCE = 25

_FALLBACKS = {
    Feature.DEAL_COACH: FeatureFallback(
        unavailable_message=(
            "Unable to generate AI suggestions at the moment. Try following up "
            "with the prospect or reviewing deal notes."
        ),
        rejected_message=(
            "Please ensure all deal information is appropriate and business-focused."
        ),
        payload=DealCoachPayload(
            suggestions=[
                CoachingSuggestion(
                    action="Review and update deal details",
                    reasoning="AI suggestions are unavailable for this request.",
                    priority="high",
                    timeline="today",
                )
            ]
        ),
    ),
    Feature.OBJECTION_HANDLER: FeatureFallback(
        unavailable_message=(
            "AI response unavailable. Consider acknowledging the concern and "
            "asking clarifying questions."
        ),
        rejected_message=(
            "I understand you have a concern. Could you please rephrase your "
            "objection in a professional manner so I can better assist you?"
        ),
        payload=ObjectionResponsePayload(
            response=(
                "I understand your concern. Could you tell me more about what is "
                "driving it so we can address it properly?"
            ),
            approach="clarification",
            follow_up="What specific aspect would you like to discuss?",
            tips=["Focus on business-related concerns", "Use professional language"],
        ),
    ),
    Feature.PERSONA_BUILDER: FeatureFallback(
        unavailable_message=(
            "Persona analysis temporarily unavailable. Review interaction history manually."
        ),
        rejected_message=(
            "Unable to analyze this contact. Please provide appropriate business information."
        ),
        payload=PersonaPayload(
            communication_style="Unable to analyze",
            decision_making="Unknown",
            motivations=["Review interaction history manually"],
            concerns=["Insufficient data for analysis"],
            engagement_level="low",
            preferred_approach="Use professional, business-appropriate language",
            key_insights=["Persona analysis unavailable"],
        ),
    ),
    Feature.WIN_LOSS_EXPLAINER: FeatureFallback(
        unavailable_message="Deal analysis unavailable. Review timeline and objections manually.",
        rejected_message="Deal analysis could not be performed on this content.",
        payload=WinLossPayload(
            primary_factors=["Insufficient data for analysis"],
            timeline="Unable to analyze timeline",
            objection_handling="No objection data available",
            engagement_level="Unknown",
            key_lessons=["Review timeline and objections manually"],
            recommendations=["Track more interaction details"],
        ),
    ),
}

_missing = set(Feature) - set(_FALLBACKS)
if _missing:
    raise RuntimeError(f"Features without a fallback payload: {sorted(f.value for f in _missing)}")
