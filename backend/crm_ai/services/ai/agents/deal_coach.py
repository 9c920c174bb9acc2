"""
Deal coach agent.

Suggests 2-3 next steps for an open deal, grounded on similar closed-won
deals from the same industry.
"""
from datetime import datetime, timezone
from typing import Any, List, Optional

from crm_ai.models.crm import Deal
from crm_ai.services.ai.agents.base import AgentResult, FeatureAgent, free_text, money
from crm_ai.services.ai.features import CoachingSuggestion, DealCoachPayload, Feature
from crm_ai.services.ai.schema import SimilarityResult
from crm_ai.services.rag.vector_store import CollectionName

TOP_K = 3
MAX_TOKENS = 400
RECENT_INTERACTIONS = 3

SYSTEM_PROMPT = """You are an expert sales coach AI. Your role is to provide actionable, specific suggestions to help salespeople advance their deals.

Guidelines:
- Provide 2-3 concrete, actionable suggestions
- Base recommendations on similar successful deals when available
- Focus on next steps that move the deal forward
- Consider the deal stage, value, and industry context
- Be specific about timing and approach
- Keep suggestions practical and implementable

Format your response as a JSON array of suggestion objects:
[
  {
    "action": "specific action to take",
    "reasoning": "why this action is recommended",
    "priority": "high|medium|low",
    "timeline": "when to execute this"
  }
]"""


def query_text(deal: Deal) -> str:
    return (
        f"{deal.industry or 'Unknown'} company {deal.company or ''} deal worth "
        f"{money(deal.value)} in {deal.stage} stage"
    )


def build_user_prompt(deal: Deal, similar: List[SimilarityResult], now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    if deal.created_at is not None:
        created = deal.created_at if deal.created_at.tzinfo else deal.created_at.replace(tzinfo=timezone.utc)
        days = str((now - created).days)
    else:
        days = "Unknown"

    activity = "\n".join(
        f"- {i.type}: {i.notes or 'No notes'}" for i in deal.interactions[-RECENT_INTERACTIONS:]
    ) or "No recent interactions"
    objections = "\n".join(
        f"- {o.category}: {o.text}" for o in deal.objections if not o.is_resolved
    ) or "No active objections"

    context = ""
    if similar:
        context = "\n\nSimilar successful deals for context:\n" + "\n".join(
            f"- {d.metadata.get('industry')} deal worth {money(d.metadata.get('value'))} "
            f"({d.metadata.get('duration')} days to close)"
            for d in similar
        )

    return (
        "Analyze this deal and provide coaching suggestions:\n\n"
        "Deal Details:\n"
        f"- Company: {deal.company or 'Unknown'}\n"
        f"- Industry: {deal.industry or 'Unknown'}\n"
        f"- Value: {money(deal.value)}\n"
        f"- Stage: {deal.stage}\n"
        f"- Days in pipeline: {days}\n\n"
        f"Recent Activity:\n{activity}\n\n"
        f"Current Objections:\n{objections}\n\n"
        f"Notes: {deal.notes or 'No notes'}{context}\n\n"
        "Provide specific, actionable coaching suggestions to advance this deal."
    )


def screen_text(deal: Deal) -> str:
    return free_text(
        deal.notes,
        *(i.notes for i in deal.interactions[-RECENT_INTERACTIONS:]),
        *(o.text for o in deal.objections if not o.is_resolved),
    )


class DealCoachAgent(FeatureAgent):
    feature = Feature.DEAL_COACH
    payload_model = DealCoachPayload

    def coerce(self, data: Any) -> DealCoachPayload:
        # The prompt asks for a bare array; accept a single object or a wrapped list too.
        if isinstance(data, dict) and "suggestions" not in data:
            data = [data]
        if isinstance(data, list):
            data = {"suggestions": data}
        return DealCoachPayload.model_validate(data)

    def default_payload(self, content: str) -> DealCoachPayload:
        return DealCoachPayload(
            suggestions=[
                CoachingSuggestion(
                    action=(content or "")[:200],
                    reasoning="AI-generated suggestion",
                    priority="medium",
                    timeline="within 1 week",
                )
            ]
        )

    async def coach(self, deal: Deal, user_id: Optional[str] = None) -> AgentResult:
        similar = await self.retrieve(
            CollectionName.DEALS,
            query_text(deal),
            TOP_K,
            {"industry": deal.industry, "outcome": "closed_won"},
        )
        return await self.run(
            SYSTEM_PROMPT,
            build_user_prompt(deal, similar),
            similar,
            user_id=user_id,
            entity_id=deal.id,
            max_tokens=MAX_TOKENS,
            screen_text=screen_text(deal),
        )
