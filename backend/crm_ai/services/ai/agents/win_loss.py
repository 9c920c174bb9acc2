"""
Win/loss explainer agent.

Explains why a closed deal was won or lost, compared against similar
deals with the same outcome. Open deals are rejected.
"""
from typing import List, Optional, Sequence

from crm_ai.models.crm import Deal, Interaction, Objection
from crm_ai.services.ai.agents.base import AgentResult, FeatureAgent, free_text, money
from crm_ai.services.ai.features import Feature, WinLossPayload
from crm_ai.services.ai.schema import SimilarityResult
from crm_ai.services.rag.vector_store import CollectionName

TOP_K = 4
MAX_TOKENS = 500
MAX_INTERACTIONS = 5
MAX_OBJECTIONS = 3

SYSTEM_PROMPT = """You are an expert sales analyst. Analyze closed deals to identify key factors that led to wins or losses.

Guidelines:
- Identify the primary factors that influenced the outcome
- Analyze timeline, objections, and engagement patterns
- Compare with similar deals when possible
- Provide actionable insights for future deals
- Be objective and data-driven in analysis
- Highlight both positive and negative factors

Format your response as JSON:
{
  "outcome": "won|lost",
  "primary_factors": ["factor1", "factor2"],
  "timeline": "analysis of deal duration and pacing",
  "objection_handling": "how objections were managed",
  "engagement_level": "customer engagement assessment",
  "key_lessons": ["lesson1", "lesson2"],
  "recommendations": ["recommendation1", "recommendation2"]
}"""


def query_text(deal: Deal, interaction_count: int) -> str:
    return (
        f"{deal.industry or 'Unknown'} deal worth {money(deal.value)} {deal.stage} "
        f"after {interaction_count} interactions"
    )


def build_user_prompt(
    deal: Deal,
    similar: List[SimilarityResult],
    interactions: Sequence[Interaction],
    objections: Sequence[Objection],
) -> str:
    duration = deal.duration_days
    interaction_lines = "\n".join(
        f"- {i.type}: {i.notes or 'No notes'} ({i.outcome or 'Unknown outcome'})" for i in interactions
    ) or "No interactions"
    objection_lines = "\n".join(
        f"- {o.category}: {o.text} ({'Resolved' if o.is_resolved else 'Unresolved'})" for o in objections
    ) or "No objections"

    comparison = ""
    if similar:
        comparison = "\n\nSimilar deals for comparison:\n" + "\n".join(
            f"- {d.metadata.get('industry')} deal: {money(d.metadata.get('value'))}, "
            f"{d.metadata.get('duration')} days, {d.metadata.get('outcome')}"
            for d in similar
        )

    verdict = "won" if deal.stage == "closed_won" else "lost"
    return (
        "Analyze this closed deal:\n\n"
        f"Deal Outcome: {deal.stage}\n"
        f"Company: {deal.company or 'Unknown'}\n"
        f"Industry: {deal.industry or 'Unknown'}\n"
        f"Value: {money(deal.value)}\n"
        f"Duration: {f'{duration} days' if duration is not None else 'Unknown'}\n"
        f"Close Reason: {deal.close_reason or 'Not specified'}\n\n"
        f"Interactions ({len(interactions)} total):\n{interaction_lines}\n\n"
        f"Objections ({len(objections)} total):\n{objection_lines}\n\n"
        f"Notes: {deal.notes or 'No notes'}{comparison}\n\n"
        f"Provide a comprehensive analysis of why this deal was {verdict}."
    )


def screen_text(deal: Deal, interactions: Sequence[Interaction], objections: Sequence[Objection]) -> str:
    return free_text(
        deal.notes,
        deal.close_reason,
        *(i.notes for i in interactions),
        *(o.text for o in objections),
    )


class WinLossExplainerAgent(FeatureAgent):
    feature = Feature.WIN_LOSS_EXPLAINER
    payload_model = WinLossPayload

    def default_payload(self, content: str) -> WinLossPayload:
        return WinLossPayload(
            outcome="unknown",
            primary_factors=["Insufficient data for analysis"],
            timeline="Unable to analyze timeline",
            objection_handling="No objection data available",
            engagement_level="Unknown",
            key_lessons=["Improve data collection"],
            recommendations=["Track more interaction details"],
        )

    async def explain(
        self,
        deal: Deal,
        interactions: Optional[Sequence[Interaction]] = None,
        objections: Optional[Sequence[Objection]] = None,
        user_id: Optional[str] = None,
    ) -> AgentResult:
        """
        Raises:
            ValueError: the deal is not closed.
        """
        if not deal.is_closed:
            raise ValueError("Can only analyze closed deals")

        interactions = list(interactions if interactions is not None else deal.interactions)[:MAX_INTERACTIONS]
        objections = list(objections if objections is not None else deal.objections)[:MAX_OBJECTIONS]

        similar = await self.retrieve(
            CollectionName.DEALS,
            query_text(deal, len(interactions)),
            TOP_K,
            {"industry": deal.industry, "outcome": deal.stage},
        )
        return await self.run(
            SYSTEM_PROMPT,
            build_user_prompt(deal, similar, interactions, objections),
            similar,
            user_id=user_id,
            entity_id=deal.id,
            max_tokens=MAX_TOKENS,
            screen_text=screen_text(deal, interactions, objections),
        )
