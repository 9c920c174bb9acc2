"""
Objection handler agent.

Drafts a response to a customer objection, using similar resolved
objections as reference.
"""
from typing import List, Optional

from crm_ai.models.crm import Deal
from crm_ai.services.ai.agents.base import AgentResult, FeatureAgent, money
from crm_ai.services.ai.features import Feature, ObjectionResponsePayload
from crm_ai.services.ai.schema import SimilarityResult
from crm_ai.services.rag.vector_store import CollectionName

TOP_K = 3
MAX_TOKENS = 350
MAX_OBJECTION_CHARS = 1000

SYSTEM_PROMPT = """You are an expert sales objection handler. Your role is to provide thoughtful, persuasive responses to customer objections.

Guidelines:
- Acknowledge the concern genuinely
- Provide logical, evidence-based responses
- Offer alternative perspectives when appropriate
- Include emotional and social proof elements when relevant
- Keep responses conversational and professional
- Suggest follow-up questions to understand the objection better

Format your response as JSON:
{
  "response": "the main response to the objection",
  "approach": "logical|emotional|social_proof",
  "follow_up": "suggested follow-up question",
  "tips": ["tip1", "tip2"]
}"""


def query_text(objection_text: str, deal: Optional[Deal]) -> str:
    industry = (deal.industry if deal else None) or "general"
    return f"{industry} objection: {objection_text}"


def build_user_prompt(
    objection_text: str,
    deal: Optional[Deal],
    similar: List[SimilarityResult],
    category: Optional[str] = None,
    severity: Optional[str] = None,
) -> str:
    deal_context = ""
    if deal is not None:
        deal_context = (
            "\nDeal Context:\n"
            f"- Company: {deal.company or 'Unknown'}\n"
            f"- Industry: {deal.industry or 'Unknown'}\n"
            f"- Value: {money(deal.value)}\n"
            f"- Stage: {deal.stage}"
        )

    reference = ""
    if similar:
        reference = "\n\nSimilar resolved objections for reference:\n" + "\n".join(
            f"- \"{o.document.splitlines()[0] if o.document else ''}\" "
            f"({o.metadata.get('category')}, resolved successfully)"
            for o in similar
        )

    return (
        "Handle this customer objection:\n\n"
        f"Objection: \"{objection_text}\"\n"
        f"Category: {category or 'Unknown'}\n"
        f"Severity: {severity or 'Unknown'}{deal_context}{reference}\n\n"
        "Provide a thoughtful, persuasive response that addresses the customer's concern."
    )


class ObjectionHandlerAgent(FeatureAgent):
    feature = Feature.OBJECTION_HANDLER
    payload_model = ObjectionResponsePayload

    def default_payload(self, content: str) -> ObjectionResponsePayload:
        return ObjectionResponsePayload(
            response=content or "",
            approach="logical",
            follow_up="What specific concerns do you have about this?",
            tips=["Listen actively", "Address the root concern"],
        )

    async def handle(
        self,
        objection_text: str,
        deal: Optional[Deal] = None,
        category: Optional[str] = None,
        severity: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> AgentResult:
        """
        Raises:
            ValueError: objection text is empty or longer than 1000 characters.
        """
        if not objection_text or not objection_text.strip() or len(objection_text) > MAX_OBJECTION_CHARS:
            raise ValueError(
                f"Objection text is required and must be under {MAX_OBJECTION_CHARS} characters"
            )

        where = {"outcome": "resolved"}
        if category:
            where["category"] = category
        similar = await self.retrieve(
            CollectionName.OBJECTIONS, query_text(objection_text, deal), TOP_K, where
        )
        return await self.run(
            SYSTEM_PROMPT,
            build_user_prompt(objection_text, deal, similar, category, severity),
            similar,
            user_id=user_id,
            entity_id=deal.id if deal else None,
            max_tokens=MAX_TOKENS,
            screen_text=objection_text,
        )
