"""
Persona builder agent.

Profiles a contact from their own interaction and deal history plus
similar interactions from the same industry.
"""
from typing import List, Optional, Sequence

from crm_ai.models.crm import Contact, Deal, Interaction
from crm_ai.services.ai.agents.base import AgentResult, FeatureAgent, free_text, money
from crm_ai.services.ai.features import Feature, PersonaPayload
from crm_ai.services.ai.schema import SimilarityResult
from crm_ai.services.rag.vector_store import CollectionName

TOP_K = 5
MAX_TOKENS = 450
RECENT_INTERACTIONS = 5
RECENT_DEALS = 3

SYSTEM_PROMPT = """You are an expert customer psychology analyst and sales strategist. Create detailed, personalized customer personas based on specific contact data and interaction history.

Guidelines:
- Analyze the specific contact's role, company, and communication patterns
- Identify unique decision-making style based on their job function and seniority
- Assess engagement level from actual interaction history and response patterns
- Provide specific, actionable insights tailored to this individual
- Base analysis on real data points, not generic assumptions
- Differentiate between contacts - each persona should be unique

Format your response as JSON with detailed, specific content:
{
  "communication_style": "how this specific person communicates",
  "decision_making": "their decision-making process and authority",
  "motivations": ["motivation 1", "motivation 2", "motivation 3"],
  "concerns": ["concern 1", "concern 2", "concern 3"],
  "engagement_level": "high|medium|low",
  "preferred_approach": "sales approach tailored to this individual",
  "key_insights": ["insight 1", "insight 2", "insight 3"]
}

Make each field specific to the individual contact. Avoid generic responses."""


def query_text(contact: Contact) -> str:
    parts = [contact.job_title or "professional"]
    if contact.department:
        parts.append(f"in {contact.department}")
    if contact.company:
        parts.append(f"at {contact.company}")
    parts.append(f"contact {contact.full_name} with {contact.interaction_count} interactions")
    return " ".join(parts)


def build_user_prompt(
    contact: Contact,
    interactions: Sequence[Interaction],
    deals: Sequence[Deal],
    similar: List[SimilarityResult],
) -> str:
    recent = "\n".join(
        f"- {i.type} ({i.date.date().isoformat() if i.date else 'unknown date'}): "
        f"{i.notes or 'No notes'} | Outcome: {i.outcome or 'Unknown'} | "
        f"Duration: {i.duration if i.duration is not None else 'Unknown'} min"
        for i in list(interactions)[-RECENT_INTERACTIONS:]
    ) or "No interactions recorded"

    deal_history = ""
    if deals:
        deal_history = "\n\nDeal History:\n" + "\n".join(
            f"- {money(d.value)} deal in {d.stage} stage ({d.close_reason or 'ongoing'})"
            for d in list(deals)[-RECENT_DEALS:]
        )

    patterns = ""
    if similar:
        patterns = "\n\nSimilar customer patterns:\n" + "\n".join(
            f"- {i.metadata.get('interaction_type')} interaction in {i.metadata.get('industry')} "
            f"({i.metadata.get('outcome')})"
            for i in similar
        )

    last_contact = contact.last_contact_date.date().isoformat() if contact.last_contact_date else "Never"
    return (
        "Analyze this specific customer and create a detailed, personalized persona:\n\n"
        f"Customer: {contact.full_name}\n"
        f"Company: {contact.company or 'Unknown'}\n"
        f"Industry: {contact.industry or 'Unknown'}\n"
        f"Job Title: {contact.job_title or 'Unknown'}\n"
        f"Department: {contact.department or 'Unknown'}\n"
        f"Status: {contact.status or 'Unknown'}\n"
        f"Lead Source: {contact.lead_source or 'Unknown'}\n"
        f"Priority: {contact.priority or 'Unknown'}\n"
        f"Preferred Contact Method: {contact.preferred_contact_method or 'email'}\n"
        f"Timezone: {contact.timezone or 'UTC'}\n\n"
        f"Recent Interactions ({len(interactions)} total):\n{recent}{deal_history}\n\n"
        f"Contact Notes: {contact.notes or 'No notes available'}\n"
        f"Tags: {', '.join(contact.tags) or 'None'}\n"
        f"Last Contact: {last_contact}{patterns}\n\n"
        "Make the analysis specific to this individual contact, not generic."
    )


def screen_text(contact: Contact, interactions: Sequence[Interaction]) -> str:
    return free_text(contact.notes, *(i.notes for i in list(interactions)[-RECENT_INTERACTIONS:]))


class PersonaBuilderAgent(FeatureAgent):
    feature = Feature.PERSONA_BUILDER
    payload_model = PersonaPayload

    def default_payload(self, content: str) -> PersonaPayload:
        return PersonaPayload(
            communication_style="analytical",
            decision_making="deliberate",
            motivations=["Business growth", "Cost efficiency"],
            concerns=["Budget constraints", "Implementation complexity"],
            engagement_level="medium",
            preferred_approach="Provide detailed information and case studies",
            key_insights=["Needs more data to make decisions"],
        )

    async def build(
        self,
        contact: Contact,
        interactions: Sequence[Interaction] = (),
        deals: Sequence[Deal] = (),
        user_id: Optional[str] = None,
    ) -> AgentResult:
        similar = await self.retrieve(
            CollectionName.INTERACTIONS,
            query_text(contact),
            TOP_K,
            {"industry": contact.industry},
        )
        return await self.run(
            SYSTEM_PROMPT,
            build_user_prompt(contact, interactions, deals, similar),
            similar,
            user_id=user_id,
            entity_id=contact.id,
            max_tokens=MAX_TOKENS,
            screen_text=screen_text(contact, interactions),
        )
