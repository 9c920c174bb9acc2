"""
Tests for the four feature agents.

The orchestrator is real (in-memory stores, FakeLLMClient); retrieval runs
against a vector store seeded with a few historical records.
"""
import json

import pytest

from crm_ai.models.crm import Contact, Deal, Interaction, Objection
from crm_ai.services.ai.agents import (
    DealCoachAgent,
    ObjectionHandlerAgent,
    PersonaBuilderAgent,
    WinLossExplainerAgent,
)
from crm_ai.services.ai.agents.base import strip_code_fence
from crm_ai.services.ai.features import DealCoachPayload, Feature, ObjectionResponsePayload, PersonaPayload
from crm_ai.services.ai.orchestration import AIOrchestrator
from crm_ai.services.ai.errors import QuotaExceededError
from crm_ai.services.rag.vector_store import CollectionName

from conftest import FakeLLMClient


def make_orchestrator(llm, content_filter, quota_tracker, response_cache, audit_repository, vector_store):
    return AIOrchestrator(
        llm_client=llm,
        content_filter=content_filter,
        quota_tracker=quota_tracker,
        response_cache=response_cache,
        audit_repository=audit_repository,
        vector_store=vector_store,
    )


@pytest.fixture
def agent_deps(content_filter, quota_tracker, response_cache, audit_repository, vector_store):
    """Build an orchestrator around a given LLM stub."""

    def build(llm):
        return make_orchestrator(llm, content_filter, quota_tracker, response_cache, audit_repository, vector_store)

    return build


@pytest.fixture
def acme():
    return Contact(
        id="c-1",
        first_name="Dana",
        last_name="Lee",
        company="Acme Corp",
        industry="saas",
        job_title="VP Operations",
        interaction_count=4,
    )


@pytest.fixture
def open_deal(acme):
    return Deal(
        id="deal-1",
        title="Acme platform rollout",
        value=48000,
        stage="negotiation",
        contact=acme,
        notes="Budget approved pending procurement review",
        interactions=[Interaction(id="i-1", type="call", notes="Walked through pricing tiers")],
        objections=[Objection(id="o-1", text="Price is above our budget", category="price")],
    )


async def seed_history(vector_store):
    await vector_store.upsert(
        CollectionName.DEALS, "won-saas", "saas company deal closed_won platform pricing",
        {"industry": "saas", "outcome": "closed_won", "value": 40000, "duration": 30},
    )
    await vector_store.upsert(
        CollectionName.DEALS, "lost-saas", "saas company deal closed_lost platform pricing",
        {"industry": "saas", "outcome": "closed_lost", "value": 20000, "duration": 90},
    )
    await vector_store.upsert(
        CollectionName.DEALS, "won-retail", "retail company deal closed_won",
        {"industry": "retail", "outcome": "closed_won", "value": 10000, "duration": 12},
    )
    await vector_store.upsert(
        CollectionName.OBJECTIONS, "obj-price", "Objection: too expensive\nCategory: price",
        {"category": "price", "outcome": "resolved"},
    )
    await vector_store.upsert(
        CollectionName.OBJECTIONS, "obj-timing", "Objection: not this quarter\nCategory: timing",
        {"category": "timing", "outcome": "resolved"},
    )


def test_strip_code_fence():
    assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fence('{"a": 1}') == '{"a": 1}'
    assert strip_code_fence("") == ""


class TestDealCoach:
    @pytest.mark.asyncio
    async def test_parses_suggestions_and_filters_retrieval(self, agent_deps, vector_store, open_deal):
        await seed_history(vector_store)
        suggestions = [
            {"action": "Book a pricing call with procurement", "reasoning": "Budget is approved", "priority": "high", "timeline": "this week"},
            {"action": "Share the saas case study", "reasoning": "Social proof", "priority": "medium", "timeline": "tomorrow"},
        ]
        llm = FakeLLMClient(content=json.dumps(suggestions))
        agent = DealCoachAgent(orchestrator=agent_deps(llm))

        result = await agent.coach(open_deal, user_id="u1")

        assert result.feature == Feature.DEAL_COACH
        assert result.parsed and not result.fallback
        assert isinstance(result.payload, DealCoachPayload)
        assert [s.priority for s in result.payload.suggestions] == ["high", "medium"]
        assert [r.id for r in result.rag_context] == ["won-saas"]
        assert llm.calls[0]["max_tokens"] == 400
        user_prompt = llm.calls[0]["messages"][1]["content"]
        assert "Acme Corp" in user_prompt
        assert "Similar successful deals" in user_prompt

    @pytest.mark.asyncio
    async def test_single_object_and_fenced_json(self, agent_deps, open_deal):
        content = '```json\n{"action": "Send revised quote", "priority": "high"}\n```'
        agent = DealCoachAgent(orchestrator=agent_deps(FakeLLMClient(content=content)))
        result = await agent.coach(open_deal)
        assert result.payload.suggestions[0].action == "Send revised quote"

    @pytest.mark.asyncio
    async def test_unparseable_answer_uses_default(self, agent_deps, open_deal):
        content = "Call the buyer tomorrow and confirm the procurement timeline."
        agent = DealCoachAgent(orchestrator=agent_deps(FakeLLMClient(content=content)))

        result = await agent.coach(open_deal)

        assert not result.parsed
        assert not result.fallback
        assert result.payload.suggestions[0].action == content
        assert result.payload.suggestions[0].timeline == "within 1 week"

    @pytest.mark.asyncio
    async def test_llm_failure_gives_fallback_payload(self, agent_deps, failing_llm, open_deal):
        agent = DealCoachAgent(orchestrator=agent_deps(failing_llm))
        result = await agent.coach(open_deal)

        assert result.fallback
        assert result.confidence == 25
        assert result.payload.suggestions[0].action == "Review and update deal details"

    @pytest.mark.asyncio
    async def test_retrieval_failure_is_not_fatal(self, agent_deps, open_deal):
        class BrokenStore:
            async def query(self, *args, **kwargs):
                raise RuntimeError("index unavailable")

        llm = FakeLLMClient(content='[{"action": "Follow up"}]')
        agent = DealCoachAgent(orchestrator=agent_deps(llm), vector_store=BrokenStore())
        result = await agent.coach(open_deal)

        assert result.rag_context == []
        assert result.payload.suggestions[0].action == "Follow up"

    @pytest.mark.asyncio
    async def test_quota_error_propagates(self, agent_deps, open_deal, quota_tracker):
        quota_tracker.daily_limit = 0
        agent = DealCoachAgent(orchestrator=agent_deps(FakeLLMClient()))
        with pytest.raises(QuotaExceededError):
            await agent.coach(open_deal, user_id="u1")


    @pytest.mark.asyncio
    async def test_sales_idiom_in_notes_reaches_llm(self, agent_deps, open_deal):
        deal = open_deal.model_copy(update={"notes": "I will shoot over the revised proposal on Friday"})
        llm = FakeLLMClient(content="[]")
        agent = DealCoachAgent(orchestrator=agent_deps(llm))

        result = await agent.coach(deal)

        assert not result.fallback and not result.filtered
        assert len(llm.calls) == 1

    @pytest.mark.asyncio
    async def test_threat_in_stored_objection_is_rejected(self, agent_deps, open_deal):
        deal = open_deal.model_copy(
            update={"objections": [Objection(id="o-2", text="I want you all to die", category="other")]}
        )
        llm = FakeLLMClient()
        agent = DealCoachAgent(orchestrator=agent_deps(llm))

        result = await agent.coach(deal)

        assert llm.calls == []
        assert result.fallback and result.filtered


class TestObjectionHandler:
    @pytest.mark.asyncio
    async def test_camel_case_answer(self, agent_deps, vector_store, open_deal):
        await seed_history(vector_store)
        content = json.dumps({
            "response": "Let's compare total cost of ownership over three years.",
            "approach": "logical",
            "followUp": "Which budget line would this come from?",
            "tips": ["Anchor on ROI"],
        })
        llm = FakeLLMClient(content=content)
        agent = ObjectionHandlerAgent(orchestrator=agent_deps(llm))

        result = await agent.handle(
            "Your price is too expensive for our budget", deal=open_deal, category="price", severity="high"
        )

        assert isinstance(result.payload, ObjectionResponsePayload)
        assert result.payload.follow_up == "Which budget line would this come from?"
        assert [r.id for r in result.rag_context] == ["obj-price"]
        assert llm.calls[0]["max_tokens"] == 350

    @pytest.mark.asyncio
    async def test_raw_text_becomes_response(self, agent_deps):
        content = "I hear you on cost. Most teams recover it within two quarters."
        agent = ObjectionHandlerAgent(orchestrator=agent_deps(FakeLLMClient(content=content)))
        result = await agent.handle("The pricing is higher than the competitor")
        assert not result.parsed
        assert result.payload.response == content

    @pytest.mark.asyncio
    async def test_rejected_objection(self, agent_deps):
        llm = FakeLLMClient()
        agent = ObjectionHandlerAgent(orchestrator=agent_deps(llm))
        result = await agent.handle("You are all idiots and your product is terrible")

        assert llm.calls == []
        assert result.fallback and result.filtered
        assert result.payload.approach == "clarification"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "   ", "x" * 1001])
    async def test_invalid_text(self, agent_deps, text):
        agent = ObjectionHandlerAgent(orchestrator=agent_deps(FakeLLMClient()))
        with pytest.raises(ValueError):
            await agent.handle(text)


class TestPersonaBuilder:
    @pytest.mark.asyncio
    async def test_builds_persona(self, agent_deps, vector_store, acme):
        await vector_store.upsert(
            CollectionName.INTERACTIONS, "int-saas", "call about onboarding",
            {"industry": "saas", "interaction_type": "call", "outcome": "positive"},
        )
        await vector_store.upsert(
            CollectionName.INTERACTIONS, "int-retail", "call about onboarding",
            {"industry": "retail", "interaction_type": "call", "outcome": "neutral"},
        )
        content = json.dumps({
            "communicationStyle": "direct",
            "decisionMaking": "consensus with finance",
            "motivations": ["efficiency"],
            "concerns": ["migration effort"],
            "engagementLevel": "high",
            "preferredApproach": "data-backed demos",
            "keyInsights": ["responds fast to email"],
        })
        llm = FakeLLMClient(content=content)
        agent = PersonaBuilderAgent(orchestrator=agent_deps(llm))
        interactions = [Interaction(id="i-9", type="email", notes="Asked for security documentation")]

        result = await agent.build(acme, interactions=interactions)

        assert isinstance(result.payload, PersonaPayload)
        assert result.payload.engagement_level == "high"
        assert [r.id for r in result.rag_context] == ["int-saas"]
        assert llm.calls[0]["max_tokens"] == 450
        assert "Dana Lee" in llm.calls[0]["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_invalid_schema_uses_default(self, agent_deps, acme):
        agent = PersonaBuilderAgent(orchestrator=agent_deps(FakeLLMClient(content='{"motivations": "not a list"}')))
        result = await agent.build(acme)
        assert not result.parsed
        assert result.payload.decision_making == "deliberate"


    @pytest.mark.asyncio
    async def test_long_interaction_history_is_not_rejected(self, agent_deps, acme):
        notes = [
            "Discovery call with the operations team. They walked us through the current ticket "
            "routing process, which relies on three spreadsheets and a shared inbox. Main pain points "
            "are missed handoffs between regions and no reporting on response times. Dana asked for a "
            "rough implementation timeline and whether the platform supports single sign-on. "
            "Agreed to send a summary and schedule a technical deep dive next week.",
            "Technical deep dive with their IT lead. Covered the integration with their existing "
            "identity provider, data residency in the EU region, and the audit log export. IT lead "
            "was positive but wants to see the security questionnaire before the next step. Dana "
            "joined for the last fifteen minutes and asked about onboarding support for new hires.",
            "Pricing discussion over email. Dana shared that the budget for this quarter is fixed "
            "and asked whether we can phase the rollout across two quarters. Proposed starting with "
            "the operations team of forty seats and expanding to customer success after review. "
            "She will take the proposal to the finance committee at the end of the month.",
            "Follow-up meeting with Dana and the finance manager. Walked through the ROI model using "
            "their own ticket volumes. Finance asked for references from two companies of similar "
            "size in the same industry. Dana mentioned a competitor demo scheduled for next week and "
            "wants a side-by-side comparison of reporting capabilities before deciding.",
            "Reference call arranged with an existing customer in their industry. Dana said the call "
            "answered most of her questions about rollout effort and training. Remaining concern is "
            "the contract length; they prefer a one-year term with an option to renew. She expects "
            "a decision from the committee within two weeks and asked for the final order form.",
        ]
        interactions = [
            Interaction(id=f"i-{n}", type="meeting", notes=note, outcome="positive", duration=45)
            for n, note in enumerate(notes)
        ]
        llm = FakeLLMClient(content="{}")
        agent = PersonaBuilderAgent(orchestrator=agent_deps(llm))

        result = await agent.build(acme, interactions=interactions)

        assert len(llm.calls[0]["messages"][1]["content"]) > 2000
        assert not result.fallback and not result.filtered
        assert len(llm.calls) == 1


class TestWinLossExplainer:
    @pytest.mark.asyncio
    async def test_explains_closed_deal(self, agent_deps, vector_store, open_deal):
        await seed_history(vector_store)
        lost = open_deal.model_copy(update={"stage": "closed_lost", "close_reason": "Chose competitor"})
        content = json.dumps({
            "outcome": "lost",
            "primaryFactors": ["price gap"],
            "keyLessons": ["qualify budget earlier"],
            "recommendations": ["lead with ROI"],
        })
        llm = FakeLLMClient(content=content)
        agent = WinLossExplainerAgent(orchestrator=agent_deps(llm))

        result = await agent.explain(lost)

        assert result.payload.outcome == "lost"
        assert result.payload.primary_factors == ["price gap"]
        assert [r.id for r in result.rag_context] == ["lost-saas"]
        prompt = llm.calls[0]["messages"][1]["content"]
        assert "why this deal was lost" in prompt
        assert "Interactions (1 total)" in prompt

    @pytest.mark.asyncio
    async def test_open_deal_is_rejected(self, agent_deps, open_deal):
        llm = FakeLLMClient()
        agent = WinLossExplainerAgent(orchestrator=agent_deps(llm))
        with pytest.raises(ValueError, match="closed deals"):
            await agent.explain(open_deal)
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_caps_interactions(self, agent_deps, open_deal):
        won = open_deal.model_copy(update={"stage": "closed_won"})
        interactions = [Interaction(id=f"i-{n}", type="call", notes=f"Check-in {n}") for n in range(8)]
        llm = FakeLLMClient(content="{}")
        agent = WinLossExplainerAgent(orchestrator=agent_deps(llm))

        await agent.explain(won, interactions=interactions)
        assert "Interactions (5 total)" in llm.calls[0]["messages"][1]["content"]
