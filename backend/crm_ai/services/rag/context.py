"""
Flatten CRM records into indexable text plus filterable metadata.

Each record type has a fixed-field template (what gets embedded) and a
parallel metadata map (what queries can filter on, e.g. ``industry``).
"""
from datetime import datetime, timezone
from typing import Any, Dict

from crm_ai.models.crm import Deal, Interaction, Objection

INTERACTION_SUMMARY_CHARS = 500
OBJECTION_SUMMARY_CHARS = 300


def _indexed_at() -> str:
    return datetime.now(timezone.utc).isoformat()


def _money(value: float) -> str:
    return f"${value:,.0f}"


# ============================================================================
# DEALS
# ============================================================================

def deal_context(deal: Deal) -> str:
    interactions = " ".join(
        f"{i.type}: {i.notes or ''}".strip() for i in deal.interactions
    )[:INTERACTION_SUMMARY_CHARS]
    objections = " ".join(
        f"{o.category}: {o.text}" for o in deal.objections
    )[:OBJECTION_SUMMARY_CHARS]
    duration = deal.duration_days

    lines = [
        f"Company: {deal.company or 'Unknown Company'}",
        f"Industry: {deal.industry or 'Unknown Industry'}",
        f"Deal Value: {_money(deal.value)}",
        f"Stage: {deal.stage}",
        f"Outcome: {deal.stage if deal.is_closed else 'open'}",
        f"Duration: {f'{duration} days' if duration is not None else 'unknown'}",
        f"Notes: {deal.notes or ''}",
        f"Interactions: {interactions}",
        f"Objections: {objections}",
        f"Close Reason: {deal.close_reason or ''}",
    ]
    return "\n".join(lines)


def deal_metadata(deal: Deal) -> Dict[str, Any]:
    return {
        "deal_id": deal.id,
        "title": deal.title or "",
        "value": deal.value,
        "industry": deal.industry or "unknown",
        "company": deal.company or "unknown",
        "outcome": deal.stage if deal.is_closed else "open",
        "duration": deal.duration_days,
        "stage": deal.stage,
        "objection_count": len(deal.objections),
        "interaction_count": len(deal.interactions),
        "indexed_at": _indexed_at(),
        "type": "deal",
    }


# ============================================================================
# OBJECTIONS
# ============================================================================

def objection_context(objection: Objection) -> str:
    lines = [
        f"Objection: {objection.text}",
        f"Category: {objection.category}",
        f"Severity: {objection.severity}",
        f"Context: {objection.context or ''}",
        f"Deal Stage: {objection.deal_stage or 'unknown'}",
        f"Industry: {objection.industry or 'unknown'}",
        f"Deal Value: {_money(objection.deal_value or 0)}",
        f"Resolution: {objection.resolution or ''}",
        f"Actual Response: {objection.actual_response or ''}",
        f"Outcome: {objection.outcome}",
        f"Impact on Deal: {objection.impact_on_deal}",
    ]
    return "\n".join(lines)


def objection_metadata(objection: Objection) -> Dict[str, Any]:
    return {
        "objection_id": objection.id,
        "category": objection.category,
        "severity": objection.severity,
        "outcome": objection.outcome,
        "deal_stage": objection.deal_stage or "unknown",
        "deal_id": objection.deal_id,
        "industry": objection.industry or "unknown",
        "deal_value": objection.deal_value or 0,
        "impact_on_deal": objection.impact_on_deal,
        "indexed_at": _indexed_at(),
        "type": "objection",
    }


# ============================================================================
# INTERACTIONS
# ============================================================================

def interaction_context(interaction: Interaction) -> str:
    contact = interaction.contact
    lines = [
        f"Type: {interaction.type}",
        f"Company: {(contact.company if contact else None) or 'Unknown Company'}",
        f"Industry: {(contact.industry if contact else None) or 'unknown'}",
        f"Duration: {interaction.duration if interaction.duration is not None else 'unknown'} minutes",
        f"Notes: {interaction.notes or ''}",
        f"Outcome: {interaction.outcome or 'unknown'}",
        f"Next Steps: {interaction.next_steps or ''}",
        f"Tags: {', '.join(interaction.tags)}",
    ]
    return "\n".join(lines)


def interaction_metadata(interaction: Interaction) -> Dict[str, Any]:
    contact = interaction.contact
    return {
        "interaction_id": interaction.id,
        "interaction_type": interaction.type,
        "industry": (contact.industry if contact else None) or "unknown",
        "company": (contact.company if contact else None) or "unknown",
        "duration": interaction.duration or 0,
        "outcome": interaction.outcome or "unknown",
        "contact_id": interaction.contact_id or (contact.id if contact else None),
        "deal_id": interaction.deal_id,
        "indexed_at": _indexed_at(),
        "type": "interaction",
    }
