"""Pydantic models for CRM entities read by the AI pipeline."""

from .crm import (
    CLOSED_STAGES,
    Contact,
    Deal,
    Interaction,
    Objection,
)

__all__ = ["CLOSED_STAGES", "Contact", "Deal", "Interaction", "Objection"]
