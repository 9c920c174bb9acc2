"""
CRM entity models, as read from the entity store.

Only the fields the AI pipeline consumes are modelled; related
sub-documents (contact, interactions, objections) arrive resolved.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

CLOSED_STAGES = frozenset({"closed_won", "closed_lost"})
RESOLVED_OBJECTION_OUTCOMES = frozenset({"resolved", "deal_won"})


class CRMModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class Contact(CRMModel):
    """Contact model."""
    id: str
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    company: Optional[str] = None
    industry: Optional[str] = None
    job_title: Optional[str] = None
    department: Optional[str] = None
    status: Optional[str] = None
    lead_source: Optional[str] = None
    priority: Optional[str] = None
    preferred_contact_method: Optional[str] = None
    timezone: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    last_contact_date: Optional[datetime] = None
    interaction_count: int = 0

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Interaction(CRMModel):
    """Interaction model (call, email, meeting, note...)."""
    id: str
    type: str = "other"
    contact_id: Optional[str] = None
    deal_id: Optional[str] = None
    contact: Optional[Contact] = None
    date: Optional[datetime] = None
    duration: Optional[int] = None
    notes: Optional[str] = None
    outcome: Optional[str] = None
    next_steps: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    updated_at: Optional[datetime] = None

    @property
    def has_notes(self) -> bool:
        return bool(self.notes and self.notes.strip())


class Objection(CRMModel):
    """Objection raised during a deal."""
    id: str
    text: str
    category: str = "other"
    severity: str = "medium"
    context: Optional[str] = None
    deal_stage: Optional[str] = None
    deal_id: Optional[str] = None
    deal_value: Optional[float] = None
    industry: Optional[str] = None
    is_resolved: bool = False
    resolution: Optional[str] = None
    actual_response: Optional[str] = None
    outcome: str = "unresolved"
    impact_on_deal: str = "neutral"
    updated_at: Optional[datetime] = None

    @property
    def qualifies_for_index(self) -> bool:
        return self.is_resolved and self.outcome in RESOLVED_OBJECTION_OUTCOMES


class Deal(CRMModel):
    """Deal model with its related contact, interactions and objections."""
    id: str
    title: Optional[str] = None
    value: float = 0.0
    stage: str = "lead"
    contact: Optional[Contact] = None
    notes: Optional[str] = None
    close_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    interactions: List[Interaction] = Field(default_factory=list)
    objections: List[Objection] = Field(default_factory=list)

    @property
    def is_closed(self) -> bool:
        return self.stage in CLOSED_STAGES

    @property
    def duration_days(self) -> Optional[int]:
        if self.created_at is None or self.closed_at is None:
            return None
        return (self.closed_at - self.created_at).days

    @property
    def industry(self) -> Optional[str]:
        return self.contact.industry if self.contact else None

    @property
    def company(self) -> Optional[str]:
        return self.contact.company if self.contact else None
