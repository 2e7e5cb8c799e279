"""Pipeline Context — the read-only bundle passed to every stage."""

from datetime import datetime
from typing import Iterable, List, Optional, Set

from action_pipeline.models.base import WireModel


class OpportunitySnapshot(WireModel):
    id: str
    name: str = ""
    organization_id: Optional[str] = None
    pipeline_id: Optional[str] = None
    stage_id: Optional[str] = None
    stage_name: Optional[str] = None
    amount: Optional[float] = None


class ContactProfile(WireModel):
    """A contact on the opportunity, with intelligence derived upstream."""

    id: str
    email: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    title: Optional[str] = None
    role: Optional[str] = None              # latest role assignment
    engagement: Optional[float] = None      # engagement score
    relationship: Optional[str] = None      # relationship narrative

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class RecentActivity(WireModel):
    """One entry in the bounded window of recent activities."""

    id: str
    type: str = "EMAIL"
    title: str = ""
    date: datetime
    summary: Optional[str] = None           # AI-generated summary, if any
    message_id: Optional[str] = None        # email activities only
    thread_id: Optional[str] = None
    subject: Optional[str] = None


class PipelineContext(WireModel):
    opportunity: OpportunitySnapshot
    contacts: List[ContactProfile] = []
    recent_activities: List[RecentActivity] = []

    def valid_contact_emails(self) -> Set[str]:
        return {c.email.lower() for c in self.contacts if c.email}

    def valid_activity_ids(self) -> Set[str]:
        return {a.id for a in self.recent_activities}

    def contact_by_email(self, email: Optional[str]) -> Optional[ContactProfile]:
        if not email:
            return None
        wanted = email.lower()
        for contact in self.contacts:
            if contact.email and contact.email.lower() == wanted:
                return contact
        return None

    def find_message(self, reference: str) -> Optional[RecentActivity]:
        """Find an email activity by message id, then by record id."""
        for activity in self.recent_activities:
            if activity.message_id and activity.message_id == reference:
                return activity
        for activity in self.recent_activities:
            if activity.message_id and activity.id == reference:
                return activity
        return None

    def has_thread(self, thread_id: str) -> bool:
        return any(a.thread_id == thread_id for a in self.recent_activities)

    def activities_for(self, activity_ids: Iterable[str]) -> List[RecentActivity]:
        wanted = set(activity_ids)
        return sorted(
            (a for a in self.recent_activities if a.id in wanted),
            key=lambda a: a.date,
        )
