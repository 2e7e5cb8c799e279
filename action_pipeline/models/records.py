"""Domain store records — the documents the pipeline reads and writes."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class ActivityType(str, Enum):
    CALL = "CALL"
    LINKEDIN = "LINKEDIN"
    TASK = "TASK"


class Opportunity(BaseModel):
    id: str
    name: str = ""
    organization_id: Optional[str] = None
    pipeline_id: Optional[str] = None
    stage_id: Optional[str] = None
    amount: Optional[float] = None


class PipelineStage(BaseModel):
    id: str
    pipeline_id: str
    name: str
    order: int = 0


class Contact(BaseModel):
    id: str
    first_name: str
    last_name: str
    email: Optional[str] = None
    title: Optional[str] = None
    organization_id: Optional[str] = None
    opportunity_ids: List[str] = []
    role: Optional[str] = None
    linked_in_profile: Optional[str] = None
    background_info: Optional[str] = None
    source_urls: List[str] = []


class Activity(BaseModel):
    """Generic activity: scheduled call, LinkedIn to-do, task."""

    id: str
    type: ActivityType
    opportunity_id: str
    organization_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    date: datetime
    status: str                         # scheduled | to_do | completed
    contact_ids: List[str] = []
    metadata: dict = {}                 # provenance: source_action, source_action_type


class EmailActivity(BaseModel):
    id: str
    opportunity_id: str
    organization_id: Optional[str] = None
    message_id: str
    thread_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    to: List[str] = []
    cc: List[str] = []
    bcc: List[str] = []
    attachments: List[dict] = []
    status: str = "received"            # received | queued | scheduled | sent
    scheduled_for: Optional[datetime] = None
    metadata: dict = {}


class CalendarActivity(BaseModel):
    id: str
    opportunity_id: str
    organization_id: Optional[str] = None
    title: str
    attendees: List[str] = []
    start_time: datetime
    duration_minutes: int
    location: Optional[str] = None
    agenda: Optional[str] = None
    status: str = "scheduled"           # scheduled | cancelled
    metadata: dict = {}
