"""
Action Schema Set — the structural contract for ``details`` per action type.

One model per type. Fields listed in ``CONTENT_FIELDS`` start null and are
filled by the composition workflow; execution never runs while a required
content field is null.
"""

from typing import ClassVar, List, Literal, Optional, Tuple

from pydantic import EmailStr, Field

from action_pipeline.models.base import WireModel

SCHEDULED_FOR_PATTERN = r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$"
DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"


class ActionDetails(WireModel):
    CONTENT_FIELDS: ClassVar[Tuple[str, ...]] = ()

    def required_content_fields(self) -> Tuple[str, ...]:
        return self.CONTENT_FIELDS


class EmailAttachment(WireModel):
    id: str
    filename: str
    file_path: str
    content_type: str          # MIME type
    size: int = Field(ge=0)    # bytes


class EmailDetails(ActionDetails):
    CONTENT_FIELDS: ClassVar[Tuple[str, ...]] = ("subject", "body")

    to: List[EmailStr] = Field(min_length=1)
    cc: Optional[List[EmailStr]] = None
    bcc: Optional[List[EmailStr]] = None
    scheduled_for: Optional[str] = Field(default=None, pattern=SCHEDULED_FOR_PATTERN)
    reply_to_message_id: Optional[str] = None
    thread_id: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None               # HTML
    attachments: Optional[List[EmailAttachment]] = None
    priority: Optional[Literal["low", "normal", "high"]] = None


class CallDetails(ActionDetails):
    CONTENT_FIELDS: ClassVar[Tuple[str, ...]] = ("purpose",)

    contact_email: EmailStr
    scheduled_for: Optional[str] = Field(default=None, pattern=SCHEDULED_FOR_PATTERN)
    purpose: Optional[str] = None            # talking points


class TaskDetails(ActionDetails):
    CONTENT_FIELDS: ClassVar[Tuple[str, ...]] = ("description",)

    title: str = Field(min_length=1, max_length=100)
    due_date: str = Field(pattern=DATE_PATTERN)
    description: Optional[str] = None


class LinkedInMessageDetails(ActionDetails):
    CONTENT_FIELDS: ClassVar[Tuple[str, ...]] = ("message",)

    contact_email: EmailStr
    scheduled_for: Optional[str] = Field(default=None, pattern=SCHEDULED_FOR_PATTERN)
    message: Optional[str] = None


class MeetingDetails(ActionDetails):
    CONTENT_FIELDS: ClassVar[Tuple[str, ...]] = ("agenda",)

    mode: Literal["create", "update", "cancel"] = "create"
    existing_calendar_activity_id: Optional[str] = None
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    attendees: Optional[List[EmailStr]] = None
    duration: Optional[int] = Field(default=None, ge=15, le=480)    # minutes
    scheduled_for: Optional[str] = Field(default=None, pattern=SCHEDULED_FOR_PATTERN)
    location: Optional[str] = Field(default=None, min_length=1, max_length=500)
    agenda: Optional[str] = None

    def required_content_fields(self) -> Tuple[str, ...]:
        # A cancellation carries no agenda
        if self.mode == "cancel":
            return ()
        return self.CONTENT_FIELDS


class LookupDetails(ActionDetails):
    CONTENT_FIELDS: ClassVar[Tuple[str, ...]] = ("answer",)

    query: str = Field(min_length=5, max_length=300)
    answer: Optional[str] = None
    sources: Optional[List[str]] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=1)


class NoActionDetails(ActionDetails):
    reason: Optional[str] = None
    next_review_date: str = Field(pattern=DATE_PATTERN)


class UpdatePipelineStageDetails(ActionDetails):
    target_stage_id: str = Field(min_length=1)
    target_stage_name: Optional[str] = None


class AddContactDetails(ActionDetails):
    CONTENT_FIELDS: ClassVar[Tuple[str, ...]] = ("rationale",)

    contact_first_name: str = Field(min_length=1, max_length=100)
    contact_last_name: str = Field(min_length=1, max_length=100)
    contact_email: Optional[EmailStr] = None
    contact_title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    suggested_role: str = Field(min_length=1)
    rationale: Optional[str] = None
    linked_in_profile: Optional[str] = None
    background_info: Optional[str] = None
    source_urls: Optional[List[str]] = None

