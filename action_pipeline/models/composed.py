"""Composed content — per-type output contract of the composition workflow."""

from typing import List, Optional

from pydantic import EmailStr, Field

from action_pipeline.models.base import WireModel


class ComposedEmail(WireModel):
    subject: str = Field(min_length=1, max_length=200)
    body: str = Field(min_length=10, max_length=5000)


class ComposedCall(WireModel):
    purpose: str = Field(min_length=10, max_length=2000)


class ComposedTask(WireModel):
    title: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=5, max_length=1000)


class ComposedLinkedInMessage(WireModel):
    message: str = Field(min_length=10, max_length=2000)


class ComposedMeeting(WireModel):
    agenda: str = Field(min_length=10, max_length=2000)


class ComposedLookup(WireModel):
    answer: str = Field(min_length=3, max_length=5000)
    sources: Optional[List[str]] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=1)


class ComposedContactResearch(WireModel):
    rationale: str = Field(min_length=20, max_length=3000)
    contact_email: Optional[EmailStr] = None
    contact_title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    linked_in_profile: Optional[str] = None
    background_info: Optional[str] = Field(default=None, min_length=1, max_length=2000)
    source_urls: Optional[List[str]] = None

