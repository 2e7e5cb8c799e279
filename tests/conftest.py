"""Shared fixtures: a seeded document store, a pipeline context, and a fake composition workflow."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from action_pipeline.audit.store import ActionAuditStore
from action_pipeline.composition.workflow import CompositionError
from action_pipeline.config.settings import PipelineSettings
from action_pipeline.models.context import (
    ContactProfile,
    OpportunitySnapshot,
    PipelineContext,
    RecentActivity,
)
from action_pipeline.models.records import (
    CalendarActivity,
    Contact,
    EmailActivity,
    Opportunity,
    PipelineStage,
)
from action_pipeline.pipeline.orchestrator import ActionPipeline
from action_pipeline.registry.registry import build_default_registry
from action_pipeline.store.document_store import DocumentStore

FIXED_NOW = datetime(2025, 3, 10, 12, 0, 0, 750000, tzinfo=timezone.utc)

DEFAULT_RESPONSES = {
    "email": {
        "subject": "Volume pricing for Acme",
        "body": "<p>Hi Dana, here is the volume pricing we discussed.</p>",
    },
    "call_purpose": {"purpose": "Walk Dana through the revised volume pricing."},
    "task": {
        "title": "Research: Acme funding history",
        "description": "Check press releases for Acme funding rounds.",
    },
    "linkedin_message": {"message": "Great speaking with you last week, Dana!"},
    "meeting_agenda": {"agenda": "1. Goals 2. Pricing review 3. Next steps"},
    "lookup": {
        "answer": "Acme raised a Series B in January.",
        "sources": ["https://news.example.com/acme-series-b"],
        "confidence": 0.9,
    },
    "contact_research": {
        "rationale": "Signs off on every purchase above the budget threshold.",
        "contactTitle": "CFO",
    },
}


class FakeWorkflow:
    """In-process stand-in for the composition workflow service."""

    def __init__(self, responses=None):
        self.responses = dict(responses or DEFAULT_RESPONSES)
        self.failing = set()
        self.delay = 0.0
        self.requests = []

    async def compose(self, request):
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        content_type = request.context.content_type
        if content_type in self.failing:
            raise CompositionError(f"{content_type} composition unavailable")
        return dict(self.responses.get(content_type, {}))

    def content_types(self):
        return [r.context.content_type for r in self.requests]


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def settings():
    return PipelineSettings(
        composition_workflow_url="http://workflow.internal/compose",
        log_json=False,
    )


@pytest.fixture
def store():
    ds = DocumentStore(":memory:", timeout_seconds=2.0)
    ds.add_opportunity(Opportunity(
        id="opp_1",
        name="Acme Expansion",
        organization_id="org_1",
        pipeline_id="pipe_1",
        stage_id="stage_discovery",
        amount=48000.0,
    ))
    ds.add_pipeline_stage(PipelineStage(id="stage_discovery", pipeline_id="pipe_1", name="Discovery", order=1))
    ds.add_pipeline_stage(PipelineStage(id="stage_proposal", pipeline_id="pipe_1", name="Proposal", order=2))
    ds.add_pipeline_stage(PipelineStage(id="stage_foreign", pipeline_id="pipe_2", name="Closed Won", order=5))
    ds.add_contact(Contact(
        id="contact_dana", first_name="Dana", last_name="Whitfield",
        email="dana@acme.com", organization_id="org_1", opportunity_ids=["opp_1"],
    ))
    ds.add_contact(Contact(
        id="contact_lee", first_name="Lee", last_name="Park",
        email="lee@acme.com", organization_id="org_1", opportunity_ids=["opp_1"],
    ))
    ds.add_email_activity(EmailActivity(
        id="email_stored_1",
        opportunity_id="opp_1",
        organization_id="org_1",
        message_id="<msg-2@acme.com>",
        thread_id="thread-acme-2",
        subject="Re: rollout",
    ))
    ds.add_calendar_activity(CalendarActivity(
        id="meeting_existing",
        opportunity_id="opp_1",
        organization_id="org_1",
        title="Kickoff",
        attendees=["dana@acme.com"],
        start_time=FIXED_NOW + timedelta(days=2),
        duration_minutes=30,
        metadata={"created_by": "user_1"},
    ))
    yield ds
    ds.close()


@pytest.fixture
def context():
    return PipelineContext(
        opportunity=OpportunitySnapshot(
            id="opp_1",
            name="Acme Expansion",
            organization_id="org_1",
            pipeline_id="pipe_1",
            stage_id="stage_discovery",
            stage_name="Discovery",
            amount=48000.0,
        ),
        contacts=[
            ContactProfile(
                id="contact_dana", email="dana@acme.com", first_name="Dana",
                last_name="Whitfield", title="VP Operations", role="Champion", engagement=0.8,
            ),
            ContactProfile(
                id="contact_lee", email="lee@acme.com", first_name="Lee",
                last_name="Park", title="IT Director",
            ),
        ],
        recent_activities=[
            RecentActivity(
                id="act_email_1",
                type="EMAIL",
                title="Pricing question",
                date=FIXED_NOW - timedelta(days=2),
                summary="Dana asked for volume pricing.",
                message_id="<msg-1@acme.com>",
                thread_id="thread-acme-1",
                subject="Pricing",
            ),
            RecentActivity(
                id="act_call_1",
                type="CALL",
                title="Discovery call",
                date=FIXED_NOW - timedelta(days=5),
                summary="Discussed rollout timeline.",
            ),
        ],
    )


@pytest.fixture
def workflow():
    return FakeWorkflow()


@pytest.fixture
def audit_store():
    audit = ActionAuditStore(db_path=":memory:")
    yield audit
    audit.close()


@pytest.fixture
def registry(settings, store, workflow, clock):
    return build_default_registry(settings, store, workflow, clock=clock)


@pytest.fixture
def pipeline(registry, store, settings, audit_store, clock):
    return ActionPipeline(registry, store, settings, audit_store=audit_store, clock=clock)
