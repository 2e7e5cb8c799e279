"""Tests for the per-type handlers: validation rules, composition and execution."""

import asyncio
from datetime import timedelta

import pytest

from action_pipeline.composition.workflow import ActionMode
from action_pipeline.handlers.add_contact import AddContactHandler
from action_pipeline.handlers.base import ActionHandler, ValidationLookups
from action_pipeline.handlers.call import CallHandler
from action_pipeline.handlers.linkedin import LinkedInMessageHandler
from action_pipeline.handlers.lookup import LookupHandler, is_useful_answer
from action_pipeline.handlers.meeting import MeetingHandler
from action_pipeline.handlers.no_action import NoActionHandler
from action_pipeline.handlers.pipeline_stage import UpdatePipelineStageHandler
from action_pipeline.handlers.task import TaskHandler
from action_pipeline.models.action import ProposedAction
from action_pipeline.models.base import WireModel
from action_pipeline.models.composed import ComposedLookup
from action_pipeline.models.results import ExecutionOutcome, StageStatus
from action_pipeline.store.document_store import EntityNotFoundError


def _make_action(action_type: str, details: dict, **fields) -> ProposedAction:
    return ProposedAction(
        id=fields.pop("id", f"act_{action_type.lower()}"),
        type=action_type,
        opportunity_id=fields.pop("opportunity_id", "opp_1"),
        organization_id="org_1",
        details=details,
        **fields,
    )


def _validate(handler, action, context):
    lookups = ValidationLookups.from_context(context)
    return asyncio.run(handler.validate_details(action, context, lookups))


def _validate_twice(handler, action, context):
    first = _validate(handler, action, context)
    second = _validate(handler, action.model_copy(update={"details": first.value}), context)
    return first, second


def _execute(handler, store, action, user="user_1"):
    async def run():
        async with store.transaction() as tx:
            return await handler.execute(action, user, tx)

    return asyncio.run(run())


@pytest.fixture
def make_handler(store, workflow, settings, clock):
    def factory(cls, **overrides):
        cfg = settings.model_copy(update=overrides) if overrides else settings
        return cls(store, workflow, cfg, clock=clock)
    return factory


class TestCallHandler:
    def test_scheduled_for_defaults_to_whole_second_now(self, make_handler, context):
        result = _validate(make_handler(CallHandler), _make_action("CALL", {"contactEmail": "dana@acme.com"}), context)
        assert result.is_ok
        assert result.value["scheduledFor"] == "2025-03-10T12:00:00Z"

    def test_contact_must_be_on_opportunity(self, make_handler, context):
        result = _validate(
            make_handler(CallHandler), _make_action("CALL", {"contactEmail": "nobody@acme.com"}), context
        )
        assert result.status == StageStatus.SKIPPED
        assert "not a contact" in result.reason

    def test_contact_match_ignores_case(self, make_handler, context):
        result = _validate(
            make_handler(CallHandler), _make_action("CALL", {"contactEmail": "DANA@acme.com"}), context
        )
        assert result.is_ok

    def test_invalid_email_is_skipped(self, make_handler, context):
        result = _validate(make_handler(CallHandler), _make_action("CALL", {"contactEmail": "dana"}), context)
        assert result.status == StageStatus.SKIPPED
        assert result.reason.startswith("invalid CALL details")

    def test_validation_is_idempotent(self, make_handler, context):
        first, second = _validate_twice(
            make_handler(CallHandler), _make_action("CALL", {"contactEmail": "Dana@acme.com"}), context
        )
        assert first.value["scheduledFor"] == "2025-03-10T12:00:00Z"
        assert second.value == first.value

    def test_execute_creates_scheduled_call(self, make_handler, store):
        action = _make_action("CALL", {
            "contactEmail": "dana@acme.com",
            "scheduledFor": "2025-03-11T15:00:00Z",
            "purpose": "Walk Dana through the revised volume pricing.",
        })
        result = _execute(make_handler(CallHandler), store, action)

        assert result.type == "call_scheduled"
        assert result.outcome == ExecutionOutcome.EXECUTED
        [call] = store.list_activities("opp_1")
        assert call.id == result.created_record_id
        assert call.title == "Scheduled Call: Walk Dana through the revised volume pricing...."
        assert call.contact_ids == ["contact_dana"]
        assert call.status == "scheduled"
        assert call.metadata["source_action_type"] == "CALL"

    def test_execute_requires_opportunity(self, make_handler, store):
        action = _make_action("CALL", {
            "contactEmail": "dana@acme.com",
            "scheduledFor": "2025-03-11T15:00:00Z",
            "purpose": "Walk Dana through the revised volume pricing.",
        }, opportunity_id="opp_missing")
        with pytest.raises(EntityNotFoundError):
            _execute(make_handler(CallHandler), store, action)
        assert store.count("activities") == 0


class TestTaskHandler:
    def test_past_due_date_moves_to_tomorrow(self, make_handler, context):
        handler = make_handler(TaskHandler)
        yesterday = (handler.today() - timedelta(days=1)).isoformat()
        result = _validate(handler, _make_action("TASK", {"title": "Follow up", "dueDate": yesterday}), context)
        assert result.value["dueDate"] == handler.tomorrow().isoformat()

    def test_today_moves_to_tomorrow(self, make_handler, context):
        handler = make_handler(TaskHandler)
        today = handler.today().isoformat()
        result = _validate(handler, _make_action("TASK", {"title": "Follow up", "dueDate": today}), context)
        assert result.value["dueDate"] == handler.tomorrow().isoformat()

    def test_tomorrow_and_later_are_kept(self, make_handler, context):
        handler = make_handler(TaskHandler)
        for due in (handler.tomorrow(), handler.today() + timedelta(days=7)):
            result = _validate(
                handler, _make_action("TASK", {"title": "Follow up", "dueDate": due.isoformat()}), context
            )
            assert result.value["dueDate"] == due.isoformat()

    def test_impossible_date_is_skipped(self, make_handler, context):
        result = _validate(
            make_handler(TaskHandler), _make_action("TASK", {"title": "Follow up", "dueDate": "2025-02-30"}), context
        )
        assert result.status == StageStatus.SKIPPED
        assert "invalid due date" in result.reason

    def test_validation_is_idempotent(self, make_handler, context):
        handler = make_handler(TaskHandler)
        yesterday = (handler.today() - timedelta(days=1)).isoformat()
        first, second = _validate_twice(
            handler, _make_action("TASK", {"title": "Follow up", "dueDate": yesterday}), context
        )
        assert first.value["dueDate"] == handler.tomorrow().isoformat()
        assert second.value == first.value

    def test_disabled_by_default(self, make_handler, store):
        action = _make_action("TASK", {
            "title": "Follow up", "dueDate": "2025-03-11", "description": "Call back Dana.",
        })
        result = _execute(make_handler(TaskHandler), store, action)
        assert result.outcome == ExecutionOutcome.DISABLED
        assert result.type == "task_disabled"
        assert result.created_record_id is None
        assert store.count("activities") == 0

    def test_enabled_task_is_written(self, make_handler, store):
        handler = make_handler(TaskHandler, disabled_action_types=[])
        action = _make_action("TASK", {
            "title": "Follow up", "dueDate": "2025-03-11", "description": "Call back Dana.",
        })
        result = _execute(handler, store, action)
        assert result.type == "task_created"
        [task] = store.list_activities("opp_1")
        assert task.title == "Follow up"
        assert task.status == "to_do"


class TestLinkedInMessageHandler:
    def test_execute_queues_todo(self, make_handler, store):
        action = _make_action("LINKEDIN_MESSAGE", {
            "contactEmail": "lee@acme.com",
            "scheduledFor": "2025-03-11T15:00:00Z",
            "message": "Great speaking with you last week, Lee!",
        })
        result = _execute(make_handler(LinkedInMessageHandler), store, action)
        assert result.type == "linkedin_task_created"
        [todo] = store.list_activities("opp_1")
        assert todo.status == "to_do"
        assert todo.contact_ids == ["contact_lee"]

    def test_unknown_contact_in_store_fails(self, make_handler, store):
        action = _make_action("LINKEDIN_MESSAGE", {
            "contactEmail": "ghost@acme.com",
            "scheduledFor": "2025-03-11T15:00:00Z",
            "message": "Great speaking with you last week!",
        })
        with pytest.raises(EntityNotFoundError):
            _execute(make_handler(LinkedInMessageHandler), store, action)


class TestNoActionHandler:
    def test_review_date_today_moves_to_tomorrow(self, make_handler, context):
        handler = make_handler(NoActionHandler)
        result = _validate(
            handler, _make_action("NO_ACTION", {"nextReviewDate": handler.today().isoformat()}), context
        )
        assert result.value["nextReviewDate"] == handler.tomorrow().isoformat()

    def test_future_review_date_is_kept(self, make_handler, context):
        handler = make_handler(NoActionHandler)
        later = (handler.today() + timedelta(days=14)).isoformat()
        result = _validate(handler, _make_action("NO_ACTION", {"nextReviewDate": later}), context)
        assert result.value["nextReviewDate"] == later

    def test_composition_is_a_no_op(self, make_handler, workflow, context):
        action = _make_action("NO_ACTION", {"nextReviewDate": "2025-04-01", "reason": "Waiting on budget"})
        result = asyncio.run(make_handler(NoActionHandler).compose_content(action, context))
        assert result.is_ok
        assert result.value == action.details
        assert workflow.requests == []

    def test_execute_writes_nothing(self, make_handler, store):
        action = _make_action("NO_ACTION", {"nextReviewDate": "2025-04-01"})
        result = _execute(make_handler(NoActionHandler), store, action)
        assert result.type == "no_action_logged"
        assert store.count("activities") == 0


class TestUpdatePipelineStageHandler:
    def test_same_stage_is_skipped(self, make_handler, context):
        result = _validate(
            make_handler(UpdatePipelineStageHandler),
            _make_action("UPDATE_PIPELINE_STAGE", {"targetStageId": "stage_discovery"}),
            context,
        )
        assert result.status == StageStatus.SKIPPED

    def test_stage_from_another_pipeline_is_skipped(self, make_handler, context):
        result = _validate(
            make_handler(UpdatePipelineStageHandler),
            _make_action("UPDATE_PIPELINE_STAGE", {"targetStageId": "stage_foreign"}),
            context,
        )
        assert result.status == StageStatus.SKIPPED
        assert "pipe_1" in result.reason

    def test_stored_stage_name_wins(self, make_handler, context):
        result = _validate(
            make_handler(UpdatePipelineStageHandler),
            _make_action("UPDATE_PIPELINE_STAGE", {
                "targetStageId": "stage_proposal", "targetStageName": "Negotiation",
            }),
            context,
        )
        assert result.value["targetStageName"] == "Proposal"

    def test_execute_moves_opportunity(self, make_handler, store):
        action = _make_action("UPDATE_PIPELINE_STAGE", {"targetStageId": "stage_proposal"})
        result = _execute(make_handler(UpdatePipelineStageHandler), store, action)
        assert result.type == "pipeline_stage_updated"
        assert result.data["old_stage_name"] == "Discovery"
        assert result.data["new_stage_name"] == "Proposal"
        assert store.load_opportunity("opp_1").stage_id == "stage_proposal"


class TestMeetingHandler:
    _create = {
        "title": "Pricing review",
        "attendees": ["dana@acme.com", "stranger@other.com"],
        "duration": 45,
        "scheduledFor": "2025-03-12T16:00:00Z",
    }

    def test_create_filters_attendees(self, make_handler, context):
        result = _validate(make_handler(MeetingHandler), _make_action("MEETING", dict(self._create)), context)
        assert result.is_ok
        assert result.value["attendees"] == ["dana@acme.com"]

    def test_create_requires_schedule_fields(self, make_handler, context):
        details = dict(self._create)
        del details["duration"]
        result = _validate(make_handler(MeetingHandler), _make_action("MEETING", details), context)
        assert result.status == StageStatus.SKIPPED

    def test_update_requires_existing_meeting(self, make_handler, context):
        result = _validate(
            make_handler(MeetingHandler), _make_action("MEETING", {**self._create, "mode": "update"}), context
        )
        assert result.status == StageStatus.SKIPPED
        assert "existingCalendarActivityId" in result.reason

    def test_validation_is_idempotent(self, make_handler, context):
        first, second = _validate_twice(
            make_handler(MeetingHandler), _make_action("MEETING", dict(self._create)), context
        )
        assert first.value["attendees"] == ["dana@acme.com"]
        assert second.value == first.value

    def test_no_valid_attendees_is_skipped(self, make_handler, context):
        details = {**self._create, "attendees": ["stranger@other.com"]}
        result = _validate(make_handler(MeetingHandler), _make_action("MEETING", details), context)
        assert result.status == StageStatus.SKIPPED

    def test_cancel_skips_composition(self, make_handler, workflow, context):
        action = _make_action("MEETING", {"mode": "cancel", "existingCalendarActivityId": "meeting_existing"})
        handler = make_handler(MeetingHandler)
        validated = _validate(handler, action, context)
        composed = asyncio.run(handler.compose_content(
            action.model_copy(update={"details": validated.value}), context
        ))
        assert composed.is_ok
        assert workflow.requests == []
        assert handler.missing_content(composed.value) == []

    def test_cancel_marks_meeting_cancelled(self, make_handler, store):
        action = _make_action("MEETING", {"mode": "cancel", "existingCalendarActivityId": "meeting_existing"})
        result = _execute(make_handler(MeetingHandler), store, action)
        assert result.type == "meeting_cancelled"
        [meeting] = store.list_calendar_activities("opp_1")
        assert meeting.status == "cancelled"
        assert meeting.metadata["created_by"] == "user_1"

    def test_create_writes_calendar_activity(self, make_handler, store):
        details = {**self._create, "attendees": ["dana@acme.com"], "agenda": "1. Pricing 2. Timeline"}
        result = _execute(make_handler(MeetingHandler), store, _make_action("MEETING", details))
        assert result.type == "meeting_scheduled"
        assert store.count("calendar_activities") == 2

    def test_update_of_missing_meeting_fails(self, make_handler, store):
        details = {**self._create, "mode": "update", "existingCalendarActivityId": "meeting_ghost",
                   "agenda": "1. Pricing 2. Timeline"}
        with pytest.raises(EntityNotFoundError):
            _execute(make_handler(MeetingHandler), store, _make_action("MEETING", details))


class TestLookupHandler:
    @pytest.mark.parametrize("details", [
        {"answer": ""},
        {"answer": None},
        {"answer": "Acme raised a Series B.", "confidence": 0.2},
        {"answer": "No information found about Acme funding."},
        {"answer": "The filing was NOT FOUND in public records."},
    ])
    def test_unhelpful_answers(self, details):
        assert not is_useful_answer(details)

    def test_useful_answer(self):
        assert is_useful_answer({"answer": "Acme raised a Series B.", "confidence": 0.3})
        assert is_useful_answer({"answer": "Acme raised a Series B."})

    def test_fallback_converts_to_research_task(self, make_handler):
        handler = make_handler(LookupHandler)
        action = _make_action("LOOKUP", {"query": "Acme funding history"})
        fallback = handler.fallback_action(action, {"query": "Acme funding history", "answer": "Could not find it"})
        assert fallback.type == "TASK"
        assert fallback.id == action.id
        assert fallback.details == {
            "title": "Research: Acme funding history",
            "dueDate": handler.tomorrow().isoformat(),
            "description": "Acme funding history",
        }

    def test_no_fallback_for_useful_answer(self, make_handler):
        handler = make_handler(LookupHandler)
        action = _make_action("LOOKUP", {"query": "Acme funding history"})
        assert handler.fallback_action(action, {"answer": "Series B in January", "confidence": 0.9}) is None

    def test_fallback_title_is_truncated(self, make_handler):
        query = "q" * 300
        fallback = make_handler(LookupHandler).fallback_action(
            _make_action("LOOKUP", {"query": query}), {"query": query, "answer": ""}
        )
        assert len(fallback.details["title"]) == 100

    def test_always_composes_in_lookup_mode(self, make_handler, workflow, context):
        action = _make_action("LOOKUP", {"query": "Acme funding history"})
        result = asyncio.run(make_handler(LookupHandler).compose_content(action, context))
        assert result.value["answer"] == "Acme raised a Series B in January."
        assert workflow.requests[0].action_mode == ActionMode.LOOKUP


class TestAddContactHandler:
    def test_duplicate_email_is_skipped(self, make_handler, context):
        result = _validate(make_handler(AddContactHandler), _make_action("ADD_CONTACT", {
            "contactFirstName": "Dana", "contactLastName": "Other",
            "contactEmail": "dana@acme.com", "suggestedRole": "Champion",
        }), context)
        assert result.status == StageStatus.SKIPPED

    def test_duplicate_name_is_skipped(self, make_handler, context):
        result = _validate(make_handler(AddContactHandler), _make_action("ADD_CONTACT", {
            "contactFirstName": " lee ", "contactLastName": "PARK", "suggestedRole": "Evaluator",
        }), context)
        assert result.status == StageStatus.SKIPPED

    def test_new_contact_is_normalized(self, make_handler, context):
        result = _validate(make_handler(AddContactHandler), _make_action("ADD_CONTACT", {
            "contactFirstName": " Morgan ", "contactLastName": "Reyes",
            "contactEmail": "morgan@acme.com", "suggestedRole": "Economic Buyer",
        }), context)
        assert result.is_ok
        assert result.value["contactFirstName"] == "Morgan"
        assert result.value["contactEmail"] == "morgan@acme.com"

    def test_validation_is_idempotent(self, make_handler, context):
        first, second = _validate_twice(make_handler(AddContactHandler), _make_action("ADD_CONTACT", {
            "contactFirstName": " Morgan ", "contactLastName": "Reyes ",
            "contactEmail": "Morgan@Acme.com", "suggestedRole": "Economic Buyer",
        }), context)
        assert first.value["contactLastName"] == "Reyes"
        assert second.value == first.value

    def test_execute_creates_and_links_contact(self, make_handler, store):
        action = _make_action("ADD_CONTACT", {
            "contactFirstName": "Morgan", "contactLastName": "Reyes",
            "contactEmail": "morgan@acme.com", "suggestedRole": "Economic Buyer",
            "rationale": "Signs off on every purchase above the budget threshold.",
            "contactTitle": "CFO",
        })
        result = _execute(make_handler(AddContactHandler), store, action)
        assert result.type == "contact_added"
        assert result.data == {"created": True, "role": "Economic Buyer"}
        contact = store.load_contact(result.created_record_id)
        assert contact.opportunity_ids == ["opp_1"]
        assert contact.title == "CFO"

    def test_execute_links_existing_contact(self, make_handler, store):
        action = _make_action("ADD_CONTACT", {
            "contactFirstName": "Dana", "contactLastName": "Whitfield",
            "suggestedRole": "Champion",
            "rationale": "Already engaged on the pricing thread with the rep.",
        }, opportunity_id="opp_1")
        result = _execute(make_handler(AddContactHandler), store, action)
        assert result.created_record_id == "contact_dana"
        assert result.data["created"] is False
        assert store.load_contact("contact_dana").role == "Champion"


class TestComposition:
    def test_main_action_composes_in_composition_mode(self, make_handler, workflow, context):
        action = _make_action("CALL", {"contactEmail": "dana@acme.com", "scheduledFor": "2025-03-11T15:00:00Z"})
        result = asyncio.run(make_handler(CallHandler).compose_content(action, context))
        assert result.value["purpose"] == "Walk Dana through the revised volume pricing."
        request = workflow.requests[0]
        assert request.action_mode == ActionMode.COMPOSITION
        assert request.organization_id == "org_1"
        assert request.context.content_type == "call_purpose"
        assert request.context.deal_stage == "Discovery"
        assert request.context.customer_info == "Opportunity: Acme Expansion, Value: $48,000.00"

    def test_sub_action_composes_in_lookup_mode(self, make_handler, workflow, context):
        parent = _make_action("EMAIL", {"to": ["dana@acme.com"]})
        action = _make_action("CALL", {"contactEmail": "dana@acme.com", "scheduledFor": "2025-03-11T15:00:00Z"})
        asyncio.run(make_handler(CallHandler).compose_content(action, context, parent=parent))
        assert workflow.requests[0].action_mode == ActionMode.LOOKUP
        assert "Explain how this supports the parent action: EMAIL" in workflow.requests[0].prompt

    def test_workflow_failure_is_skipped(self, make_handler, workflow, context):
        workflow.failing.add("call_purpose")
        action = _make_action("CALL", {"contactEmail": "dana@acme.com", "scheduledFor": "2025-03-11T15:00:00Z"})
        result = asyncio.run(make_handler(CallHandler).compose_content(action, context))
        assert result.status == StageStatus.SKIPPED
        assert "composition failed" in result.reason

    def test_workflow_timeout_is_skipped(self, make_handler, workflow, context):
        workflow.delay = 1.0
        handler = make_handler(CallHandler, composition_timeout_seconds=0.05)
        action = _make_action("CALL", {"contactEmail": "dana@acme.com", "scheduledFor": "2025-03-11T15:00:00Z"})
        result = asyncio.run(handler.compose_content(action, context))
        assert result.status == StageStatus.SKIPPED
        assert "timed out" in result.reason

    def test_content_violating_schema_is_skipped(self, make_handler, workflow, context):
        workflow.responses["call_purpose"] = {"purpose": "short"}
        action = _make_action("CALL", {"contactEmail": "dana@acme.com", "scheduledFor": "2025-03-11T15:00:00Z"})
        result = asyncio.run(make_handler(CallHandler).compose_content(action, context))
        assert result.status == StageStatus.SKIPPED
        assert "composed content rejected" in result.reason

    def test_merge_never_erases_known_values(self):
        merged = ActionHandler.merge_content(
            {"query": "Acme funding history", "confidence": 0.8},
            ComposedLookup(answer="Series B in January"),
        )
        assert merged["answer"] == "Series B in January"
        assert merged["confidence"] == 0.8

    def test_merge_leaves_thread_linkage_alone(self):
        class ThreadedContent(WireModel):
            body: str
            thread_id: str

        merged = ActionHandler.merge_content(
            {"threadId": "thread-acme-1", "body": None},
            ThreadedContent(body="<p>Hello</p>", thread_id="thread-other"),
        )
        assert merged == {"threadId": "thread-acme-1", "body": "<p>Hello</p>"}
