"""MEETING — create, update or cancel a calendar meeting on the opportunity."""

from typing import List, Optional, Sequence

from action_pipeline.handlers.base import (
    ActionHandler,
    ValidationLookups,
    new_record_id,
    parse_iso_seconds,
)
from action_pipeline.models.action import ActionBase, ActionType, ProposedAction
from action_pipeline.models.composed import ComposedMeeting
from action_pipeline.models.context import PipelineContext
from action_pipeline.models.details import MeetingDetails
from action_pipeline.models.records import CalendarActivity
from action_pipeline.models.results import ExecutionResult, StageResult
from action_pipeline.store.document_store import EntityNotFoundError, TransactionScope


class MeetingHandler(ActionHandler):
    name = ActionType.MEETING.value
    description = (
        "Schedule a new meeting with contacts, or update or cancel an existing "
        "calendar meeting on the opportunity."
    )
    details_schema = MeetingDetails
    content_schema = ComposedMeeting

    content_type = "meeting_agenda"
    prompt_title = "Meeting Agenda Composition Request"
    instructions = (
        "Open with the goal of the meeting",
        "List agenda items with rough timings",
        "Note what each attendee should prepare",
        "Close with the decision or next step the meeting should produce",
    )

    async def apply_rules(
        self,
        action: ActionBase,
        details: MeetingDetails,
        context: PipelineContext,
        lookups: ValidationLookups,
    ) -> StageResult:
        if details.mode in ("create", "update"):
            if not (details.title and details.duration and details.scheduled_for and details.attendees):
                return StageResult.skipped(
                    f"{details.mode} requires title, duration, scheduledFor and attendees"
                )
        if details.mode in ("update", "cancel") and not details.existing_calendar_activity_id:
            return StageResult.skipped(f"{details.mode} requires existingCalendarActivityId")

        if details.mode == "cancel":
            return StageResult.ok(details)

        attendees = [a for a in details.attendees if a.lower() in lookups.valid_contact_emails]
        if not attendees:
            return StageResult.skipped("no valid attendees")
        return StageResult.ok(details.model_copy(update={"attendees": attendees}))

    async def compose_content(
        self,
        action: ActionBase,
        context: PipelineContext,
        parent: Optional[ProposedAction] = None,
        completed: Sequence[ActionBase] = (),
    ) -> StageResult:
        # A cancellation carries no agenda
        if action.details.get("mode") == "cancel":
            return StageResult.ok(dict(action.details))
        return await super().compose_content(action, context, parent, completed)

    def detail_lines(self, details: MeetingDetails) -> List[str]:
        return [
            f"**Meeting:** {details.title} ({details.mode})",
            f"**Scheduled For:** {details.scheduled_for}",
            f"**Duration:** {details.duration} minutes",
            f"**Location:** {details.location or 'Not specified'}",
        ]

    def contact_emails(self, details: MeetingDetails) -> List[str]:
        return list(details.attendees or [])

    async def _execute(
        self,
        action: ActionBase,
        details: MeetingDetails,
        executing_user_id: str,
        tx: TransactionScope,
    ) -> ExecutionResult:
        opportunity = await tx.require_opportunity(action.opportunity_id)

        if details.mode == "create":
            meeting = CalendarActivity(
                id=new_record_id("meeting"),
                opportunity_id=opportunity.id,
                organization_id=opportunity.organization_id,
                title=details.title,
                attendees=list(details.attendees),
                start_time=parse_iso_seconds(details.scheduled_for),
                duration_minutes=details.duration,
                location=details.location,
                agenda=details.agenda,
                status="scheduled",
                metadata=self.provenance(action, executing_user_id),
            )
            await tx.save_calendar_activity(meeting)
            return ExecutionResult(
                type="meeting_scheduled",
                created_record_id=meeting.id,
                scheduled_for=details.scheduled_for,
            )

        existing = await tx.get_calendar_activity(details.existing_calendar_activity_id)
        if existing is None:
            raise EntityNotFoundError(
                f"CalendarActivity {details.existing_calendar_activity_id} not found"
            )

        if details.mode == "cancel":
            await tx.save_calendar_activity(existing.model_copy(update={
                "status": "cancelled",
                "metadata": {**existing.metadata, **self.provenance(action, executing_user_id)},
            }))
            return ExecutionResult(type="meeting_cancelled", created_record_id=existing.id)

        updated = existing.model_copy(update={
            "title": details.title,
            "attendees": list(details.attendees),
            "start_time": parse_iso_seconds(details.scheduled_for),
            "duration_minutes": details.duration,
            "location": details.location,
            "agenda": details.agenda,
            "status": "scheduled",
            "metadata": {**existing.metadata, **self.provenance(action, executing_user_id)},
        })
        await tx.save_calendar_activity(updated)
        return ExecutionResult(
            type="meeting_updated",
            created_record_id=existing.id,
            scheduled_for=details.scheduled_for,
        )
