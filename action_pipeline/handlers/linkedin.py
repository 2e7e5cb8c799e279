"""LINKEDIN_MESSAGE — a LinkedIn message, queued as a to-do for the rep to send."""

from typing import List

from action_pipeline.handlers.base import (
    ActionHandler,
    ValidationLookups,
    new_record_id,
    parse_iso_seconds,
)
from action_pipeline.models.action import ActionBase, ActionType
from action_pipeline.models.composed import ComposedLinkedInMessage
from action_pipeline.models.context import PipelineContext
from action_pipeline.models.details import LinkedInMessageDetails
from action_pipeline.models.records import Activity, ActivityType
from action_pipeline.models.results import ExecutionResult, StageResult
from action_pipeline.store.document_store import EntityNotFoundError, TransactionScope


class LinkedInMessageHandler(ActionHandler):
    name = ActionType.LINKEDIN_MESSAGE.value
    description = "Send a new LinkedIn message to a contact on the opportunity."
    details_schema = LinkedInMessageDetails
    content_schema = ComposedLinkedInMessage

    content_type = "linkedin_message"
    prompt_title = "LinkedIn Message Composition Request"
    instructions = (
        "Keep the message short and conversational",
        "Reference a relevant recent interaction",
        "Close with a low-friction ask",
    )

    def prepare(self, raw: dict) -> dict:
        return self.default_scheduled_for(raw)

    async def apply_rules(
        self,
        action: ActionBase,
        details: LinkedInMessageDetails,
        context: PipelineContext,
        lookups: ValidationLookups,
    ) -> StageResult:
        invalid = self.require_contact(details.contact_email, lookups)
        return invalid or StageResult.ok(details)

    def detail_lines(self, details: LinkedInMessageDetails) -> List[str]:
        return [f"**Scheduled For:** {details.scheduled_for}"]

    def contact_emails(self, details: LinkedInMessageDetails) -> List[str]:
        return [details.contact_email]

    async def _execute(
        self,
        action: ActionBase,
        details: LinkedInMessageDetails,
        executing_user_id: str,
        tx: TransactionScope,
    ) -> ExecutionResult:
        opportunity = await tx.require_opportunity(action.opportunity_id)
        contact = await tx.find_contact_by_email(details.contact_email)
        if contact is None:
            raise EntityNotFoundError(f"Contact with email {details.contact_email} not found")

        todo = Activity(
            id=new_record_id("linkedin"),
            type=ActivityType.LINKEDIN,
            opportunity_id=opportunity.id,
            organization_id=opportunity.organization_id,
            title=f"LinkedIn message to {details.contact_email}",
            description=details.message,
            date=parse_iso_seconds(details.scheduled_for),
            status="to_do",
            contact_ids=[contact.id],
            metadata=self.provenance(action, executing_user_id),
        )
        await tx.insert_activity(todo)

        return ExecutionResult(
            type="linkedin_task_created",
            created_record_id=todo.id,
            scheduled_for=details.scheduled_for,
        )
