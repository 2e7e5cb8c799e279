"""CALL — a scheduled phone call with one contact."""

from typing import List

from action_pipeline.handlers.base import (
    ActionHandler,
    ValidationLookups,
    new_record_id,
    parse_iso_seconds,
)
from action_pipeline.models.action import ActionBase, ActionType
from action_pipeline.models.composed import ComposedCall
from action_pipeline.models.context import PipelineContext
from action_pipeline.models.details import CallDetails
from action_pipeline.models.records import Activity, ActivityType
from action_pipeline.models.results import ExecutionResult, StageResult
from action_pipeline.store.document_store import EntityNotFoundError, TransactionScope


class CallHandler(ActionHandler):
    name = ActionType.CALL.value
    description = (
        "Schedule a phone call with a contact on the opportunity, with a "
        "composed purpose and talking points."
    )
    details_schema = CallDetails
    content_schema = ComposedCall

    content_type = "call_purpose"
    prompt_title = "Call Purpose and Talking Points Composition Request"
    instructions = (
        "State the objective of the call",
        "List the key talking points",
        "List the questions to ask the contact",
        "Prepare responses to likely objections",
        "Describe the desired outcome and next steps",
    )

    def prepare(self, raw: dict) -> dict:
        return self.default_scheduled_for(raw)

    async def apply_rules(
        self,
        action: ActionBase,
        details: CallDetails,
        context: PipelineContext,
        lookups: ValidationLookups,
    ) -> StageResult:
        invalid = self.require_contact(details.contact_email, lookups)
        return invalid or StageResult.ok(details)

    def detail_lines(self, details: CallDetails) -> List[str]:
        return [f"**Scheduled For:** {details.scheduled_for}"]

    def contact_emails(self, details: CallDetails) -> List[str]:
        return [details.contact_email]

    async def _execute(
        self,
        action: ActionBase,
        details: CallDetails,
        executing_user_id: str,
        tx: TransactionScope,
    ) -> ExecutionResult:
        opportunity = await tx.require_opportunity(action.opportunity_id)
        contact = await tx.find_contact_by_email(details.contact_email)
        if contact is None:
            raise EntityNotFoundError(f"Contact with email {details.contact_email} not found")

        call = Activity(
            id=new_record_id("call"),
            type=ActivityType.CALL,
            opportunity_id=opportunity.id,
            organization_id=opportunity.organization_id,
            title=f"Scheduled Call: {(details.purpose or '')[:50]}...",
            description=details.purpose,
            date=parse_iso_seconds(details.scheduled_for),
            status="scheduled",
            contact_ids=[contact.id],
            metadata=self.provenance(action, executing_user_id),
        )
        await tx.insert_activity(call)

        return ExecutionResult(
            type="call_scheduled",
            created_record_id=call.id,
            scheduled_for=details.scheduled_for,
        )
