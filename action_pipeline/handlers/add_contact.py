"""ADD_CONTACT — bring a new person into the deal, with researched background."""

from typing import List

from action_pipeline.handlers.base import ActionHandler, ValidationLookups, new_record_id
from action_pipeline.models.action import ActionBase, ActionType
from action_pipeline.models.composed import ComposedContactResearch
from action_pipeline.models.context import PipelineContext
from action_pipeline.models.details import AddContactDetails
from action_pipeline.models.records import Contact
from action_pipeline.models.results import ExecutionResult, StageResult
from action_pipeline.store.document_store import TransactionScope


class AddContactHandler(ActionHandler):
    name = ActionType.ADD_CONTACT.value
    description = (
        "Add a person who is involved in the deal but not yet a contact on "
        "the opportunity, with a rationale and researched background."
    )
    details_schema = AddContactDetails
    content_schema = ComposedContactResearch

    content_type = "contact_research"
    audience_type = "internal_user"
    prompt_title = "Contact Research Request"
    instructions = (
        "Explain why this person matters to the deal",
        "Confirm or discover their email address and job title",
        "Summarize their professional background",
        "List the sources used",
    )

    async def apply_rules(
        self,
        action: ActionBase,
        details: AddContactDetails,
        context: PipelineContext,
        lookups: ValidationLookups,
    ) -> StageResult:
        first = details.contact_first_name.strip()
        last = details.contact_last_name.strip()
        if not first or not last:
            return StageResult.skipped("contact name is blank")
        email = details.contact_email.lower() if details.contact_email else None

        full_name = f"{first} {last}".lower()
        for existing in context.contacts:
            same_email = email is not None and (existing.email or "").lower() == email
            if same_email or existing.full_name.lower() == full_name:
                return StageResult.skipped(f"{first} {last} is already a contact on this opportunity")

        return StageResult.ok(details.model_copy(update={
            "contact_first_name": first,
            "contact_last_name": last,
            "contact_email": email,
        }))

    def detail_lines(self, details: AddContactDetails) -> List[str]:
        return [
            f"**Person:** {details.contact_first_name} {details.contact_last_name}",
            f"**Title:** {details.contact_title or 'Unknown'}",
            f"**Suggested Role:** {details.suggested_role}",
        ]

    async def _execute(
        self,
        action: ActionBase,
        details: AddContactDetails,
        executing_user_id: str,
        tx: TransactionScope,
    ) -> ExecutionResult:
        opportunity = await tx.require_opportunity(action.opportunity_id)

        contact = None
        if details.contact_email:
            contact = await tx.find_contact_by_email(details.contact_email)
        if contact is None:
            contact = await tx.find_contact_by_name(
                details.contact_first_name, details.contact_last_name, opportunity.organization_id
            )

        created = contact is None
        if contact is None:
            contact = Contact(
                id=new_record_id("contact"),
                first_name=details.contact_first_name,
                last_name=details.contact_last_name,
                email=details.contact_email,
                organization_id=opportunity.organization_id,
            )

        updates = {"role": details.suggested_role}
        if opportunity.id not in contact.opportunity_ids:
            updates["opportunity_ids"] = [*contact.opportunity_ids, opportunity.id]
        for field, value in (
            ("title", details.contact_title),
            ("linked_in_profile", details.linked_in_profile),
            ("background_info", details.background_info),
        ):
            if value and not getattr(contact, field):
                updates[field] = value
        if details.source_urls:
            updates["source_urls"] = sorted(set(contact.source_urls) | set(details.source_urls))

        contact = await tx.save_contact(contact.model_copy(update=updates))

        return ExecutionResult(
            type="contact_added",
            created_record_id=contact.id,
            data={"created": created, "role": details.suggested_role},
        )
