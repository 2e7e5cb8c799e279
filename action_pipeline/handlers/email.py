"""
EMAIL — an outbound email to one or more opportunity contacts.

Validation reconciles reply/thread linkage: a reply reference is resolved
against recent activity first, then the store by message id, then the store
by record id. The first source that resolves wins and its thread replaces
any supplied thread id. Unresolvable linkage is cleared, not rejected.
"""

import logging
from typing import List, Optional, Tuple

from action_pipeline.handlers.base import (
    ActionHandler,
    ValidationLookups,
    new_record_id,
    parse_iso_seconds,
    to_iso_seconds,
)
from action_pipeline.models.action import ActionBase, ActionType
from action_pipeline.models.composed import ComposedEmail
from action_pipeline.models.context import PipelineContext
from action_pipeline.models.details import EmailDetails
from action_pipeline.models.records import EmailActivity
from action_pipeline.models.results import ExecutionResult, StageResult
from action_pipeline.store.document_store import TransactionScope

logger = logging.getLogger(__name__)


class EmailHandler(ActionHandler):
    name = ActionType.EMAIL.value
    description = (
        "Send an email to one or more contacts on the opportunity, either as a "
        "new conversation or as a reply within an existing thread."
    )
    details_schema = EmailDetails
    content_schema = ComposedEmail

    content_type = "email"
    prompt_title = "Email Composition Request"
    instructions = (
        "Write a subject line that reflects the purpose of the email",
        "Write an HTML body addressed to the recipients",
        "Reference the source activities where relevant",
        "End with one clear next step",
    )

    def prepare(self, raw: dict) -> dict:
        return self.default_scheduled_for(raw)

    async def apply_rules(
        self,
        action: ActionBase,
        details: EmailDetails,
        context: PipelineContext,
        lookups: ValidationLookups,
    ) -> StageResult:
        valid = lookups.valid_contact_emails
        to = self._filter_recipients(details.to, valid)
        if not to:
            return StageResult.skipped("no valid recipients")

        cc = self._filter_recipients(details.cc or [], valid)
        bcc = self._filter_recipients(details.bcc or [], valid)
        reply_to, thread_id = await self._reconcile_linkage(
            details.reply_to_message_id, details.thread_id, context
        )

        return StageResult.ok(details.model_copy(update={
            "to": to,
            "cc": cc or None,
            "bcc": bcc or None,
            "reply_to_message_id": reply_to,
            "thread_id": thread_id,
        }))

    @staticmethod
    def _filter_recipients(addresses: List[str], valid: set) -> List[str]:
        kept = []
        for address in addresses:
            if address.lower() in valid:
                kept.append(address)
            else:
                logger.info("Dropping recipient %s: not a contact on the opportunity", address)
        return kept

    async def _reconcile_linkage(
        self,
        reply_ref: Optional[str],
        thread_id: Optional[str],
        context: PipelineContext,
    ) -> Tuple[Optional[str], Optional[str]]:
        if reply_ref:
            resolved = await self._resolve_message(reply_ref, context)
            if resolved is None:
                logger.info("Reply reference %s not found; clearing reply and thread", reply_ref)
                return None, None
            message_id, resolved_thread = resolved
            if thread_id and thread_id != resolved_thread:
                logger.info(
                    "Thread %s does not match message %s; using thread %s",
                    thread_id, message_id, resolved_thread,
                )
            return message_id, resolved_thread

        if thread_id:
            if context.has_thread(thread_id) or await self.store.thread_exists(thread_id):
                return None, thread_id
            logger.info("Thread %s not found; clearing it", thread_id)
        return None, None

    async def _resolve_message(
        self, reference: str, context: PipelineContext
    ) -> Optional[Tuple[str, Optional[str]]]:
        """(message id, thread id) of the referenced message, or None."""
        activity = context.find_message(reference)
        if activity is not None:
            return activity.message_id, activity.thread_id

        email = await self.store.find_email_by_message_id(reference)
        if email is None:
            email = await self.store.get_email_activity(reference)
        if email is not None:
            return email.message_id, email.thread_id
        return None

    def detail_lines(self, details: EmailDetails) -> List[str]:
        lines = [
            f"**Recipients:** {', '.join(details.to)}",
            f"**Scheduled For:** {details.scheduled_for}",
        ]
        if details.reply_to_message_id:
            lines.append(f"**Reply To Message:** {details.reply_to_message_id}")
        if details.attachments:
            names = ", ".join(a.filename for a in details.attachments)
            lines.append(f"**Attachments:** {names}")
        return lines

    def contact_emails(self, details: EmailDetails) -> List[str]:
        return list(details.to)

    async def _execute(
        self,
        action: ActionBase,
        details: EmailDetails,
        executing_user_id: str,
        tx: TransactionScope,
    ) -> ExecutionResult:
        opportunity = await tx.require_opportunity(action.opportunity_id)

        now = self.now()
        scheduled_at = parse_iso_seconds(details.scheduled_for) if details.scheduled_for else now
        email = EmailActivity(
            id=new_record_id("email"),
            opportunity_id=opportunity.id,
            organization_id=opportunity.organization_id,
            message_id=f"scheduled-{action.id}-{int(now.timestamp() * 1000)}",
            thread_id=details.thread_id or f"thread-{action.id}",
            in_reply_to=details.reply_to_message_id,
            subject=details.subject,
            body=details.body,
            to=list(details.to),
            cc=list(details.cc or []),
            bcc=list(details.bcc or []),
            attachments=[a.model_dump() for a in details.attachments or []],
            status="scheduled" if scheduled_at > now else "queued",
            scheduled_for=scheduled_at,
            metadata=self.provenance(action, executing_user_id, priority=details.priority),
        )
        await tx.insert_email_activity(email)

        return ExecutionResult(
            type="email_scheduled",
            created_record_id=email.id,
            scheduled_for=to_iso_seconds(scheduled_at),
            data={"status": email.status, "thread_id": email.thread_id},
        )
