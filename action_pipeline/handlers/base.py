"""
Action Handler — the per-type bundle of schema, validation, composition and execution.

Behavioral Contract:
- validate_details runs the schema first (Skipped on failure), then the
  type's business rules. It returns a new normalized details dict and never
  mutates the action.
- compose_content composes in lookup mode for sub-actions and in
  composition mode for main actions. Workflow failures and timeouts become
  Skipped; a missing workflow configuration propagates.
- execute runs inside the caller's transaction scope. A missing required
  entity raises EntityNotFoundError. A disabled type writes nothing and
  returns a DISABLED result.
- Handlers never change an action's status; the orchestrator owns it.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Callable, ClassVar, List, Optional, Sequence, Set, Type
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from action_pipeline.composition.prompts import build_prompt, build_workflow_context
from action_pipeline.composition.workflow import (
    ActionMode,
    CompositionError,
    CompositionRequest,
    CompositionWorkflow,
)
from action_pipeline.config.settings import PipelineSettings
from action_pipeline.models.action import ActionBase, ProposedAction
from action_pipeline.models.base import WireModel
from action_pipeline.models.context import PipelineContext
from action_pipeline.models.details import ActionDetails
from action_pipeline.models.results import ExecutionOutcome, ExecutionResult, StageResult
from action_pipeline.store.document_store import DocumentStore, TransactionScope

logger = logging.getLogger(__name__)

ISO_SECONDS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Thread linkage is settled by validation; composition must not touch it
PROTECTED_FIELDS = frozenset({"replyToMessageId", "threadId"})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso_seconds(moment: datetime) -> str:
    """ISO-8601 UTC with whole-second precision, e.g. 2025-03-01T09:30:00Z."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(ISO_SECONDS_FORMAT)


def parse_iso_seconds(value: str) -> datetime:
    return datetime.strptime(value, ISO_SECONDS_FORMAT).replace(tzinfo=timezone.utc)


def local_date(moment: datetime) -> date:
    """Calendar date of ``moment`` in the process's local timezone."""
    if moment.tzinfo is None:
        return moment.date()
    return moment.astimezone().date()


def new_record_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


def summarize_errors(exc: ValidationError, limit: int = 3) -> str:
    errors = exc.errors()
    parts = [
        f"{'.'.join(str(p) for p in e['loc']) or 'details'}: {e['msg']}"
        for e in errors[:limit]
    ]
    if len(errors) > limit:
        parts.append(f"... {len(errors) - limit} more")
    return "; ".join(parts)


class ValidationLookups(BaseModel):
    """Auxiliary sets consulted during validation."""

    valid_contact_emails: Set[str] = set()
    valid_activity_ids: Set[str] = set()

    @classmethod
    def from_context(cls, context: PipelineContext) -> "ValidationLookups":
        return cls(
            valid_contact_emails=context.valid_contact_emails(),
            valid_activity_ids=context.valid_activity_ids(),
        )


class ActionHandler(ABC):
    """Base class for every action type."""

    name: ClassVar[str]
    description: ClassVar[str]
    details_schema: ClassVar[Type[ActionDetails]]
    content_schema: ClassVar[Optional[Type[WireModel]]] = None

    # Composition request shape
    content_type: ClassVar[str] = ""
    audience_type: ClassVar[str] = "sales_prospect"
    prompt_title: ClassVar[str] = ""
    instructions: ClassVar[Sequence[str]] = ()
    always_lookup: ClassVar[bool] = False

    def __init__(
        self,
        store: DocumentStore,
        workflow: CompositionWorkflow,
        settings: PipelineSettings,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.workflow = workflow
        self.settings = settings
        self.clock = clock or utc_now

    # === TIME ===

    def now(self) -> datetime:
        return self.clock()

    def now_iso(self) -> str:
        return to_iso_seconds(self.now())

    def today(self) -> date:
        return local_date(self.now())

    def tomorrow(self) -> date:
        return self.today() + timedelta(days=1)

    def default_scheduled_for(self, raw: dict) -> dict:
        """Missing scheduling defaults to now, whole-second UTC."""
        raw = dict(raw)
        if not (raw.get("scheduledFor") or raw.get("scheduled_for")):
            raw.pop("scheduled_for", None)
            raw["scheduledFor"] = self.now_iso()
        return raw

    # === VALIDATION ===

    def prepare(self, raw: dict) -> dict:
        """Defaults applied before schema validation."""
        return dict(raw)

    async def validate_details(
        self,
        action: ActionBase,
        context: PipelineContext,
        lookups: ValidationLookups,
    ) -> StageResult:
        raw = self.prepare(action.details)
        try:
            details = self.details_schema.model_validate(raw)
        except ValidationError as exc:
            reason = f"invalid {self.name} details: {summarize_errors(exc)}"
            logger.info(reason, extra={"action_id": action.id, "action_type": self.name})
            return StageResult.skipped(reason)

        result = await self.apply_rules(action, details, context, lookups)
        if result.is_ok:
            return StageResult.ok(result.value.to_wire())
        return result

    async def apply_rules(
        self,
        action: ActionBase,
        details: ActionDetails,
        context: PipelineContext,
        lookups: ValidationLookups,
    ) -> StageResult:
        """Business rules on schema-valid details. Ok(value) carries a details model."""
        return StageResult.ok(details)

    def require_contact(
        self, email: str, lookups: ValidationLookups
    ) -> Optional[StageResult]:
        if email.lower() not in lookups.valid_contact_emails:
            return StageResult.skipped(f"{email} is not a contact on this opportunity")
        return None

    # === COMPOSITION ===

    def detail_lines(self, details: ActionDetails) -> List[str]:
        """Type-specific lines for the prompt's CONTEXT section."""
        return []

    def contact_emails(self, details: ActionDetails) -> List[str]:
        """Contacts described in the prompt's CONTACT INFORMATION section."""
        return []

    def mode_for(self, parent: Optional[ProposedAction]) -> ActionMode:
        if parent is not None or self.always_lookup:
            return ActionMode.LOOKUP
        return ActionMode.COMPOSITION

    async def compose_content(
        self,
        action: ActionBase,
        context: PipelineContext,
        parent: Optional[ProposedAction] = None,
        completed: Sequence[ActionBase] = (),
    ) -> StageResult:
        if self.content_schema is None:
            return StageResult.ok(dict(action.details))

        details = self.details_schema.model_validate(action.details)
        request = CompositionRequest(
            organization_id=action.organization_id or context.opportunity.organization_id or "",
            prompt=build_prompt(
                self.prompt_title,
                action,
                context,
                parent=parent,
                completed=completed,
                detail_lines=self.detail_lines(details),
                contact_emails=self.contact_emails(details),
                instructions=self.instructions,
            ),
            context=build_workflow_context(context, self.content_type, self.audience_type),
            action_mode=self.mode_for(parent),
        )

        timeout = self.settings.composition_timeout_seconds
        try:
            raw = await asyncio.wait_for(self.workflow.compose(request), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Composition for %s %s timed out", self.name, action.id,
                extra={"action_id": action.id, "action_type": self.name},
            )
            return StageResult.skipped(f"composition timed out after {timeout}s")
        except CompositionError as exc:
            logger.warning(
                "Composition for %s %s failed: %s", self.name, action.id, exc,
                extra={"action_id": action.id, "action_type": self.name, "error": str(exc)},
            )
            return StageResult.skipped(f"composition failed: {exc}")

        try:
            content = self.content_schema.model_validate(raw)
        except ValidationError as exc:
            return StageResult.skipped(f"composed content rejected: {summarize_errors(exc)}")

        return StageResult.ok(self.merge_content(action.details, content))

    @staticmethod
    def merge_content(details: dict, content: WireModel) -> dict:
        merged = dict(details)
        for key, value in content.to_wire().items():
            if key in PROTECTED_FIELDS:
                continue
            # Composition may fill gaps but never erase a known value
            if value is None and merged.get(key) is not None:
                continue
            merged[key] = value
        return merged

    def required_content_fields(self, details: dict) -> Sequence[str]:
        try:
            return self.details_schema.model_validate(details).required_content_fields()
        except ValidationError:
            return self.details_schema.CONTENT_FIELDS

    def missing_content(self, details: dict) -> List[str]:
        return [f for f in self.required_content_fields(details) if details.get(f) is None]

    def fallback_action(self, action: ActionBase, details: dict) -> Optional[ActionBase]:
        """Replacement action when composed content is not usable as-is."""
        return None

    # === EXECUTION ===

    @property
    def disabled(self) -> bool:
        return self.settings.is_disabled(self.name)

    async def execute(
        self,
        action: ActionBase,
        executing_user_id: str,
        tx: TransactionScope,
    ) -> ExecutionResult:
        if self.disabled:
            logger.info(
                "%s execution is disabled; nothing written for %s", self.name, action.id,
                extra={"action_id": action.id, "action_type": self.name},
            )
            return ExecutionResult(
                type=f"{self.name.lower()}_disabled",
                outcome=ExecutionOutcome.DISABLED,
            )
        details = self.details_schema.model_validate(action.details)
        return await self._execute(action, details, executing_user_id, tx)

    @abstractmethod
    async def _execute(
        self,
        action: ActionBase,
        details: ActionDetails,
        executing_user_id: str,
        tx: TransactionScope,
    ) -> ExecutionResult:
        ...

    def provenance(self, action: ActionBase, executing_user_id: str, **extra) -> dict:
        return {
            "source_action": action.id,
            "source_action_type": self.name,
            "created_by": executing_user_id,
            **extra,
        }
