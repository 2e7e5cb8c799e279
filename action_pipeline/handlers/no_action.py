"""NO_ACTION — nothing to do now; revisit the opportunity on the review date."""

from datetime import date

from action_pipeline.handlers.base import ActionHandler, ValidationLookups
from action_pipeline.models.action import ActionBase, ActionType
from action_pipeline.models.context import PipelineContext
from action_pipeline.models.details import NoActionDetails
from action_pipeline.models.results import ExecutionResult, StageResult
from action_pipeline.store.document_store import TransactionScope


class NoActionHandler(ActionHandler):
    name = ActionType.NO_ACTION.value
    description = (
        "No action is needed at this time. Records when the opportunity "
        "should next be reviewed."
    )
    details_schema = NoActionDetails

    async def apply_rules(
        self,
        action: ActionBase,
        details: NoActionDetails,
        context: PipelineContext,
        lookups: ValidationLookups,
    ) -> StageResult:
        try:
            review = date.fromisoformat(details.next_review_date)
        except ValueError:
            return StageResult.skipped(f"invalid review date {details.next_review_date}")
        if review <= self.today():
            return StageResult.ok(details.model_copy(
                update={"next_review_date": self.tomorrow().isoformat()}
            ))
        return StageResult.ok(details)

    async def _execute(
        self,
        action: ActionBase,
        details: NoActionDetails,
        executing_user_id: str,
        tx: TransactionScope,
    ) -> ExecutionResult:
        return ExecutionResult(
            type="no_action_logged",
            data={"next_review_date": details.next_review_date},
        )
