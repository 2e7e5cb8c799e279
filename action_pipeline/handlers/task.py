"""TASK — an internal to-do for the rep. Execution is feature-flagged off by default."""

from datetime import date, datetime, time, timezone
from typing import List

from action_pipeline.handlers.base import ActionHandler, ValidationLookups, new_record_id
from action_pipeline.models.action import ActionBase, ActionType
from action_pipeline.models.composed import ComposedTask
from action_pipeline.models.context import PipelineContext
from action_pipeline.models.details import TaskDetails
from action_pipeline.models.records import Activity, ActivityType
from action_pipeline.models.results import ExecutionResult, StageResult
from action_pipeline.store.document_store import TransactionScope


class TaskHandler(ActionHandler):
    name = ActionType.TASK.value
    description = "Create an internal task for the rep, due on a given date."
    details_schema = TaskDetails
    content_schema = ComposedTask

    content_type = "task"
    audience_type = "internal_user"
    prompt_title = "Task Composition Request"
    instructions = (
        "Give the task a short, action-oriented title",
        "Describe the steps to complete it in HTML",
        "State what done looks like",
    )

    async def apply_rules(
        self,
        action: ActionBase,
        details: TaskDetails,
        context: PipelineContext,
        lookups: ValidationLookups,
    ) -> StageResult:
        try:
            due = date.fromisoformat(details.due_date)
        except ValueError:
            return StageResult.skipped(f"invalid due date {details.due_date}")

        # Anything before tomorrow 00:00 local is clamped to tomorrow
        tomorrow = self.tomorrow()
        if due < tomorrow:
            return StageResult.ok(details.model_copy(update={"due_date": tomorrow.isoformat()}))
        return StageResult.ok(details)

    def detail_lines(self, details: TaskDetails) -> List[str]:
        return [f"**Task:** {details.title}", f"**Due Date:** {details.due_date}"]

    async def _execute(
        self,
        action: ActionBase,
        details: TaskDetails,
        executing_user_id: str,
        tx: TransactionScope,
    ) -> ExecutionResult:
        opportunity = await tx.require_opportunity(action.opportunity_id)
        due = datetime.combine(date.fromisoformat(details.due_date), time.min, tzinfo=timezone.utc)

        task = Activity(
            id=new_record_id("task"),
            type=ActivityType.TASK,
            opportunity_id=opportunity.id,
            organization_id=opportunity.organization_id,
            title=details.title,
            description=details.description,
            date=due,
            status="to_do",
            metadata=self.provenance(action, executing_user_id),
        )
        await tx.insert_activity(task)

        return ExecutionResult(type="task_created", created_record_id=task.id)
