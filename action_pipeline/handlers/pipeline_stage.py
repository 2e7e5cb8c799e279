"""UPDATE_PIPELINE_STAGE — move the opportunity to another stage of its pipeline."""

from action_pipeline.handlers.base import ActionHandler, ValidationLookups
from action_pipeline.models.action import ActionBase, ActionType
from action_pipeline.models.context import PipelineContext
from action_pipeline.models.details import UpdatePipelineStageDetails
from action_pipeline.models.results import ExecutionResult, StageResult
from action_pipeline.store.document_store import EntityNotFoundError, TransactionScope


class UpdatePipelineStageHandler(ActionHandler):
    name = ActionType.UPDATE_PIPELINE_STAGE.value
    description = (
        "Move the opportunity to a different stage of its pipeline when the "
        "deal has progressed (or regressed) past its current stage's criteria."
    )
    details_schema = UpdatePipelineStageDetails

    async def apply_rules(
        self,
        action: ActionBase,
        details: UpdatePipelineStageDetails,
        context: PipelineContext,
        lookups: ValidationLookups,
    ) -> StageResult:
        opportunity = context.opportunity
        if details.target_stage_id == opportunity.stage_id:
            return StageResult.skipped("target stage is the current stage")

        stage = await self.store.get_pipeline_stage(details.target_stage_id, opportunity.pipeline_id)
        if stage is None:
            return StageResult.skipped(
                f"stage {details.target_stage_id} is not in pipeline {opportunity.pipeline_id}"
            )
        # The stored name is authoritative
        return StageResult.ok(details.model_copy(update={"target_stage_name": stage.name}))

    async def _execute(
        self,
        action: ActionBase,
        details: UpdatePipelineStageDetails,
        executing_user_id: str,
        tx: TransactionScope,
    ) -> ExecutionResult:
        opportunity = await tx.require_opportunity(action.opportunity_id)
        target = await tx.get_pipeline_stage(details.target_stage_id, opportunity.pipeline_id)
        if target is None:
            raise EntityNotFoundError(
                f"Stage {details.target_stage_id} not found in pipeline {opportunity.pipeline_id}"
            )

        old_stage = None
        if opportunity.stage_id:
            old_stage = await tx.get_pipeline_stage(opportunity.stage_id, opportunity.pipeline_id)

        await tx.save_opportunity(opportunity.model_copy(update={"stage_id": target.id}))

        return ExecutionResult(
            type="pipeline_stage_updated",
            created_record_id=opportunity.id,
            data={
                "old_stage_id": opportunity.stage_id,
                "old_stage_name": old_stage.name if old_stage else "Unknown",
                "new_stage_id": target.id,
                "new_stage_name": target.name,
            },
        )
