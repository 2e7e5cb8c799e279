"""
Action Pipeline Orchestrator — walks a proposed action and its sub-actions
through validation, composition and execution.

State machine per action:

  PROPOSED -> validating -> composing -> executing -> COMPLETED
                  |             |            |
                  +-> CANCELLED +            +-> failed (status stays PROPOSED)

Behavioral Contract:
- Stages within one action are strictly sequential; each stage returns a
  new details value which is threaded into the next (no in-place mutation).
- Sub-actions run in topological levels before the main action composes.
  A dependency cycle or an unknown sibling reference cancels the whole action.
- A Skipped validation or composition cancels that action only. Cancelling
  a main action cascades to every sub-action that has not executed; executed
  sub-actions keep their side effects and are recorded as inconsistencies.
- Execution never starts while a required content field is null.
- Each execution runs in its own transaction. Missing entities fail the
  attempt without retry; store unavailability is retried up to
  max_execution_attempts. A disabled type completes without a write.
- A missing composition workflow configuration propagates to the caller.
  Sub-actions still running in that level are cancelled first, and the
  aborted run is recorded before the error is re-raised.
- Terminal actions are never re-processed.
- ``cancel`` cancels a main action from outside a run, with the same cascade.
  ``recompose`` refreshes a main action's content after its sub-actions
  changed; nothing executes.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence
from uuid import uuid4

from action_pipeline.audit.store import ActionAuditStore
from action_pipeline.composition.workflow import WorkflowNotConfiguredError
from action_pipeline.config.settings import PipelineSettings
from action_pipeline.handlers.base import ActionHandler, ValidationLookups, utc_now
from action_pipeline.models.action import ActionBase, ActionStatus, ProposedAction
from action_pipeline.models.context import PipelineContext
from action_pipeline.models.results import (
    ActionRunRecord,
    ExecutionOutcome,
    ExecutionResult,
    PipelineRunRecord,
    PipelineState,
    RunInconsistency,
    StageEvent,
    StageResult,
    StageStatus,
)
from action_pipeline.observability.log import bind_run_id, reset_run_id
from action_pipeline.observability.sink import EventSink, LoggingEventSink
from action_pipeline.pipeline.dependencies import (
    DependencyError,
    check_main_dependencies,
    order_sub_actions,
)
from action_pipeline.registry.registry import ActionRegistry
from action_pipeline.store.document_store import (
    DocumentStore,
    EntityNotFoundError,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)


class _ActionRun:
    """Mutable bookkeeping for one action while it moves through the pipeline."""

    def __init__(self, action: ActionBase, parent_id: Optional[str] = None):
        self.action = action
        self.parent_id = parent_id
        self.state = {
            ActionStatus.COMPLETED: PipelineState.COMPLETED,
            ActionStatus.CANCELLED: PipelineState.CANCELLED,
        }.get(action.status, PipelineState.PROPOSED)
        self.events: List[StageEvent] = []
        self.execution: Optional[ExecutionResult] = None
        self.error: Optional[str] = None
        self.attempts = 0
        self.converted_from: Optional[str] = None

    @property
    def has_side_effect(self) -> bool:
        if self.action.status != ActionStatus.COMPLETED:
            return False
        if self.execution is not None:
            return self.execution.outcome == ExecutionOutcome.EXECUTED
        # Completed in an earlier run
        return bool(self.action.resulting_record_ids)

    def to_record(self) -> ActionRunRecord:
        return ActionRunRecord(
            action_id=self.action.id,
            action_type=self.action.type,
            parent_id=self.parent_id,
            status=self.action.status,
            state=self.state,
            details=self.action.details,
            events=self.events,
            execution=self.execution,
            error=self.error,
            attempts=self.attempts,
            converted_from=self.converted_from,
        )


class ActionPipeline:
    def __init__(
        self,
        registry: ActionRegistry,
        store: DocumentStore,
        settings: Optional[PipelineSettings] = None,
        sink: Optional[EventSink] = None,
        audit_store: Optional[ActionAuditStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.registry = registry
        self.store = store
        self.settings = settings or PipelineSettings()
        self.sink = sink or LoggingEventSink()
        self.audit_store = audit_store
        self.clock = clock or utc_now

    # === ENTRY POINTS ===

    async def process(
        self,
        action: ProposedAction,
        context: PipelineContext,
        executing_user_id: str = "system",
    ) -> PipelineRunRecord:
        """Run one main action and its sub-actions to terminal (or failed) states."""
        run_id = f"run_{uuid4().hex[:12]}"
        token = bind_run_id(run_id)
        started_at = self.clock()

        main = _ActionRun(action)
        subs = self._sub_runs(action)
        inconsistencies: List[RunInconsistency] = []

        logger.info(
            "Processing %s %s with %d sub-action(s)", action.type, action.id, len(subs),
            extra={"action_id": action.id, "action_type": action.type},
        )
        try:
            await self._run_main(main, subs, inconsistencies, context, executing_user_id)
        except WorkflowNotConfiguredError as exc:
            logger.error(
                "Composition workflow is not configured; aborting %s", action.id,
                extra={"action_id": action.id, "action_type": action.type},
            )
            self._abort(main, subs, inconsistencies, f"run aborted: {exc}")
            self._finish(run_id, action, main, subs, inconsistencies, started_at)
            raise
        finally:
            reset_run_id(token)

        return self._finish(run_id, action, main, subs, inconsistencies, started_at)

    async def process_many(
        self,
        actions: Sequence[ProposedAction],
        context: PipelineContext,
        executing_user_id: str = "system",
    ) -> List[PipelineRunRecord]:
        """
        Process actions concurrently, one task each. Every action is allowed
        to finish; a fatal configuration error is re-raised afterwards.
        """
        results = await asyncio.gather(
            *(self.process(a, context, executing_user_id) for a in actions),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    def cancel(
        self, action: ProposedAction, reason: str = "cancelled by operator"
    ) -> PipelineRunRecord:
        """
        Cancel a main action outside of a run. Sub-actions that have not
        executed are cancelled with it; executed ones keep their side effects
        and are recorded as inconsistencies. Terminal actions are left alone.
        """
        run_id = f"run_{uuid4().hex[:12]}"
        token = bind_run_id(run_id)
        started_at = self.clock()

        main = _ActionRun(action)
        subs = self._sub_runs(action)
        inconsistencies: List[RunInconsistency] = []
        try:
            if action.is_terminal:
                self._event(main, main.state, StageStatus.SKIPPED, "action is already terminal")
            else:
                logger.info(
                    "Cancelling %s %s: %s", action.type, action.id, reason,
                    extra={"action_id": action.id, "action_type": action.type},
                )
                self._cancel(main, PipelineState.CANCELLED, StageResult.skipped(reason))
                self._cascade_cancel(main, subs, inconsistencies)
        finally:
            reset_run_id(token)

        return self._finish(run_id, action, main, subs, inconsistencies, started_at)

    def cancel_for_opportunity(
        self,
        actions: Sequence[ProposedAction],
        opportunity_id: str,
        reason: str = "opportunity is being reprocessed",
    ) -> List[PipelineRunRecord]:
        """Cancel every still-PROPOSED action on ``opportunity_id``. Others are untouched."""
        records = [
            self.cancel(action, reason)
            for action in actions
            if action.opportunity_id == opportunity_id and action.status == ActionStatus.PROPOSED
        ]
        logger.info(
            "Cancelled %d proposed action(s) for opportunity %s", len(records), opportunity_id,
            extra={"opportunity_id": opportunity_id},
        )
        return records

    async def recompose(
        self, action: ProposedAction, context: PipelineContext
    ) -> PipelineRunRecord:
        """
        Compose a main action again against the current state of its
        sub-actions, e.g. after one of them was edited or completed.

        Nothing executes and the action stays PROPOSED. When composition is
        skipped the previous content is kept. Invalid details cancel the
        action with the usual cascade.
        """
        run_id = f"run_{uuid4().hex[:12]}"
        token = bind_run_id(run_id)
        started_at = self.clock()

        main = _ActionRun(action)
        subs = self._sub_runs(action)
        inconsistencies: List[RunInconsistency] = []
        try:
            await self._recompose_main(main, subs, inconsistencies, context)
        finally:
            reset_run_id(token)

        return self._finish(run_id, action, main, subs, inconsistencies, started_at)

    # === RUN BOOKKEEPING ===

    @staticmethod
    def _sub_runs(action: ProposedAction) -> Dict[str, _ActionRun]:
        return {
            sub.id: _ActionRun(
                sub.model_copy(update={
                    "opportunity_id": sub.opportunity_id or action.opportunity_id,
                    "organization_id": sub.organization_id or action.organization_id,
                }),
                parent_id=action.id,
            )
            for sub in action.sub_actions
        }

    def _finish(
        self,
        run_id: str,
        action: ProposedAction,
        main: _ActionRun,
        subs: Dict[str, _ActionRun],
        inconsistencies: List[RunInconsistency],
        started_at: datetime,
    ) -> PipelineRunRecord:
        """Assemble the run record and append it to the audit store."""
        final_action = main.action.model_copy(update={
            "sub_actions": [subs[sub.id].action for sub in action.sub_actions],
        })
        record = PipelineRunRecord(
            id=run_id,
            action=final_action,
            main=main.to_record(),
            sub_actions=[subs[sub.id].to_record() for sub in action.sub_actions],
            inconsistencies=inconsistencies,
            started_at=started_at,
            finished_at=self.clock(),
        )
        if self.audit_store is not None:
            record = self.audit_store.append(record)
        return record

    # === MAIN ACTION ===

    async def _run_main(
        self,
        main: _ActionRun,
        subs: Dict[str, _ActionRun],
        inconsistencies: List[RunInconsistency],
        context: PipelineContext,
        executing_user_id: str,
    ) -> None:
        action = main.action
        if action.is_terminal:
            self._event(main, main.state, StageStatus.SKIPPED, "action is already terminal")
            return

        lookups = ValidationLookups.from_context(context)

        def cancel_all(stage: PipelineState, result: StageResult) -> None:
            self._cancel(main, stage, result)
            self._cascade_cancel(main, subs, inconsistencies)

        valid_sources = [i for i in action.source_activity_ids if i in lookups.valid_activity_ids]
        if action.source_activity_ids and not valid_sources:
            cancel_all(PipelineState.VALIDATING, StageResult.skipped("no valid source activities"))
            return
        main.action = action.model_copy(update={"source_activity_ids": valid_sources})

        handler = self.registry.get_handler(action.type)
        if handler is None:
            cancel_all(
                PipelineState.VALIDATING,
                StageResult.skipped(f"no handler registered for type {action.type}"),
            )
            return

        try:
            check_main_dependencies(action)
            levels = order_sub_actions(action.sub_actions)
        except DependencyError as exc:
            cancel_all(PipelineState.VALIDATING, StageResult.failed(str(exc)))
            return

        if not await self._validate(main, handler, context, lookups):
            self._cascade_cancel(main, subs, inconsistencies)
            return

        for level in levels:
            await self._run_level(level, main.action, subs, context, lookups, executing_user_id)

        completed = self._completed_dependencies(main.action, subs)
        handler = await self._compose(main, handler, context, parent=None, completed=completed)
        if handler is None:
            self._cascade_cancel(main, subs, inconsistencies)
            return

        await self._execute(main, handler, executing_user_id)

    async def _recompose_main(
        self,
        main: _ActionRun,
        subs: Dict[str, _ActionRun],
        inconsistencies: List[RunInconsistency],
        context: PipelineContext,
    ) -> None:
        if main.action.is_terminal:
            self._event(main, main.state, StageStatus.SKIPPED, "action is already terminal")
            return

        handler = self.registry.get_handler(main.action.type)
        if handler is None:
            self._cancel(
                main, PipelineState.VALIDATING,
                StageResult.skipped(f"no handler registered for type {main.action.type}"),
            )
            self._cascade_cancel(main, subs, inconsistencies)
            return

        lookups = ValidationLookups.from_context(context)
        if not await self._validate(main, handler, context, lookups):
            self._cascade_cancel(main, subs, inconsistencies)
            return

        main.state = PipelineState.COMPOSING
        completed = self._completed_dependencies(main.action, subs)
        result = await self._compose_with(handler, main.action, context, None, completed)
        missing = handler.missing_content(result.value) if result.is_ok else []

        if not result.is_ok:
            self._event(main, PipelineState.COMPOSING, result.status,
                        f"previous content kept: {result.message}")
        elif missing:
            self._event(main, PipelineState.COMPOSING, StageStatus.SKIPPED,
                        f"previous content kept: required content missing: {', '.join(missing)}")
        else:
            main.action = main.action.model_copy(update={"details": result.value})
            self._event(main, PipelineState.COMPOSING, StageStatus.OK, "recomposed")
        main.state = PipelineState.PROPOSED

    # === SUB-ACTIONS ===

    async def _run_level(
        self,
        level: Sequence[ActionBase],
        parent: ProposedAction,
        subs: Dict[str, _ActionRun],
        context: PipelineContext,
        lookups: ValidationLookups,
        executing_user_id: str,
    ) -> None:
        """Run one topological level concurrently. A fatal error stops its siblings."""
        tasks = [
            asyncio.ensure_future(
                self._run_sub(subs[sub.id], parent, subs, context, lookups, executing_user_id)
            )
            for sub in level
        ]
        try:
            await asyncio.gather(*tasks)
        except Exception:
            for task in tasks:
                task.cancel()
            # Cancelled siblings roll back before the error leaves this level
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _run_sub(
        self,
        run: _ActionRun,
        parent: ProposedAction,
        subs: Dict[str, _ActionRun],
        context: PipelineContext,
        lookups: ValidationLookups,
        executing_user_id: str,
    ) -> None:
        if run.action.is_terminal:
            return

        handler = self.registry.get_handler(run.action.type)
        if handler is None:
            self._cancel(
                run, PipelineState.VALIDATING,
                StageResult.skipped(f"no handler registered for type {run.action.type}"),
            )
            return

        if not await self._validate(run, handler, context, lookups):
            return

        completed = self._completed_dependencies(run.action, subs)
        handler = await self._compose(run, handler, context, parent=parent, completed=completed)
        if handler is None:
            return

        await self._execute(run, handler, executing_user_id)

    @staticmethod
    def _completed_dependencies(
        action: ActionBase, subs: Dict[str, _ActionRun]
    ) -> List[ActionBase]:
        return [
            subs[dep].action
            for dep in action.depends_on
            if dep in subs and subs[dep].action.status == ActionStatus.COMPLETED
        ]

    # === STAGES ===

    async def _validate(
        self,
        run: _ActionRun,
        handler: ActionHandler,
        context: PipelineContext,
        lookups: ValidationLookups,
    ) -> bool:
        run.state = PipelineState.VALIDATING
        try:
            result = await handler.validate_details(run.action, context, lookups)
        except Exception as exc:
            logger.exception(
                "Validation of %s raised", run.action.id,
                extra={"action_id": run.action.id, "action_type": run.action.type},
            )
            result = StageResult.failed(f"validation raised {type(exc).__name__}: {exc}")

        if not result.is_ok:
            self._cancel(run, PipelineState.VALIDATING, result)
            return False

        run.action = run.action.model_copy(update={"details": result.value})
        self._event(run, PipelineState.VALIDATING, StageStatus.OK)
        return True

    async def _compose(
        self,
        run: _ActionRun,
        handler: ActionHandler,
        context: PipelineContext,
        parent: Optional[ProposedAction],
        completed: Sequence[ActionBase],
    ) -> Optional[ActionHandler]:
        """Compose content. Returns the handler that will execute, or None when cancelled."""
        run.state = PipelineState.COMPOSING
        result = await self._compose_with(handler, run.action, context, parent, completed)
        if not result.is_ok:
            self._cancel(run, PipelineState.COMPOSING, result)
            return None

        details = result.value
        fallback = handler.fallback_action(run.action, details)
        if fallback is not None:
            return await self._convert(run, fallback, context, parent, completed)

        missing = handler.missing_content(details)
        if missing:
            self._cancel(
                run, PipelineState.COMPOSING,
                StageResult.skipped(f"required content missing: {', '.join(missing)}"),
            )
            return None

        run.action = run.action.model_copy(update={"details": details})
        self._event(run, PipelineState.COMPOSING, StageStatus.OK)
        return handler

    async def _compose_with(
        self,
        handler: ActionHandler,
        action: ActionBase,
        context: PipelineContext,
        parent: Optional[ProposedAction],
        completed: Sequence[ActionBase],
    ) -> StageResult:
        try:
            return await handler.compose_content(action, context, parent=parent, completed=completed)
        except WorkflowNotConfiguredError:
            raise
        except Exception as exc:
            logger.exception(
                "Composition of %s raised", action.id,
                extra={"action_id": action.id, "action_type": action.type},
            )
            return StageResult.failed(f"composition raised {type(exc).__name__}: {exc}")

    async def _convert(
        self,
        run: _ActionRun,
        replacement: ActionBase,
        context: PipelineContext,
        parent: Optional[ProposedAction],
        completed: Sequence[ActionBase],
    ) -> Optional[ActionHandler]:
        """Swap an action for its fallback (LOOKUP -> TASK) and compose that instead."""
        handler = self.registry.get_handler(replacement.type)
        if handler is None:
            self._cancel(
                run, PipelineState.COMPOSING,
                StageResult.skipped(f"composed content not usable and no {replacement.type} handler"),
            )
            return None

        self._event(
            run, PipelineState.COMPOSING, StageStatus.OK,
            f"converted {run.action.type} to {replacement.type}",
        )
        run.converted_from = run.action.type
        run.action = replacement

        result = await self._compose_with(handler, replacement, context, parent, completed)
        if result.is_ok:
            run.action = replacement.model_copy(update={"details": result.value})
        else:
            # Keep the basic replacement details
            self._event(run, PipelineState.COMPOSING, result.status, result.message)

        missing = handler.missing_content(run.action.details)
        if missing:
            self._cancel(
                run, PipelineState.COMPOSING,
                StageResult.skipped(f"required content missing: {', '.join(missing)}"),
            )
            return None
        return handler

    async def _execute(
        self, run: _ActionRun, handler: ActionHandler, executing_user_id: str
    ) -> None:
        missing = handler.missing_content(run.action.details)
        if missing:
            self._cancel(
                run, PipelineState.EXECUTING,
                StageResult.skipped(f"required content missing: {', '.join(missing)}"),
            )
            return

        run.state = PipelineState.EXECUTING
        max_attempts = self.settings.max_execution_attempts
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            run.attempts = attempt
            try:
                async with self.store.transaction() as tx:
                    result = await handler.execute(run.action, executing_user_id, tx)
            except StoreUnavailableError as exc:
                last_error = exc
                logger.warning(
                    "Execution of %s attempt %d/%d failed: %s",
                    run.action.id, attempt, max_attempts, exc,
                    extra={"action_id": run.action.id, "attempt": attempt, "error": str(exc)},
                )
                continue
            except EntityNotFoundError as exc:
                self._fail(run, f"execution precondition failed: {exc}")
                return
            except Exception as exc:
                logger.exception(
                    "Execution of %s raised", run.action.id,
                    extra={"action_id": run.action.id, "action_type": run.action.type},
                )
                self._fail(run, f"execution raised {type(exc).__name__}: {exc}")
                return
            else:
                self._complete(run, result)
                return

        self._fail(run, f"execution failed after {max_attempts} attempt(s): {last_error}")

    # === TRANSITIONS ===

    def _complete(self, run: _ActionRun, result: ExecutionResult) -> None:
        update = {"status": ActionStatus.COMPLETED}
        if result.outcome == ExecutionOutcome.EXECUTED:
            update["executed_at"] = self.clock()
            if result.created_record_id:
                update["resulting_record_ids"] = [
                    *run.action.resulting_record_ids, result.created_record_id,
                ]
        run.action = run.action.model_copy(update=update)
        run.execution = result
        run.state = PipelineState.COMPLETED
        self._event(run, PipelineState.EXECUTING, StageStatus.OK, f"{result.outcome.value}: {result.type}")

    def _fail(
        self, run: _ActionRun, error: str, stage: PipelineState = PipelineState.EXECUTING
    ) -> None:
        run.error = error
        run.state = PipelineState.FAILED
        self._event(run, stage, StageStatus.FAILED, error)

    def _abort(
        self,
        main: _ActionRun,
        subs: Dict[str, _ActionRun],
        inconsistencies: List[RunInconsistency],
        error: str,
    ) -> None:
        """A fatal error stopped the run. Unfinished actions stay PROPOSED for a later run."""
        for run in (main, *subs.values()):
            if not run.action.is_terminal and run.state != PipelineState.FAILED:
                self._fail(run, error, stage=run.state)
        for sub in subs.values():
            if sub.has_side_effect:
                self._record_side_effect(
                    main, sub, inconsistencies,
                    f"Sub-action {sub.action.id} executed before the run of "
                    f"{main.action.id} was aborted; its side effect stands",
                )

    def _cancel(self, run: _ActionRun, stage: PipelineState, result: StageResult) -> None:
        if run.action.is_terminal:
            return
        run.action = run.action.model_copy(update={"status": ActionStatus.CANCELLED})
        run.state = PipelineState.CANCELLED
        if result.status == StageStatus.FAILED:
            run.error = result.error
        self._event(run, stage, result.status, result.message)

    def _cascade_cancel(
        self,
        main: _ActionRun,
        subs: Dict[str, _ActionRun],
        inconsistencies: List[RunInconsistency],
    ) -> None:
        for sub in subs.values():
            if sub.has_side_effect:
                self._record_side_effect(
                    main, sub, inconsistencies,
                    f"Sub-action {sub.action.id} executed before main action "
                    f"{main.action.id} was cancelled; its side effect stands",
                )
                continue
            self._cancel(
                sub, PipelineState.CANCELLED,
                StageResult.skipped(f"main action {main.action.id} cancelled"),
            )

    @staticmethod
    def _record_side_effect(
        main: _ActionRun,
        sub: _ActionRun,
        inconsistencies: List[RunInconsistency],
        description: str,
    ) -> None:
        inconsistencies.append(RunInconsistency(
            action_id=main.action.id,
            sub_action_id=sub.action.id,
            sub_action_type=sub.action.type,
            created_record_ids=list(sub.action.resulting_record_ids),
            description=description,
        ))
        logger.warning(
            "Sub-action %s already executed; main action %s did not complete",
            sub.action.id, main.action.id,
            extra={"action_id": sub.action.id, "parent_id": main.action.id},
        )

    def _event(
        self,
        run: _ActionRun,
        stage: PipelineState,
        status: StageStatus,
        detail: Optional[str] = None,
    ) -> None:
        event = StageEvent(
            action_id=run.action.id,
            action_type=run.action.type,
            parent_id=run.parent_id,
            stage=stage,
            status=status,
            detail=detail,
            at=self.clock(),
        )
        run.events.append(event)
        self.sink.emit(event)
