"""
Stage and run results.

Every pipeline stage returns a StageResult instead of ``None``-as-skip, so
"validly absent" can never be confused with "succeeded with no data".
"""

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel

from action_pipeline.models.action import ActionStatus, ProposedAction


class StageStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


class StageResult(BaseModel):
    """Ok(value) | Skipped(reason) | Failed(error)."""

    status: StageStatus
    value: Optional[Any] = None
    reason: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, value: Any = None) -> "StageResult":
        return cls(status=StageStatus.OK, value=value)

    @classmethod
    def skipped(cls, reason: str) -> "StageResult":
        return cls(status=StageStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, error: str) -> "StageResult":
        return cls(status=StageStatus.FAILED, error=error)

    @property
    def is_ok(self) -> bool:
        return self.status == StageStatus.OK

    @property
    def message(self) -> Optional[str]:
        return self.reason or self.error


class ExecutionOutcome(str, Enum):
    EXECUTED = "executed"
    DISABLED = "disabled"     # deliberate no-op, neither success nor failure


class ExecutionResult(BaseModel):
    """Small descriptor returned by a handler's execute."""

    type: str                             # e.g. "call_scheduled", "task_disabled"
    outcome: ExecutionOutcome = ExecutionOutcome.EXECUTED
    created_record_id: Optional[str] = None
    scheduled_for: Optional[str] = None
    data: dict = {}


class PipelineState(str, Enum):
    PROPOSED = "proposed"
    VALIDATING = "validating"
    COMPOSING = "composing"
    EXECUTING = "executing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"         # execution failed; action stays PROPOSED


class StageEvent(BaseModel):
    action_id: str
    action_type: str
    parent_id: Optional[str] = None
    stage: PipelineState
    status: StageStatus
    detail: Optional[str] = None
    at: datetime


class RunInconsistency(BaseModel):
    """A sub-action whose side effect stands although its main action was cancelled."""

    action_id: str
    sub_action_id: str
    sub_action_type: str
    created_record_ids: List[str] = []
    description: str


class ActionRunRecord(BaseModel):
    """Outcome of walking one action (main or sub) through the pipeline."""

    action_id: str
    action_type: str
    parent_id: Optional[str] = None
    status: ActionStatus
    state: PipelineState
    details: dict = {}
    events: List[StageEvent] = []
    execution: Optional[ExecutionResult] = None
    error: Optional[str] = None
    attempts: int = 0
    converted_from: Optional[str] = None   # original type when a LOOKUP became a TASK


class PipelineRunRecord(BaseModel):
    """
    One run of a main action and its sub-actions.
    Appended to the audit store; the signature chains it to the prior run.
    """

    id: str
    action: ProposedAction
    main: ActionRunRecord
    sub_actions: List[ActionRunRecord] = []
    inconsistencies: List[RunInconsistency] = []
    started_at: datetime
    finished_at: Optional[datetime] = None

    # INTEGRITY
    signature: str = ""
    prior_record_hash: Optional[str] = None
