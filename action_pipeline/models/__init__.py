"""Action Pipeline data models."""

from action_pipeline.models.action import (
    ActionBase,
    ActionStatus,
    ActionType,
    ProposedAction,
    SubAction,
    TERMINAL_STATUSES,
)
from action_pipeline.models.context import (
    ContactProfile,
    OpportunitySnapshot,
    PipelineContext,
    RecentActivity,
)
from action_pipeline.models.details import (
    ActionDetails,
    AddContactDetails,
    CallDetails,
    EmailAttachment,
    EmailDetails,
    LinkedInMessageDetails,
    LookupDetails,
    MeetingDetails,
    NoActionDetails,
    TaskDetails,
    UpdatePipelineStageDetails,
)
from action_pipeline.models.records import (
    Activity,
    ActivityType,
    CalendarActivity,
    Contact,
    EmailActivity,
    Opportunity,
    PipelineStage,
)
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

__all__ = [
    "ActionBase",
    "ActionDetails",
    "ActionRunRecord",
    "ActionStatus",
    "ActionType",
    "Activity",
    "ActivityType",
    "AddContactDetails",
    "CalendarActivity",
    "CallDetails",
    "Contact",
    "ContactProfile",
    "EmailActivity",
    "EmailAttachment",
    "EmailDetails",
    "ExecutionOutcome",
    "ExecutionResult",
    "LinkedInMessageDetails",
    "LookupDetails",
    "MeetingDetails",
    "NoActionDetails",
    "Opportunity",
    "OpportunitySnapshot",
    "PipelineContext",
    "PipelineRunRecord",
    "PipelineStage",
    "PipelineState",
    "ProposedAction",
    "RecentActivity",
    "RunInconsistency",
    "StageEvent",
    "StageResult",
    "StageStatus",
    "SubAction",
    "TERMINAL_STATUSES",
    "TaskDetails",
    "UpdatePipelineStageDetails",
]
