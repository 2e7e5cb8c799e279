"""Proposed Action — the unit of work flowing through the Action Pipeline."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from action_pipeline.models.base import WireModel


class ActionType(str, Enum):
    """Built-in action types. The registry is keyed by the string value."""

    EMAIL = "EMAIL"
    CALL = "CALL"
    TASK = "TASK"
    LINKEDIN_MESSAGE = "LINKEDIN_MESSAGE"
    MEETING = "MEETING"
    LOOKUP = "LOOKUP"
    NO_ACTION = "NO_ACTION"
    UPDATE_PIPELINE_STAGE = "UPDATE_PIPELINE_STAGE"
    ADD_CONTACT = "ADD_CONTACT"


class ActionStatus(str, Enum):
    PROPOSED = "PROPOSED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({ActionStatus.COMPLETED, ActionStatus.CANCELLED})


class ActionBase(WireModel):
    """
    Fields shared by main actions and sub-actions.

    ``type`` is a plain string so that types unknown to the registry still
    parse and resolve to "no handler" instead of rejecting the whole graph.
    ``details`` holds the raw payload; content fields stay null until
    composition fills them.
    """

    id: str
    type: str
    opportunity_id: Optional[str] = None
    organization_id: Optional[str] = None
    details: dict = {}
    reasoning: str = ""
    source_activity_ids: List[str] = []
    depends_on: List[str] = []                 # sibling sub-action ids
    priority: int = 0
    status: ActionStatus = ActionStatus.PROPOSED

    # Set by the pipeline after execution
    resulting_record_ids: List[str] = []
    executed_at: Optional[datetime] = None
    created_by: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class SubAction(ActionBase):
    """A prerequisite step nested under a main action. Composes in lookup mode."""


class ProposedAction(ActionBase):
    """A main action tied directly to an opportunity, with one level of sub-actions."""

    opportunity_id: str
    sub_actions: List[SubAction] = []

    def get_sub_action(self, sub_action_id: str) -> Optional[SubAction]:
        for sub in self.sub_actions:
            if sub.id == sub_action_id:
                return sub
        return None
