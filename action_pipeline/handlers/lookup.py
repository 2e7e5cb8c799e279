"""
LOOKUP — answer a research question for the rep. Always composes in lookup mode.

A lookup whose answer is empty, low-confidence, or a "not found" reply is
converted into a TASK asking the rep to do the research by hand.
"""

from typing import List, Optional

from action_pipeline.handlers.base import ActionHandler
from action_pipeline.models.action import ActionBase, ActionType
from action_pipeline.models.composed import ComposedLookup
from action_pipeline.models.details import LookupDetails
from action_pipeline.models.results import ExecutionResult
from action_pipeline.store.document_store import TransactionScope

MIN_USEFUL_CONFIDENCE = 0.3

NOT_FOUND_PATTERNS = (
    "no information found",
    "could not find",
    "unable to locate",
    "no data available",
    "not found",
    "no results",
    "not accessible",
)


def is_useful_answer(details: dict) -> bool:
    answer = (details.get("answer") or "").strip()
    if not answer:
        return False
    confidence = details.get("confidence")
    if isinstance(confidence, (int, float)) and confidence < MIN_USEFUL_CONFIDENCE:
        return False
    lowered = answer.lower()
    return not any(pattern in lowered for pattern in NOT_FOUND_PATTERNS)


class LookupHandler(ActionHandler):
    name = ActionType.LOOKUP.value
    description = (
        "Look up a fact needed by another action (company news, a contact's "
        "role, pricing history) and record the answer with its sources."
    )
    details_schema = LookupDetails
    content_schema = ComposedLookup

    content_type = "lookup"
    audience_type = "internal_user"
    prompt_title = "Information Lookup Request"
    instructions = (
        "Answer the query directly and concisely",
        "List the sources the answer is based on",
        "Give a confidence score between 0 and 1",
        "Say plainly when the information could not be found",
    )
    always_lookup = True

    def detail_lines(self, details: LookupDetails) -> List[str]:
        return [f"**Query:** {details.query}"]

    def fallback_action(self, action: ActionBase, details: dict) -> Optional[ActionBase]:
        if is_useful_answer(details):
            return None
        query = details.get("query") or action.details.get("query") or "Information needed"
        return action.model_copy(update={
            "type": ActionType.TASK.value,
            "details": {
                "title": f"Research: {query}"[:100],
                "dueDate": self.tomorrow().isoformat(),
                "description": query,
            },
        })

    async def _execute(
        self,
        action: ActionBase,
        details: LookupDetails,
        executing_user_id: str,
        tx: TransactionScope,
    ) -> ExecutionResult:
        # The answer lives in the action's details; nothing else to write
        await tx.require_opportunity(action.opportunity_id)
        return ExecutionResult(
            type="lookup_recorded",
            data={"answer": details.answer, "confidence": details.confidence},
        )
