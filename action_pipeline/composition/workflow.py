"""
Composition Workflow Client — delegates content generation to the AI
content-composition workflow service.

Behavioral Contract:
- Request: {organizationId, prompt, context: {contentType, audienceType,
  dealStage, customerInfo}, actionMode: "composition" | "lookup"}.
- Response: a JSON object (optionally wrapped in "result" / "schemaResult") which the
  caller validates against the per-type composed-content schema.
- Transport and protocol errors raise CompositionError (soft: the caller
  cancels only the affected action).
- A missing workflow URL raises WorkflowNotConfiguredError (deployment defect).
"""

import logging
from enum import Enum
from typing import Optional, Protocol

import httpx

from action_pipeline.config.settings import PipelineSettings
from action_pipeline.models.base import WireModel

logger = logging.getLogger(__name__)


class CompositionError(Exception):
    """The workflow call failed or returned an unusable payload."""
    pass


class WorkflowNotConfiguredError(Exception):
    """No composition workflow is configured. Fatal: the deployment is broken."""
    pass


class ActionMode(str, Enum):
    COMPOSITION = "composition"   # full generation, main actions
    LOOKUP = "lookup"             # derive from completed results, sub-actions


class CompositionContext(WireModel):
    content_type: str             # email | call_purpose | task | linkedin_message | ...
    audience_type: str            # sales_prospect | internal_user
    deal_stage: str
    customer_info: str


class CompositionRequest(WireModel):
    organization_id: str
    prompt: str
    context: CompositionContext
    action_mode: ActionMode


class CompositionWorkflow(Protocol):
    async def compose(self, request: CompositionRequest) -> dict:
        ...


class HttpCompositionWorkflow:
    """Calls the composition workflow over HTTP."""

    def __init__(
        self,
        url: Optional[str],
        api_key: Optional[str] = None,
        timeout_seconds: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout_seconds
        self._transport = transport

    async def compose(self, request: CompositionRequest) -> dict:
        if not self.url:
            raise WorkflowNotConfiguredError(
                "Content composition workflow URL is not configured "
                "(set ACTION_PIPELINE_COMPOSITION_WORKFLOW_URL)"
            )

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=request.to_wire(), headers=headers)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Composition workflow returned HTTP %s", e.response.status_code,
                extra={"error": e.response.text},
            )
            raise CompositionError(f"workflow returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("Composition workflow request failed: %s", e, extra={"error": str(e)})
            raise CompositionError(f"workflow request failed: {e}") from e
        except ValueError as e:
            raise CompositionError("workflow response is not valid JSON") from e

        # Unwrap {"result": {"schemaResult": {...}}} envelopes
        for key in ("result", "schemaResult"):
            if isinstance(payload, dict) and isinstance(payload.get(key), dict):
                payload = payload[key]
        if not isinstance(payload, dict):
            raise CompositionError("workflow response is not a JSON object")
        return payload


def build_workflow(settings: PipelineSettings) -> HttpCompositionWorkflow:
    return HttpCompositionWorkflow(
        url=settings.composition_workflow_url,
        api_key=settings.composition_api_key,
        timeout_seconds=settings.composition_timeout_seconds,
    )
