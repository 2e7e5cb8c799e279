"""
Action Pipeline API — FastAPI endpoints.

Exposes:
- Registry enumeration (offerable action types, handler schemas)
- Pipeline runs for a batch of proposed actions
- Audit queries over past runs
"""

from typing import List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from action_pipeline.audit.store import ActionAuditStore
from action_pipeline.composition.workflow import (
    CompositionWorkflow,
    WorkflowNotConfiguredError,
    build_workflow,
)
from action_pipeline.config.settings import PipelineSettings, get_settings
from action_pipeline.models.action import ProposedAction
from action_pipeline.models.context import PipelineContext
from action_pipeline.observability.log import configure_logging
from action_pipeline.pipeline.orchestrator import ActionPipeline
from action_pipeline.registry.registry import (
    ActionRegistry,
    build_default_registry,
    get_document_store,
    get_registry,
)
from action_pipeline.store.document_store import DocumentStore


# --- Request/Response Models ---

class PipelineRunRequest(BaseModel):
    actions: List[ProposedAction]
    context: PipelineContext
    executing_user_id: str = "api_user"


class HandlerInfo(BaseModel):
    type: str
    description: str
    hidden: bool
    disabled: bool
    details_schema: dict


# --- Application Factory ---

def create_app(
    settings: Optional[PipelineSettings] = None,
    store: Optional[DocumentStore] = None,
    workflow: Optional[CompositionWorkflow] = None,
    registry: Optional[ActionRegistry] = None,
    audit_store: Optional[ActionAuditStore] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.
    With nothing injected, the process-wide store and registry are used.
    A supplied ``registry`` must have been built against the same ``store``.
    """
    cfg = settings or get_settings()
    configure_logging(cfg.log_level, cfg.log_json)

    app = FastAPI(
        title="Action Pipeline API",
        description="Validates, composes and executes AI-proposed sales actions",
        version="0.1.0",
    )

    # Initialize components
    if settings is None and store is None and workflow is None and registry is None:
        ds = get_document_store()
        reg = get_registry()
    else:
        ds = store or DocumentStore(cfg.database_path, timeout_seconds=cfg.store_timeout_seconds)
        wf = workflow or build_workflow(cfg)
        reg = registry or build_default_registry(cfg, ds, wf)
    audit = audit_store or ActionAuditStore(cfg.audit_database_path)
    pipeline = ActionPipeline(reg, ds, cfg, audit_store=audit)

    # Store components on app state for access in endpoints
    app.state.settings = cfg
    app.state.document_store = ds
    app.state.registry = reg
    app.state.audit_store = audit
    app.state.pipeline = pipeline

    @app.get("/health")
    def health():
        return {"status": "ok", "handlers": len(reg)}

    # === REGISTRY ===

    @app.get("/actions/types")
    def list_types():
        return {"types": reg.list_types()}

    @app.get("/actions/handlers", response_model=List[HandlerInfo])
    def list_handlers(include_hidden: bool = False):
        handlers = reg.list_handlers(excluding=() if include_hidden else None)
        hidden = cfg.hidden_types()
        return [
            HandlerInfo(
                type=h.name,
                description=h.description,
                hidden=h.name in hidden,
                disabled=h.disabled,
                details_schema=h.details_schema.model_json_schema(),
            )
            for h in handlers
        ]

    @app.get("/actions/types/{action_type}", response_model=HandlerInfo)
    def get_handler(action_type: str):
        handler = reg.get_handler(action_type)
        if handler is None:
            raise HTTPException(404, "Action type not found")
        return HandlerInfo(
            type=handler.name,
            description=handler.description,
            hidden=handler.name in cfg.hidden_types(),
            disabled=handler.disabled,
            details_schema=handler.details_schema.model_json_schema(),
        )

    # === PIPELINE ===

    @app.post("/pipeline/run")
    async def run_pipeline(req: PipelineRunRequest):
        try:
            records = await pipeline.process_many(req.actions, req.context, req.executing_user_id)
        except WorkflowNotConfiguredError as exc:
            raise HTTPException(503, str(exc))
        return {"runs": [r.model_dump(mode="json") for r in records]}

    # === AUDIT ===

    @app.get("/audit/runs")
    def list_runs(
        action_id: Optional[str] = None,
        opportunity_id: Optional[str] = None,
        limit: int = 50,
    ):
        if action_id:
            records = audit.query_by_action(action_id)
        elif opportunity_id:
            records = audit.query_by_opportunity(opportunity_id)
        else:
            records = audit.query_recent(limit)
        return [r.model_dump(mode="json") for r in records]

    @app.get("/audit/runs/{run_id}")
    def get_run(run_id: str):
        record = audit.get_by_id(run_id)
        if not record:
            raise HTTPException(404, "Run not found")
        return record.model_dump(mode="json")

    @app.get("/audit/inconsistencies")
    def list_inconsistencies():
        return [
            i.model_dump(mode="json")
            for r in audit.query_inconsistent()
            for i in r.inconsistencies
        ]

    @app.get("/audit/verify")
    def verify_chain():
        return {"valid": audit.verify_chain_integrity(), "count": audit.count()}

    return app


# Default application instance
app = create_app()
