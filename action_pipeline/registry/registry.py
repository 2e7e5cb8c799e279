"""
Action Registry — the single lookup surface from action type to handler.

Behavioral Contract:
- Built once per process from an explicit registration list, then frozen.
- A non-handler registration is logged and skipped; it never crashes startup.
- A duplicate type is a configuration error unless registered as an override.
- Read-only after freeze(); lookups take no lock.
- Hidden types (configuration) are left out of listings but stay executable.
"""

import logging
from functools import lru_cache
from typing import Callable, Dict, Iterable, List, Optional, Type

from action_pipeline.composition.workflow import CompositionWorkflow, build_workflow
from action_pipeline.config.settings import PipelineSettings, get_settings
from action_pipeline.handlers.add_contact import AddContactHandler
from action_pipeline.handlers.base import ActionHandler
from action_pipeline.handlers.call import CallHandler
from action_pipeline.handlers.email import EmailHandler
from action_pipeline.handlers.linkedin import LinkedInMessageHandler
from action_pipeline.handlers.lookup import LookupHandler
from action_pipeline.handlers.meeting import MeetingHandler
from action_pipeline.handlers.no_action import NoActionHandler
from action_pipeline.handlers.pipeline_stage import UpdatePipelineStageHandler
from action_pipeline.handlers.task import TaskHandler
from action_pipeline.store.document_store import DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_HANDLERS: List[Type[ActionHandler]] = [
    EmailHandler,
    CallHandler,
    TaskHandler,
    LinkedInMessageHandler,
    MeetingHandler,
    LookupHandler,
    NoActionHandler,
    UpdatePipelineStageHandler,
    AddContactHandler,
]


class RegistryConfigurationError(Exception):
    """Raised at startup for duplicate or post-freeze registrations."""
    pass


class ActionRegistry:
    def __init__(self, hidden_types: Iterable[str] = ()):
        self._handlers: Dict[str, ActionHandler] = {}
        self._hidden = frozenset(hidden_types)
        self._frozen = False

    def register(self, action_type: str, handler: object, override: bool = False) -> bool:
        """
        Register ``handler`` for ``action_type``.
        Returns False (and logs) when ``handler`` is not a usable handler.
        """
        if self._frozen:
            raise RegistryConfigurationError(
                f"Cannot register {action_type}: registry is frozen"
            )
        if not isinstance(handler, ActionHandler):
            logger.error(
                "Ignoring registration for %s: %r is not an ActionHandler", action_type, handler
            )
            return False
        if handler.name != action_type:
            logger.error(
                "Ignoring registration for %s: handler declares type %s",
                action_type, handler.name,
            )
            return False
        if action_type in self._handlers and not override:
            raise RegistryConfigurationError(f"Duplicate handler for action type {action_type}")
        if action_type in self._handlers:
            logger.info("Overriding handler for %s", action_type)

        self._handlers[action_type] = handler
        return True

    def freeze(self) -> "ActionRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get_handler(self, action_type: str) -> Optional[ActionHandler]:
        return self._handlers.get(action_type)

    def list_handlers(self, excluding: Optional[Iterable[str]] = None) -> List[ActionHandler]:
        """All handlers except ``excluding`` (default: the configured hidden types)."""
        excluded = self._hidden if excluding is None else frozenset(excluding)
        return [
            self._handlers[t] for t in self.list_types() if t not in excluded
        ]

    def list_types(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, action_type: str) -> bool:
        return action_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


def build_default_registry(
    settings: PipelineSettings,
    store: DocumentStore,
    workflow: CompositionWorkflow,
    clock: Optional[Callable] = None,
) -> ActionRegistry:
    """Register every built-in handler and freeze the registry."""
    registry = ActionRegistry(hidden_types=settings.hidden_action_types)
    for handler_cls in DEFAULT_HANDLERS:
        registry.register(handler_cls.name, handler_cls(store, workflow, settings, clock=clock))
    logger.info("Action registry ready with %d handlers", len(registry))
    return registry.freeze()


@lru_cache
def get_registry() -> ActionRegistry:
    """Process-wide registry, built on first use from environment settings."""
    settings = get_settings()
    store = get_document_store()
    return build_default_registry(settings, store, build_workflow(settings))


@lru_cache
def get_document_store() -> DocumentStore:
    settings = get_settings()
    return DocumentStore(settings.database_path, timeout_seconds=settings.store_timeout_seconds)
