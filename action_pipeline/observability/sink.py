"""Observability sink — consumes the structured events emitted by each stage."""

import logging
from typing import Protocol

from action_pipeline.models.results import StageEvent, StageStatus

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    def emit(self, event: StageEvent) -> None:
        ...


class LoggingEventSink:
    """Renders stage events as structured log lines."""

    def __init__(self, log: logging.Logger = logger):
        self._log = log

    def emit(self, event: StageEvent) -> None:
        level = logging.INFO if event.status == StageStatus.OK else logging.WARNING
        self._log.log(
            level,
            "%s %s: %s %s",
            event.action_type,
            event.action_id,
            event.stage.value,
            event.status.value,
            extra={
                "action_id": event.action_id,
                "action_type": event.action_type,
                "parent_id": event.parent_id,
                "stage": event.stage.value,
                "status": event.status.value,
                "detail": event.detail,
            },
        )
