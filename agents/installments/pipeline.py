"""Scheduler entrypoints: status update, dispatch, or both in order."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.engine import Engine

from backend.apps.installments.repository import get_engine

from .config import as_utc
from .dispatch import NotificationDispatchEngine
from .dto import AgencyDispatchResult, AgencyStatusResult
from .providers import ChannelProvider
from .status_engine import StatusTransitionEngine
from .playbooks import TemplateEngine

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    status_results: list[AgencyStatusResult] = field(default_factory=list)
    dispatch_results: list[AgencyDispatchResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status_update": [r.to_dict() for r in self.status_results],
            "notifications": [r.to_dict() for r in self.dispatch_results],
        }


def run_status_update(
    engine: Engine | None = None, now: datetime | None = None, max_workers: int | None = None
) -> list[AgencyStatusResult]:
    return StatusTransitionEngine(engine or get_engine(), max_workers=max_workers).run_status_update(now)


def run_notification_dispatch(
    engine: Engine | None = None,
    now: datetime | None = None,
    provider: ChannelProvider | None = None,
    templates: TemplateEngine | None = None,
    max_workers: int | None = None,
) -> list[AgencyDispatchResult]:
    dispatcher = NotificationDispatchEngine(
        engine or get_engine(), provider=provider, templates=templates, max_workers=max_workers
    )
    return dispatcher.run_notification_dispatch(now)


def run_pipeline(
    engine: Engine | None = None,
    now: datetime | None = None,
    provider: ChannelProvider | None = None,
    templates: TemplateEngine | None = None,
    max_workers: int | None = None,
) -> PipelineResult:
    """Transition statuses first so dispatch sees freshly overdue rows.

    Both stages use the same reference instant. A ``JobFatalError`` in the
    status stage aborts before any notification is sent.
    """
    engine = engine or get_engine()
    now = as_utc(now)
    result = PipelineResult()
    result.status_results = run_status_update(engine, now, max_workers)
    result.dispatch_results = run_notification_dispatch(engine, now, provider, templates, max_workers)
    logger.info(
        "pipeline_finished",
        extra={
            "agencies": len(result.status_results),
            "transitioned": sum(r.updated_count for r in result.status_results),
            "sent": sum(r.sent for r in result.dispatch_results),
        },
    )
    return result
