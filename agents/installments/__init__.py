"""Installment lifecycle and notification engine.

Scheduled, tenant-isolated batch processing for payment plan installments:
time-based status transitions, due-soon classification, at-most-once
notification dispatch and commission figures.

Key Components:
- Config: per-agency timezone, cutoff, due-soon window and channels
- Status engine: guarded pending -> overdue transitions
- Policies: due-soon / overdue predicates
- Dispatch: reserve-before-send notifications and college digests
- Commission: earned and outstanding commission
- Job ledger / activity: run history and audit feed

Every call takes the agency explicitly; nothing relies on ambient tenant state.
"""

__version__ = "1.0.0"

from .commission import CommissionRepository, summarize_plan
from .config import AgencyConfig, TenantConfigProvider
from .dispatch import NotificationDispatchEngine
from .dto import (
    AgencyDispatchResult,
    AgencyStatusResult,
    Channel,
    InstallmentStatus,
    NotificationType,
)
from .errors import (
    DedupConflict,
    InstallmentEngineError,
    JobFatalError,
    ProviderDeliveryError,
    TenantConfigError,
    TransitionConflict,
)
from .job_ledger import JobRunLedger
from .pipeline import run_notification_dispatch, run_pipeline, run_status_update
from .policies import DueSoonClassifier, is_due_soon
from .status_engine import StatusTransitionEngine

__all__ = [
    "AgencyConfig",
    "TenantConfigProvider",
    "StatusTransitionEngine",
    "NotificationDispatchEngine",
    "DueSoonClassifier",
    "is_due_soon",
    "CommissionRepository",
    "summarize_plan",
    "JobRunLedger",
    "AgencyStatusResult",
    "AgencyDispatchResult",
    "InstallmentStatus",
    "NotificationType",
    "Channel",
    "InstallmentEngineError",
    "TenantConfigError",
    "TransitionConflict",
    "DedupConflict",
    "ProviderDeliveryError",
    "JobFatalError",
    "run_status_update",
    "run_notification_dispatch",
    "run_pipeline",
]
