"""Scheduler entrypoint for installment jobs.

Usage:
    python -m tools.operate.installments_run status-update
    python -m tools.operate.installments_run dispatch --dry-run
    python -m tools.operate.installments_run run --now 2025-01-15T08:00:00+00:00
    python -m tools.operate.installments_run job-health --job update-installment-statuses
    python -m tools.operate.installments_run commission --agency <id> --plan <id>
"""

from __future__ import annotations

import argparse
import json
import logging
from datetime import UTC, datetime

from sqlalchemy.engine import Engine

from agents.installments.commission import CommissionRepository
from agents.installments.errors import JobFatalError
from agents.installments.job_ledger import STATUS_UPDATE_JOB, JobRunLedger
from agents.installments.pipeline import run_notification_dispatch, run_pipeline, run_status_update
from agents.installments.providers import DryRunProvider
from backend.apps.installments.repository import get_engine
from backend.core.config import settings
from backend.core.observability import init_observability

logger = logging.getLogger(__name__)

EXIT_FATAL = 1
EXIT_UNHEALTHY = 2


def _parse_now(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Installment lifecycle jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("status-update", "Transition pending installments to overdue"),
        ("dispatch", "Send due-soon and overdue notifications"),
        ("run", "Status update followed by dispatch"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--now", help="Reference instant (ISO 8601, default: current time)")
        cmd.add_argument("--max-workers", type=int, help="Agencies processed in parallel")
        if name != "status-update":
            cmd.add_argument("--dry-run", action="store_true", help="Render and record, do not call providers")

    health = sub.add_parser("job-health", help="Freshness of the last job run")
    health.add_argument("--job", default=STATUS_UPDATE_JOB)
    health.add_argument("--now", help="Reference instant (ISO 8601)")

    commission = sub.add_parser("commission", help="Expected/earned/outstanding commission of one plan")
    commission.add_argument("--agency", required=True, help="Agency id")
    commission.add_argument("--plan", required=True, help="Payment plan id")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None, engine: Engine | None = None) -> int:
    args = parse_args(argv)
    init_observability(enable_metrics=settings.enable_metrics)
    engine = engine or get_engine()

    try:
        if args.command == "status-update":
            results = run_status_update(engine, _parse_now(args.now), args.max_workers)
            print(json.dumps([r.to_dict() for r in results], ensure_ascii=False))
        elif args.command == "dispatch":
            provider = DryRunProvider() if args.dry_run else None
            results = run_notification_dispatch(engine, _parse_now(args.now), provider, max_workers=args.max_workers)
            print(json.dumps([r.to_dict() for r in results], ensure_ascii=False))
        elif args.command == "run":
            provider = DryRunProvider() if args.dry_run else None
            result = run_pipeline(engine, _parse_now(args.now), provider, max_workers=args.max_workers)
            print(json.dumps(result.to_dict(), ensure_ascii=False))
        elif args.command == "job-health":
            ledger = JobRunLedger(engine)
            health = ledger.job_health(args.job, _parse_now(args.now))
            stale = ledger.find_stale_runs(now=_parse_now(args.now))
            payload = health.to_dict()
            payload["stale_runs"] = [r["id"] for r in stale]
            print(json.dumps(payload, ensure_ascii=False))
            return 0 if health.ok else EXIT_UNHEALTHY
        elif args.command == "commission":
            with engine.connect() as conn:
                summary = CommissionRepository().load_plan_commission(conn, args.agency, args.plan)
            if summary is None:
                print(json.dumps({"error": "payment plan not found"}))
                return EXIT_FATAL
            print(json.dumps(summary.to_dict(), ensure_ascii=False))
    except JobFatalError as exc:
        logger.error("job_fatal", extra={"command": args.command, "error": str(exc)})
        print(json.dumps({"error": str(exc)}))
        return EXIT_FATAL
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
