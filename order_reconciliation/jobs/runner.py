"""Command line entry point for the reconciliation job.

    python -m order_reconciliation.jobs.runner once      # one cycle, then exit
    python -m order_reconciliation.jobs.runner start     # cron scheduler in the foreground
    python -m order_reconciliation.jobs.runner purge --days 30

Exit codes: 0 ok, 1 cycle failed, 2 invalid configuration.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Optional, Sequence

from order_reconciliation.config import LOG_FILE, LOG_LEVEL, load_settings
from order_reconciliation.database import SessionLocal, init_db
from order_reconciliation.exceptions import ConfigurationInvalid
from order_reconciliation.integrations.abacatepay import AbacatePayClient
from order_reconciliation.jobs.reconciliation_cycle import build_cycle
from order_reconciliation.jobs.scheduler import ReconciliationScheduler
from order_reconciliation.models.db.enums import RunStatus
from order_reconciliation.services.audit import AuditSink
from order_reconciliation.utils import get_logger, setup_logging

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="order-reconciliation", description="Reconcile pending orders against the payment gateway")
    parser.add_argument("--env", dest="environment", default=None, help="Deployment tier (production, staging, development, test)")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("once", help="Run a single reconciliation cycle and exit")
    sub.add_parser("start", help="Run the cron scheduler until interrupted")
    purge = sub.add_parser("purge", help="Delete audit records older than the retention window")
    purge.add_argument("--days", type=int, default=None, help="Override the configured retention (days)")
    return parser


async def _run_once(settings) -> int:
    async with AbacatePayClient.from_settings(settings) as gateway:
        cycle = build_cycle(settings, SessionLocal, gateway)
        summary = await cycle.run()
    print(json.dumps(summary.to_dict(), indent=2, default=str))
    return 1 if summary.status == RunStatus.FAILED else 0


async def _run_scheduler(settings) -> int:
    async with AbacatePayClient.from_settings(settings) as gateway:
        scheduler = ReconciliationScheduler(build_cycle(settings, SessionLocal, gateway), settings)
        scheduler.start()
        try:
            await asyncio.Event().wait()
        finally:
            scheduler.shutdown()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE, enable_console=True)

    try:
        settings = load_settings(args.environment)
    except ConfigurationInvalid as e:
        logger.error("Refusing to run with invalid configuration", errors=e.errors)
        return 2

    init_db()
    if args.command == "purge":
        deleted = AuditSink(SessionLocal).purge_older_than(args.days or settings.audit_retention_days)
        print(json.dumps({"deleted": deleted}))
        return 0
    if args.command == "once":
        return asyncio.run(_run_once(settings))
    try:
        return asyncio.run(_run_scheduler(settings))
    except KeyboardInterrupt:
        logger.info("Scheduler interrupted, shutting down")
        return 0


if __name__ == "__main__":
    sys.exit(main())
