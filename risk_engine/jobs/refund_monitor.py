"""
refund_monitor.py
-----------------
Scheduler entry point: one Trigger Monitor pass per invocation.

    python -m risk_engine.jobs.refund_monitor

Meant for cron / Kubernetes CronJob. Overlapping invocations are safe:
case creation is create-if-absent and processing is guarded by a
conditional status update.

Prints the MonitorReport as JSON. Exit code 1 when the pass counted errors,
so the scheduler can alert on it.
"""

import asyncio
import logging
import sys

from risk_engine.core.config import settings
from risk_engine.domain.schemas import MonitorReport
from risk_engine.infrastructure.cache.redis_client import redis_manager
from risk_engine.infrastructure.database.session import AsyncSessionLocal, dispose_db
from risk_engine.services.container import build_services

logger = logging.getLogger(__name__)


async def run_once() -> MonitorReport:
    await redis_manager.connect()
    try:
        services = build_services(redis_manager.get_client(), AsyncSessionLocal)
        return await services.trigger_monitor.run_pass()
    finally:
        await redis_manager.disconnect()
        await dispose_db()


def main() -> int:
    logging.basicConfig(
        level  = settings.LOG_LEVEL,
        format = "%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    report = asyncio.run(run_once())
    print(report.model_dump_json(indent=2))
    return 1 if report.errors else 0


if __name__ == "__main__":
    sys.exit(main())
