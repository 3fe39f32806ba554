"""
Reconciliation background worker.

Runs the ledger audit for the previous UTC day at a scheduled hour
(default 02:00 UTC).
"""
import argparse
import asyncio
import signal
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple

import structlog

from entitlements.config import get_settings
from entitlements.container import ServiceContainer
from entitlements.core.reconciliation import ReconciliationAuditor, ReconciliationReport
from entitlements.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


def previous_day_window(now: datetime) -> Tuple[datetime, datetime]:
    """Return ``[yesterday 00:00, today 00:00)`` in UTC."""
    end = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return end - timedelta(days=1), end


async def run_daily_reconciliation(
    container: ServiceContainer, now: Optional[datetime] = None
) -> ReconciliationReport:
    """
    Audit yesterday's transactions.

    Args:
        container: Service container
        now: Current time; defaults to the container clock

    Returns:
        ReconciliationReport: The audit result
    """
    start, end = previous_day_window(now or container.clock())
    logger.info("daily_reconciliation_started", window_start=start.isoformat())

    try:
        async with container.database.session() as session:
            auditor = ReconciliationAuditor(
                session,
                container.provider,
                max_window_days=container.settings.reconciliation_max_window_days,
            )
            report = await auditor.audit(start, end)
    except Exception as e:
        logger.error("daily_reconciliation_failed", error=str(e))
        raise

    logger.info(
        "daily_reconciliation_completed",
        window_start=start.isoformat(),
        provider_count=report.provider_count,
        local_count=report.local_count,
        orphaned=len(report.orphaned),
    )

    if report.divergent:
        logger.warning(
            "reconciliation_divergence_detected",
            window_start=start.isoformat(),
            window_end=end.isoformat(),
            amount_difference=str(report.amount_difference),
            orphaned_ids=[orphan.id for orphan in report.orphaned],
        )

    return report


async def calculate_next_run_time(target_hour: int = 2, now: Optional[datetime] = None) -> float:
    """
    Calculate seconds until next scheduled run.

    Args:
        target_hour: Hour of day to run (24-hour format, UTC)
        now: Current time; defaults to the wall clock

    Returns:
        float: Seconds until next run
    """
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)

    # If we've passed today's run time, schedule for tomorrow
    if now >= next_run:
        next_run += timedelta(days=1)

    seconds_until = (next_run - now).total_seconds()

    logger.info(
        "reconciliation_next_run_scheduled",
        next_run=next_run.isoformat(),
        seconds_until=seconds_until,
    )

    return seconds_until


async def start_reconciliation_worker(
    target_hour: Optional[int] = None, run_once: bool = False
) -> None:
    """
    Start the reconciliation worker.

    Args:
        target_hour: Hour of day to run; defaults to the configured hour
        run_once: Audit yesterday immediately and exit
    """
    settings = get_settings()
    setup_logging(settings)
    target_hour = settings.reconciliation_hour if target_hour is None else target_hour
    container = ServiceContainer.build(settings)

    logger.info("reconciliation_worker_starting", target_hour=target_hour, run_once=run_once)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        if run_once:
            await run_daily_reconciliation(container)
            return

        while running:
            seconds_until = await calculate_next_run_time(target_hour)

            # Wake up every minute to notice shutdown signals
            while seconds_until > 0 and running:
                sleep_time = min(seconds_until, 60)
                await asyncio.sleep(sleep_time)
                seconds_until -= sleep_time

            if not running:
                break

            try:
                await run_daily_reconciliation(container)
            except Exception as e:
                # One failed day must not stop the schedule
                logger.error("reconciliation_execution_error", error=str(e))

    finally:
        await container.aclose()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Reconciliation worker")
    parser.add_argument(
        "--hour", type=int, default=None, help="Hour of day (UTC) to run reconciliation (0-23)"
    )
    parser.add_argument(
        "--once", action="store_true", help="Reconcile yesterday immediately and exit"
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(target_hour=args.hour, run_once=args.once))


if __name__ == "__main__":
    main()
