"""
Scheduler for automated source syncs

Uses APScheduler to check every few minutes which sources are due
(per their configured frequency) and run an incremental sync of those.
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
import asyncio
from typing import Optional

from app.config import get_settings
from app.services.sync_orchestrator import DueSyncOutcome, SyncMode, SyncOrchestrator
from app.utils.logger import log

settings = get_settings()
scheduler = AsyncIOScheduler()


async def run_scheduled_sync(orchestrator: Optional[SyncOrchestrator] = None) -> Optional[DueSyncOutcome]:
    """
    Sync every source that is due (incremental)

    Errors are logged and swallowed so one bad check never stops the job;
    returns the outcome, or None when the check itself failed.
    """
    try:
        outcome = await (orchestrator or SyncOrchestrator()).run_due_syncs()
    except Exception as e:
        log.error(f"Scheduled sync error: {str(e)}")
        return None

    if outcome.report is None:
        log.debug(f"Scheduled sync check: nothing due ({outcome.skipped})")
        return outcome
    report = outcome.report
    log.info(
        f"Scheduled sync of {', '.join(outcome.ran)}: {report.verdict.value} "
        f"({report.succeeded}/{report.total} entities)"
    )
    return outcome


def setup_scheduler():
    """
    Register jobs.

    - Due-sync check: every `sync_check_interval_minutes` (default 15).
      Each source's own frequency (15min / 1hour / 6hours / daily / manual)
      decides whether the check actually syncs it.
    """
    scheduler.add_job(
        run_scheduled_sync,
        trigger=IntervalTrigger(minutes=settings.sync_check_interval_minutes),
        id='due_sync_check',
        name='Incremental sync of due sources',
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )


def start_scheduler():
    """Start the scheduler"""
    setup_scheduler()
    scheduler.start()
    log.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler"""
    if scheduler.running:
        scheduler.shutdown()
        log.info("Scheduler stopped")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs

    Returns:
        List of job info dicts
    """
    jobs = []

    for job in scheduler.get_jobs():
        next_run = getattr(job, "next_run_time", None)

        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs


def run_sync_now(source: str, mode: SyncMode = SyncMode.FULL) -> dict:
    """
    Run a sync from the command line

    Args:
        source: 'erp', 'storefront' or 'all'
        mode: full or incremental

    Returns:
        Report dict
    """
    orchestrator = SyncOrchestrator()
    sources = None if source == "all" else [source]
    report = asyncio.run(orchestrator.sync_all(mode, sources=sources))
    return report.to_dict()


# CLI for manual syncs

if __name__ == "__main__":
    import sys

    if len(sys.argv) < 2:
        print("Usage: python -m app.scheduler <command> [source] [--incremental]")
        print("\nCommands:")
        print("  sync <source>   Run a sync now (erp, storefront or all)")
        print("  due             Sync whatever is due, as the scheduler would")
        print("  list            List scheduled jobs")
        sys.exit(1)

    command = sys.argv[1]

    if command == "sync":
        if len(sys.argv) < 3:
            print("Usage: python -m app.scheduler sync <erp|storefront|all> [--incremental]")
            sys.exit(1)

        mode = SyncMode.INCREMENTAL if "--incremental" in sys.argv else SyncMode.FULL
        result = run_sync_now(sys.argv[2], mode)
        print(f"{result['verdict']}: {result['succeeded']}/{result['total']} entities, "
              f"{result['records_synced']} records")
        for key, error in result['errors'].items():
            print(f"  {key}: {error}")
        if result['verdict'] != "success":
            sys.exit(1)

    elif command == "due":
        outcome = asyncio.run(SyncOrchestrator().run_due_syncs())
        print(f"Ran: {', '.join(outcome.ran) or 'nothing'}")
        for source, reason in outcome.skipped.items():
            print(f"  skipped {source}: {reason}")

    elif command == "list":
        setup_scheduler()
        print("\nScheduled Jobs:")
        print("-" * 80)

        for job in get_scheduled_jobs():
            print(f"\nID:       {job['id']}")
            print(f"Name:     {job['name']}")
            print(f"Next Run: {job['next_run']}")
            print(f"Trigger:  {job['trigger']}")

    else:
        print(f"Unknown command: {command}")
        sys.exit(1)
