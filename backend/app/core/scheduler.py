"""APScheduler configuration for delayed and recurring rebalances.

The scheduler itself carries no jobs at startup. The auto-rebalancer adds
one-shot rebalance jobs and repeating drift-monitoring jobs keyed by wallet
address. Jobs live in memory only, so a restart drops every schedule.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
import structlog

logger = structlog.get_logger()

# Global scheduler instance
_scheduler: AsyncIOScheduler | None = None

REBALANCE_JOB_PREFIX = "rebalance"
MONITOR_JOB_PREFIX = "monitor"


def rebalance_job_id(wallet_address: str) -> str:
    """Job id of the pending one-shot rebalance for a wallet."""
    return f"{REBALANCE_JOB_PREFIX}:{wallet_address}"


def monitor_job_id(wallet_address: str) -> str:
    """Job id of the repeating drift check for a wallet."""
    return f"{MONITOR_JOB_PREFIX}:{wallet_address}"


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the scheduler singleton."""
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler(timezone="UTC")
    return _scheduler


def start_scheduler() -> None:
    """Start the background scheduler."""
    scheduler = get_scheduler()

    # Don't start twice
    if scheduler.running:
        logger.warning("Scheduler already running")
        return

    scheduler.start()
    logger.info("Scheduler started")


def stop_scheduler() -> None:
    """Stop the background scheduler."""
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


def get_scheduler_status() -> dict:
    """Get current scheduler status for health checks."""
    scheduler = get_scheduler()
    jobs = scheduler.get_jobs() if scheduler.running else []

    return {
        "running": scheduler.running,
        "job_count": len(jobs),
        "scheduled_rebalances": sum(1 for j in jobs if j.id.startswith(REBALANCE_JOB_PREFIX)),
        "monitored_wallets": sum(1 for j in jobs if j.id.startswith(MONITOR_JOB_PREFIX)),
    }
