"""
Settlement Background Job Scheduler

Jobs:
1. Auto-Release - releases past-due escrows of delivered orders
2. Release Warnings - marks escrows about to auto-release
3. Consistency Monitor - reconciles orders, escrows and seller entries

Every job is a plain function that can also be run once from the command
line (cron, manual recovery) with `python -m jobs.scheduler --once <job>`.
"""

import argparse
import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from database import check_connection, create_tables
from jobs.auto_release import run_auto_release, run_release_warnings
from jobs.escrow_consistency_monitor import run_consistency_check

logger = logging.getLogger(__name__)


async def _run_in_thread(name: str, func: Callable[[], Any]) -> Any:
    """Run a blocking job off the event loop; failures are logged and re-raised to APScheduler"""
    try:
        return await asyncio.to_thread(func)
    except Exception as e:
        logger.error(f"❌ JOB_FAILED: {name}: {type(e).__name__}: {e}")
        raise


async def auto_release_job():
    result = await _run_in_thread("auto_release", run_auto_release)
    if result["released_count"]:
        logger.info(f"✅ Auto-releases: {result['released_count']} processed")
    return result


async def release_warning_job():
    return await _run_in_thread("release_warnings", run_release_warnings)


async def consistency_check_job():
    return await _run_in_thread("consistency_check", run_consistency_check)


class SettlementScheduler:
    """APScheduler wiring for the settlement jobs"""

    def __init__(self):
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register the settlement jobs, replacing any previous registration"""
        if Config.AUTO_RELEASE_ENABLED:
            self.scheduler.add_job(
                auto_release_job,
                trigger=IntervalTrigger(minutes=Config.AUTO_RELEASE_INTERVAL_MINUTES),
                id="escrow_auto_release",
                name="⏰ Escrow Auto-Release",
                replace_existing=True
            )
            self.scheduler.add_job(
                release_warning_job,
                trigger=IntervalTrigger(minutes=30),
                id="escrow_release_warnings",
                name="🔔 Escrow Auto-Release Warnings",
                replace_existing=True
            )
            logger.info(f"✅ Auto-release scheduled every {Config.AUTO_RELEASE_INTERVAL_MINUTES} minutes")
        else:
            logger.warning("⚠️ AUTO_RELEASE_ENABLED is false - auto-release job not scheduled")

        self.scheduler.add_job(
            consistency_check_job,
            trigger=IntervalTrigger(minutes=Config.CONSISTENCY_CHECK_INTERVAL_MINUTES),
            id="escrow_consistency_check",
            name="🔍 Escrow Consistency Monitor",
            replace_existing=True
        )
        logger.info(f"✅ Consistency monitor scheduled every {Config.CONSISTENCY_CHECK_INTERVAL_MINUTES} minutes")

    def job_ids(self):
        return sorted(job.id for job in self.scheduler.get_jobs())

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info(f"📋 Active jobs: {self.job_ids()}")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("📴 Settlement job scheduler stopped")


ONE_SHOT_JOBS: Dict[str, Callable[[Optional[datetime]], Any]] = {
    "auto-release": lambda now: run_auto_release(now=now),
    "warnings": lambda now: run_release_warnings(now=now),
    "consistency": lambda now: run_consistency_check(),
}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Escrow settlement background jobs')
    parser.add_argument('--once', choices=sorted(ONE_SHOT_JOBS), help='Run a single job once and exit')
    parser.add_argument('--now', type=datetime.fromisoformat, default=None,
                        help='Override the current time (ISO 8601) for --once runs')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    if not check_connection():
        return 1
    create_tables()

    if args.once:
        result = ONE_SHOT_JOBS[args.once](args.now)
        print(json.dumps(result, default=str, indent=2))
        return 0

    async def run_forever():
        scheduler = SettlementScheduler()
        scheduler.start()
        try:
            await asyncio.Event().wait()
        finally:
            scheduler.stop()

    asyncio.run(run_forever())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
