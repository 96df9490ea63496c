"""Background job scheduler for dispute housekeeping"""

import logging
from datetime import datetime

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.pool import ThreadPoolExecutor

from config import Config
from jobs.dispute_auto_resolution_monitor import run_dispute_auto_resolution_scan

logger = logging.getLogger(__name__)


class DisputeScheduler:
    """Runs the dispute auto-resolution scan on a fixed interval"""

    AUTO_RESOLUTION_JOB_ID = "dispute_auto_resolution_scan"

    def __init__(self, scan_minutes: int = None):
        self.scan_minutes = scan_minutes or Config.DISPUTE_AUTO_RESOLUTION_SCAN_MINUTES

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': ThreadPoolExecutor(max_workers=2)
        }
        job_defaults = {
            'coalesce': True,  # Collapse missed runs into one
            'max_instances': 1,
            'misfire_grace_time': 300
        }

        self.scheduler = BackgroundScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        self.scheduler.add_job(
            self.scan_auto_resolution_candidates,
            trigger=IntervalTrigger(
                minutes=self.scan_minutes,
                start_date=datetime.now().replace(second=15, microsecond=0),
            ),
            id=self.AUTO_RESOLUTION_JOB_ID,
            name="Dispute Auto-Resolution Scan",
            replace_existing=True,
        )

    def start(self):
        """Start the scheduler"""
        self.setup_jobs()
        self.scheduler.start()
        job_names = [f"{job.name} ({job.id})" for job in self.scheduler.get_jobs()]
        logger.info(f"✅ Dispute scheduler started: {job_names}")

    def stop(self):
        """Stop the scheduler"""
        self.scheduler.shutdown()
        logger.info("Dispute scheduler stopped")

    def scan_auto_resolution_candidates(self):
        """Job body; failures are logged so the schedule keeps running"""
        try:
            summary = run_dispute_auto_resolution_scan()
            if summary["errors"]:
                logger.warning(f"⚠️ AUTO_RESOLUTION_SCAN_ERRORS: {summary['errors']}")
        except Exception as e:
            logger.error(f"❌ AUTO_RESOLUTION_SCAN_CRASHED: {e}", exc_info=True)
