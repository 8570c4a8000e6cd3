"""
MLM Scheduler - handles all time-based commission engine operations.
Uses APScheduler for task scheduling.
"""
import logging
from datetime import datetime, timezone
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from core.db import get_db_session_ctx
from background.commission_runner import CommissionRunner
from mlm_system.services.payment_report_service import PaymentReportService
from mlm_system.utils.time_machine import timeMachine
from mlm_system.events.event_bus import eventBus, MLMEvents

logger = logging.getLogger(__name__)


class MLMScheduler:
    """
    Background scheduler for the commission engine.
    Uses APScheduler for reliable task scheduling.
    """

    def __init__(self, runner: Optional[CommissionRunner] = None):
        """
        Initialize scheduler.

        Args:
            runner: Commission runner (created from Config when omitted)
        """
        self.runner = runner or CommissionRunner()
        self.isRunning = False

        # Create APScheduler instance
        self.scheduler = AsyncIOScheduler(
            timezone='UTC',
            job_defaults={
                'coalesce': True,  # Combine missed runs into one
                'max_instances': 1,  # Only one instance of each job at a time
                'misfire_grace_time': 300  # 5 minutes grace period
            }
        )

        # Statistics
        self.stats = {
            "tasksExecuted": 0,
            "errors": 0,
            "lastError": None,
            "startedAt": None,
            "lastExecutedAt": None,
            "commissionRuns": 0,
            "eventsProcessed": 0,
            "lastRunSummary": None
        }

    async def start(self):
        """
        Start scheduler with all jobs.

        Jobs configured:
        - Commission run: every RUNNER_INTERVAL_SECONDS, first run immediately
        - Daily tasks: every day at 00:00 UTC
        """
        if self.isRunning:
            logger.warning("MLM Scheduler already running")
            return

        logger.info("=" * 60)
        logger.info("Starting MLM Scheduler with APScheduler")
        logger.info("=" * 60)

        self.isRunning = True
        self.stats["startedAt"] = datetime.now(timezone.utc)

        interval = Config.get(Config.RUNNER_INTERVAL_SECONDS, 300)

        # ═══════════════════════════════════════════════════════════════
        # JOB 1: Commission run (every RUNNER_INTERVAL_SECONDS + on start)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_commission_run_wrapper,
            trigger=IntervalTrigger(seconds=interval),
            id='commission_run',
            name='Commission Run',
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True
        )
        logger.info(f"✓ Job registered: Commission Run (every {interval} seconds, now)")

        # ═══════════════════════════════════════════════════════════════
        # JOB 2: Daily Tasks (every day at 00:00 UTC)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_daily_tasks_wrapper,
            trigger=CronTrigger(hour=0, minute=0),
            id='daily_tasks',
            name='Daily Tasks (00:00 UTC)',
            replace_existing=True
        )
        logger.info("✓ Job registered: Daily Tasks (00:00 UTC)")

        # Start the scheduler
        self.scheduler.start()

        logger.info("=" * 60)
        logger.info("✅ MLM Scheduler started successfully")
        logger.info(f"Active jobs: {len(self.scheduler.get_jobs())}")
        logger.info("=" * 60)

    async def stop(self):
        """Stop scheduler gracefully."""
        if not self.isRunning:
            return

        logger.info("Stopping MLM Scheduler...")
        self.isRunning = False
        self.runner.cancel()

        # Shutdown scheduler
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)

        logger.info("✓ MLM Scheduler stopped")

    # ═══════════════════════════════════════════════════════════════════
    # SAFE WRAPPERS (error handling for APScheduler jobs)
    # ═══════════════════════════════════════════════════════════════════

    async def _safe_commission_run_wrapper(self):
        """Safe wrapper for the commission run."""
        try:
            await self.runCommissions()
        except Exception as e:
            logger.error(f"Error in commission run job: {e}", exc_info=True)
            self.stats["errors"] += 1
            self.stats["lastError"] = str(e)

    async def _safe_daily_tasks_wrapper(self):
        """Safe wrapper for daily tasks."""
        try:
            await self.executeDailyTasks()
        except Exception as e:
            logger.error(f"Error in daily tasks job: {e}", exc_info=True)
            self.stats["errors"] += 1
            self.stats["lastError"] = str(e)

    # ═══════════════════════════════════════════════════════════════════
    # JOBS
    # ═══════════════════════════════════════════════════════════════════

    async def runCommissions(self):
        """
        Run one commission batch.
        Called by APScheduler every RUNNER_INTERVAL_SECONDS.
        """
        summary = await self.runner.runOnce()

        self.stats["commissionRuns"] += 1
        self.stats["eventsProcessed"] += summary.eventsProcessed
        self.stats["lastRunSummary"] = summary.toDict()
        self.stats["lastExecutedAt"] = datetime.now(timezone.utc)

        if summary.failedPartitions:
            self.stats["errors"] += len(summary.failedPartitions)
            self.stats["lastError"] = f"Failed partitions: {', '.join(summary.failedPartitions)}"

        return summary

    async def executeDailyTasks(self):
        """Execute daily tasks: report obligations due today and overdue ones."""
        today = timeMachine.today
        logger.info(f"Executing daily tasks for {today}")

        try:
            with get_db_session_ctx() as session:
                reportService = PaymentReportService(session)
                payroll = await reportService.getPayrollSummary(today)
                overdue = await reportService.getOverduePayments(today)

            if payroll or overdue:
                await eventBus.emit(MLMEvents.PAYMENTS_DUE, {
                    "dueDate": today.isoformat(),
                    "beneficiaries": len(payroll),
                    "totalDue": str(sum((entry["total"] for entry in payroll), 0)),
                    "overdue": len(overdue),
                })

            self.stats["tasksExecuted"] += 1
            self.stats["lastExecutedAt"] = datetime.now(timezone.utc)

        except Exception as e:
            logger.error(f"Error in daily tasks: {e}", exc_info=True)
            self.stats["errors"] += 1
            self.stats["lastError"] = str(e)
            raise  # Re-raise for APScheduler to track

    def getStatus(self) -> dict:
        """Get scheduler status."""
        jobs_info = []
        if self.scheduler.running:
            for job in self.scheduler.get_jobs():
                jobs_info.append({
                    "id": job.id,
                    "name": job.name,
                    "next_run": job.next_run_time.isoformat() if job.next_run_time else None
                })

        return {
            "isRunning": self.isRunning,
            "schedulerRunning": self.scheduler.running,
            "runnerState": self.runner.state.value,
            "currentTime": timeMachine.now.isoformat(),
            "isTestMode": timeMachine._isTestMode,
            "stats": self.stats,
            "jobs": jobs_info
        }


# Global scheduler instance (created in engine.py)
scheduler: Optional[MLMScheduler] = None
