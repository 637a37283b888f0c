# background/matrix_scheduler.py
"""
Matrix Scheduler - drives the period state machine.
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
from matrix_system.services.aggregation_service import AggregationService
from matrix_system.services.period_service import PeriodService
from matrix_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class MatrixScheduler:
    """
    Background scheduler for period rollover, evaluation and settlement.
    Every job is restart-safe: progress lives in the database, not here.
    """

    def __init__(self, tickSeconds: Optional[int] = None):
        self.isRunning = False
        self.tickSeconds = tickSeconds or Config.get(Config.SCHEDULER_TICK_SECONDS, 60)

        self.scheduler = AsyncIOScheduler(
            timezone='UTC',
            job_defaults={
                'coalesce': True,  # Combine missed runs into one
                'max_instances': 1,  # A tick never overlaps itself
                'misfire_grace_time': 300
            }
        )

        self.stats = {
            "ticks": 0,
            "periodsOpened": 0,
            "periodsSettled": 0,
            "rebuilds": 0,
            "countersCorrected": 0,
            "errors": 0,
            "lastError": None,
            "startedAt": None,
            "lastTickAt": None,
            "incompletePeriod": None
        }

    async def start(self):
        """
        Start scheduler with all jobs.

        Jobs configured:
        - Period tick: every SCHEDULER_TICK_SECONDS
        - Aggregate rebuild: every day at 03:00 UTC
        """
        if self.isRunning:
            logger.warning("Matrix Scheduler already running")
            return

        logger.info("=" * 60)
        logger.info("Starting Matrix Scheduler with APScheduler")
        logger.info("=" * 60)

        self.isRunning = True
        self.stats["startedAt"] = datetime.now(timezone.utc)

        # ═══════════════════════════════════════════════════════════════
        # JOB 1: Period tick
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_tick_wrapper,
            trigger=IntervalTrigger(seconds=self.tickSeconds),
            id='period_tick',
            name='Period Tick',
            replace_existing=True
        )
        logger.info(f"✓ Job registered: Period Tick (every {self.tickSeconds} seconds)")

        # ═══════════════════════════════════════════════════════════════
        # JOB 2: Aggregate rebuild (daily)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_rebuild_wrapper,
            trigger=CronTrigger(hour=3, minute=0),
            id='aggregate_rebuild',
            name='Aggregate Rebuild (03:00 UTC)',
            replace_existing=True
        )
        logger.info("✓ Job registered: Aggregate Rebuild (03:00 UTC)")

        self.scheduler.start()

        logger.info("=" * 60)
        logger.info("✅ Matrix Scheduler started successfully")
        logger.info(f"Active jobs: {len(self.scheduler.get_jobs())}")
        logger.info("=" * 60)

    async def stop(self):
        """Stop scheduler gracefully."""
        if not self.isRunning:
            return

        logger.info("Stopping Matrix Scheduler...")
        self.isRunning = False

        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)

        logger.info("✓ Matrix Scheduler stopped")

    # ═══════════════════════════════════════════════════════════════════
    # SAFE WRAPPERS (error handling for APScheduler jobs)
    # ═══════════════════════════════════════════════════════════════════

    async def _safe_tick_wrapper(self):
        """Safe wrapper for the period tick."""
        try:
            await self.runTick()
        except Exception as e:
            logger.error(f"Error in period tick job: {e}", exc_info=True)
            self.stats["errors"] += 1
            self.stats["lastError"] = str(e)

    async def _safe_rebuild_wrapper(self):
        """Safe wrapper for the aggregate rebuild."""
        try:
            await self.runRebuild()
        except Exception as e:
            logger.error(f"Error in aggregate rebuild job: {e}", exc_info=True)
            self.stats["errors"] += 1
            self.stats["lastError"] = str(e)

    # ═══════════════════════════════════════════════════════════════════
    # JOBS
    # ═══════════════════════════════════════════════════════════════════

    async def runTick(self) -> dict:
        """
        Roll periods and settle every period whose evaluation is due.
        Called by APScheduler every tick and once at startup.
        """
        with get_db_session_ctx() as session:
            result = await PeriodService(session).tick(timeMachine.now)

        self.stats["ticks"] += 1
        self.stats["lastTickAt"] = datetime.now(timezone.utc)
        self.stats["periodsOpened"] += result["opened"]
        self.stats["periodsSettled"] += len(result["settled"])
        self.stats["incompletePeriod"] = result["incomplete"]

        if result["settled"]:
            logger.info(f"Settled periods: {result['settled']}")
        if result["incomplete"] is not None:
            logger.warning(f"Period {result['incomplete']} incomplete, resuming next tick")

        return result

    async def runRebuild(self) -> dict:
        """Recount aggregates from the tree and repair drift."""
        logger.info(f"Running aggregate rebuild at {timeMachine.now}")

        with get_db_session_ctx() as session:
            result = await AggregationService(session).rebuild()

        self.stats["rebuilds"] += 1
        self.stats["countersCorrected"] += result["corrected"]
        if result["corrected"]:
            logger.warning(f"Aggregate rebuild corrected {result['corrected']} members")

        return result

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
            "currentTime": timeMachine.now.isoformat(),
            "isTestMode": timeMachine.isTestMode,
            "tickSeconds": self.tickSeconds,
            "stats": self.stats,
            "jobs": jobs_info
        }


# Global scheduler instance (created in matrix_engine.py)
scheduler: Optional[MatrixScheduler] = None
