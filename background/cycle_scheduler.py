# rankcycle/background/cycle_scheduler.py
"""
Cycle scheduler - periodic sweeps for the income engine.
Uses APScheduler for task scheduling.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from core.db import get_db_session_ctx
from mlm_system.config.ranks import get_rank_order
from mlm_system.services.activation_service import ActivationService
from mlm_system.services.global_cycle_service import GlobalCycleManager
from mlm_system.store.ledger_store import LedgerStore
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

# Transactions younger than this are left to the ACTIVATION_COMPLETED handler
PENDING_TRANSACTION_GRACE = timedelta(minutes=5)


class CycleScheduler:
    """
    Background scheduler for the income engine.

    Jobs:
    - cycle payout sweep: completed cycles whose payout never ran
    - pending transaction sweep: activations whose incomes were never processed
    - daily cycle status report
    """

    def __init__(self, batchSize: int = 10):
        self.batchSize = batchSize
        self.isRunning = False

        self.scheduler = AsyncIOScheduler(
            timezone='UTC',
            job_defaults={
                'coalesce': True,  # Combine missed runs into one
                'max_instances': 1,  # Only one instance of each job at a time
                'misfire_grace_time': 300
            }
        )

        self.stats = {
            "tasksExecuted": 0,
            "errors": 0,
            "lastError": None,
            "startedAt": None,
            "lastExecutedAt": None,
            "payoutsProcessed": 0,
            "transactionsProcessed": 0
        }

    async def start(self):
        if self.isRunning:
            logger.warning("Cycle Scheduler already running")
            return

        interval = int(Config.get(Config.CYCLE_SWEEP_INTERVAL, 300))

        logger.info("=" * 60)
        logger.info("Starting Cycle Scheduler with APScheduler")
        logger.info("=" * 60)

        self.isRunning = True
        self.stats["startedAt"] = datetime.now(timezone.utc)

        # ═══════════════════════════════════════════════════════════════
        # JOB 1: Pending cycle payouts
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_cycle_sweep_wrapper,
            trigger=IntervalTrigger(seconds=interval),
            id='cycle_payouts',
            name='Pending Cycle Payouts',
            replace_existing=True
        )
        logger.info(f"✓ Job registered: Pending Cycle Payouts (every {interval} seconds)")

        # ═══════════════════════════════════════════════════════════════
        # JOB 2: Pending activation transactions
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_transaction_sweep_wrapper,
            trigger=IntervalTrigger(seconds=interval),
            id='pending_transactions',
            name='Pending Activation Transactions',
            replace_existing=True
        )
        logger.info(f"✓ Job registered: Pending Transactions (every {interval} seconds)")

        # ═══════════════════════════════════════════════════════════════
        # JOB 3: Daily cycle report (00:00 UTC)
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_daily_report_wrapper,
            trigger=CronTrigger(hour=0, minute=0),
            id='daily_report',
            name='Daily Cycle Report (00:00 UTC)',
            replace_existing=True
        )
        logger.info("✓ Job registered: Daily Cycle Report (00:00 UTC)")

        self.scheduler.start()

        logger.info("=" * 60)
        logger.info("✅ Cycle Scheduler started successfully")
        logger.info(f"Active jobs: {len(self.scheduler.get_jobs())}")
        logger.info("=" * 60)

    async def stop(self):
        """Stop scheduler gracefully."""
        if not self.isRunning:
            return

        logger.info("Stopping Cycle Scheduler...")
        self.isRunning = False

        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)

        logger.info("✓ Cycle Scheduler stopped")

    # ═══════════════════════════════════════════════════════════════════
    # SAFE WRAPPERS (error handling for APScheduler jobs)
    # ═══════════════════════════════════════════════════════════════════

    def _recordError(self, job: str, error: Exception):
        logger.error(f"Error in {job} job: {error}", exc_info=True)
        self.stats["errors"] += 1
        self.stats["lastError"] = str(error)

    async def _safe_cycle_sweep_wrapper(self):
        try:
            await self.processPendingPayouts()
        except Exception as e:
            self._recordError("cycle payout", e)

    async def _safe_transaction_sweep_wrapper(self):
        try:
            await self.processPendingTransactions()
        except Exception as e:
            self._recordError("pending transaction", e)

    async def _safe_daily_report_wrapper(self):
        try:
            await self.reportCycleStatus()
        except Exception as e:
            self._recordError("daily report", e)

    # ═══════════════════════════════════════════════════════════════════
    # JOBS
    # ═══════════════════════════════════════════════════════════════════

    def _markExecuted(self):
        self.stats["tasksExecuted"] += 1
        self.stats["lastExecutedAt"] = datetime.now(timezone.utc)

    async def processPendingPayouts(self) -> Dict[str, int]:
        with get_db_session_ctx() as session:
            manager = GlobalCycleManager(LedgerStore(session))
            result = await manager.processPendingPayouts(limit=self.batchSize)

        self.stats["payoutsProcessed"] += result["processed"]
        self.stats["errors"] += result["errors"]
        self._markExecuted()
        return result

    async def processPendingTransactions(self) -> Dict[str, int]:
        """Process activations nobody processed within the grace period."""
        stats = {"found": 0, "processed": 0, "errors": 0}

        with get_db_session_ctx() as session:
            service = ActivationService(session)
            transactions = await service.store.listPendingTransactions(
                limit=self.batchSize,
                olderThan=timeMachine.now - PENDING_TRANSACTION_GRACE
            )
            stats["found"] = len(transactions)

            for transactionId in [t.transactionID for t in transactions]:
                try:
                    result = await service.processTransaction(transactionId)
                    if result.get("success"):
                        stats["processed"] += 1
                except Exception as e:
                    stats["errors"] += 1
                    logger.error(f"Error processing pending transaction {transactionId}: {e}", exc_info=True)

        if stats["found"]:
            logger.info(
                f"Pending transactions: {stats['processed']}/{stats['found']} processed, "
                f"{stats['errors']} errors"
            )

        self.stats["transactionsProcessed"] += stats["processed"]
        self.stats["errors"] += stats["errors"]
        self._markExecuted()
        return stats

    async def reportCycleStatus(self) -> Dict[str, Any]:
        report = {}

        with get_db_session_ctx() as session:
            manager = GlobalCycleManager(LedgerStore(session))
            for rank in get_rank_order():
                report[rank] = await manager.getCycleStatus(rank)

        for rank, status in report.items():
            if status["participants"]:
                logger.info(
                    f"📊 {rank}: cycle {status['cycleId']} "
                    f"{status['participants']}/{status['cycleSize']} ({status['progress']}%)"
                )

        self._markExecuted()
        return report

    def getStats(self) -> Dict[str, Any]:
        return dict(self.stats, isRunning=self.isRunning)
