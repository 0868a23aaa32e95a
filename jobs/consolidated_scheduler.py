"""
Consolidated Background Job Scheduler - Payment Verification Jobs

Interval jobs keeping the fee ledger, order book and submission queue healthy:
1. Fee Reconciliation - recompute outstanding fee totals from contracts
2. Fee Enforcement - reminders, overdue marking and suspension
3. Order Expiry - expire orders nobody paid in time
4. Submission Recovery - re-enqueue submissions stuck in processing (needs a queue)
"""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore

from config import Config
from jobs.fee_enforcement import run_fee_enforcement
from jobs.fee_reconciliation import run_fee_reconciliation
from jobs.order_expiry import run_order_expiry
from jobs.submission_recovery import run_submission_recovery
from services.order_manager import OrderManager
from services.outstanding_fee_ledger import OutstandingFeeLedger
from services.submission_queue import SubmissionQueue

logger = logging.getLogger(__name__)


class ConsolidatedScheduler:
    """
    Scheduling Strategy:
    - Fee Reconciliation: every FEE_RECONCILIATION_INTERVAL_MINUTES (default 30)
    - Fee Enforcement: every FEE_ENFORCEMENT_INTERVAL_MINUTES (default 60)
    - Order Expiry: every ORDER_EXPIRY_SWEEP_MINUTES (default 5)
    - Submission Recovery: every SUBMISSION_RECOVERY_INTERVAL_MINUTES (default 2)
    """

    def __init__(
        self,
        ledger: Optional[OutstandingFeeLedger] = None,
        order_manager: Optional[OrderManager] = None,
        queue: Optional[SubmissionQueue] = None,
    ):
        self.ledger = ledger or OutstandingFeeLedger()
        self.order_manager = order_manager or OrderManager()
        self.queue = queue

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
        # ===== FEE RECONCILIATION =====
        self.scheduler.add_job(
            run_fee_reconciliation,
            trigger=IntervalTrigger(
                minutes=Config.FEE_RECONCILIATION_INTERVAL_MINUTES,
                start_date=datetime.now().replace(second=25, microsecond=0),
            ),
            kwargs={"ledger": self.ledger},
            id="fee_reconciliation",
            name="📊 Fee Reconciliation - Outstanding Fee Ledger",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
            replace_existing=True
        )
        logger.info(f"✅ Fee Reconciliation scheduled every {Config.FEE_RECONCILIATION_INTERVAL_MINUTES} minutes")

        # ===== FEE ENFORCEMENT =====
        self.scheduler.add_job(
            run_fee_enforcement,
            trigger=IntervalTrigger(
                minutes=Config.FEE_ENFORCEMENT_INTERVAL_MINUTES,
                start_date=datetime.now().replace(second=45, microsecond=0),
            ),
            kwargs={"ledger": self.ledger},
            id="fee_enforcement",
            name="⏰ Fee Enforcement - Reminders & Overdue Suspension",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
            replace_existing=True
        )
        logger.info(f"✅ Fee Enforcement scheduled every {Config.FEE_ENFORCEMENT_INTERVAL_MINUTES} minutes")

        # ===== ORDER EXPIRY =====
        self.scheduler.add_job(
            run_order_expiry,
            trigger=IntervalTrigger(
                minutes=Config.ORDER_EXPIRY_SWEEP_MINUTES,
                start_date=datetime.now().replace(second=5, microsecond=0),
            ),
            kwargs={"order_manager": self.order_manager},
            id="order_expiry",
            name="⌛ Order Expiry - Expire Unpaid Orders",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            replace_existing=True
        )
        logger.info(f"✅ Order Expiry scheduled every {Config.ORDER_EXPIRY_SWEEP_MINUTES} minutes")

        # ===== SUBMISSION RECOVERY =====
        if self.queue is not None:
            self.scheduler.add_job(
                run_submission_recovery,
                trigger=IntervalTrigger(
                    minutes=Config.SUBMISSION_RECOVERY_INTERVAL_MINUTES,
                    start_date=datetime.now().replace(second=15, microsecond=0),
                ),
                kwargs={"queue": self.queue},
                id="submission_recovery",
                name="🔄 Submission Recovery - Re-enqueue Stuck Submissions",
                max_instances=1,
                coalesce=True,
                misfire_grace_time=60,
                replace_existing=True
            )
            logger.info(f"✅ Submission Recovery scheduled every {Config.SUBMISSION_RECOVERY_INTERVAL_MINUTES} minutes")

        jobs = self.scheduler.get_jobs()
        logger.info(f"📋 Active jobs: {[f'{job.name} ({job.id})' for job in jobs]}")

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info("✅ SCHEDULER ENABLED: payment verification jobs running")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Consolidated job scheduler stopped")
