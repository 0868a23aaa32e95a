"""
Submission Queue
In-process asyncio queue and worker pool that dispatches submission ids to the
pipeline. Delivery is at-least-once: on startup, and then periodically for
submissions older than the pipeline timeout, every submission still in ``processing``
is re-enqueued. The pipeline skips anything already decided.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Set

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import PaymentSubmission, SubmissionStatus
from services.submission_pipeline import SubmissionPipeline
from utils.atomic_transactions import run_in_transaction
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class SubmissionQueue:
    """Worker pool draining submission ids into ``SubmissionPipeline.process``"""

    def __init__(
        self,
        pipeline: SubmissionPipeline,
        session_factory: Optional[sessionmaker] = None,
        worker_count: Optional[int] = None,
        maxsize: Optional[int] = None,
    ):
        self.pipeline = pipeline
        self.session_factory = session_factory
        self.worker_count = worker_count or Config.PIPELINE_WORKER_COUNT
        self.maxsize = Config.PIPELINE_QUEUE_MAXSIZE if maxsize is None else maxsize
        self.queue: Optional[asyncio.Queue] = None
        self.workers: List[asyncio.Task] = []
        self.pending: Set[str] = set()
        self.running = False
        self.processed = 0

    async def start(self, recover: bool = True) -> None:
        if self.running:
            logger.warning("Submission queue already running")
            return

        self.queue = asyncio.Queue(maxsize=self.maxsize)
        self.running = True
        self.workers = [
            asyncio.create_task(self._worker(index), name=f"submission-worker-{index}")
            for index in range(self.worker_count)
        ]
        logger.info(f"🚀 Submission queue started with {self.worker_count} workers")

        if recover:
            await self.recover_in_flight()

    async def stop(self) -> None:
        """Stop workers; ids still queued are recovered on next start"""
        if not self.running:
            return

        self.running = False
        for task in self.workers:
            task.cancel()
        for task in self.workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.workers = []
        self.pending.clear()
        logger.info("🛑 Submission queue stopped")

    async def enqueue(self, submission_id: str) -> None:
        if not self.running or self.queue is None:
            raise RuntimeError("Submission queue is not running")
        self.pending.add(submission_id)
        await self.queue.put(submission_id)
        logger.debug(f"📥 Enqueued submission {submission_id} (depth {self.queue.qsize()})")

    async def join(self) -> None:
        """Wait until every enqueued submission has been processed"""
        if self.queue is not None:
            await self.queue.join()

    def _in_flight_ids(self, session: Session, created_before: Optional[datetime] = None) -> List[str]:
        query = select(PaymentSubmission.id).where(PaymentSubmission.status == SubmissionStatus.PROCESSING.value)
        if created_before is not None:
            query = query.where(PaymentSubmission.created_at <= created_before)
        return list(session.scalars(query.order_by(PaymentSubmission.created_at)))

    async def recover_in_flight(self, stale_after_seconds: Optional[float] = None) -> int:
        """
        Re-enqueue submissions still in ``processing``.

        With ``stale_after_seconds`` only submissions created at least that long ago
        are picked up; ids already waiting in the queue are never enqueued twice.
        """
        created_before = None
        if stale_after_seconds is not None:
            created_before = get_naive_utc_now() - timedelta(seconds=stale_after_seconds)

        submission_ids = run_in_transaction(
            lambda session: self._in_flight_ids(session, created_before),
            self.session_factory,
            operation="queue_recovery",
        )
        requeued = 0
        for submission_id in submission_ids:
            if submission_id in self.pending:
                continue
            await self.enqueue(submission_id)
            requeued += 1
        if requeued:
            logger.warning(f"🔄 RECOVERY: re-enqueued {requeued} in-flight submissions")
        return requeued

    async def _worker(self, index: int) -> None:
        while True:
            submission_id = await self.queue.get()
            try:
                outcome = await self.pipeline.process(submission_id)
                self.processed += 1
                logger.debug(f"Worker {index} finished {submission_id}: {outcome.status}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # process() records its own faults; this only guards the worker loop
                logger.error(f"❌ Worker {index} crashed on {submission_id}: {e}", exc_info=True)
            finally:
                self.pending.discard(submission_id)
                self.queue.task_done()
