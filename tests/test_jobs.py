"""
Background Job Tests
Fee reconciliation, fee enforcement, order expiry and submission recovery runs plus
scheduler wiring
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from jobs.consolidated_scheduler import ConsolidatedScheduler
from jobs.fee_enforcement import run_fee_enforcement
from jobs.fee_reconciliation import run_fee_reconciliation
from conftest import screenshot_url
from jobs.order_expiry import run_order_expiry
from jobs.submission_recovery import run_submission_recovery
from models import Account, PaymentOrder, PaymentSubmission
from services.submission_queue import SubmissionQueue
from utils.datetime_helpers import get_naive_utc_now


class TestFeeJobs:

    @pytest.mark.asyncio
    async def test_reconciliation_reports_corrections(self, fee_ledger, make_account, session_factory):
        make_account("payer-1", outstanding_fee_total=Decimal("250"), unpaid_contract_ids=["gone"])
        make_account("payer-2")

        result = await run_fee_reconciliation(fee_ledger, batch_size=50)

        assert result == {"success": True, "processed": 2, "corrected": 1, "unsuspended": 0, "errors": 0}
        session = session_factory()
        assert session.get(Account, "payer-1").outstanding_fee_total == Decimal("0")
        session.close()

    @pytest.mark.asyncio
    async def test_reconciliation_failure_is_reported(self):
        ledger = MagicMock()
        ledger.reconcile_accounts.side_effect = RuntimeError("database unavailable")

        result = await run_fee_reconciliation(ledger)

        assert result["success"] is False
        assert "database unavailable" in result["error"]

    @pytest.mark.asyncio
    async def test_enforcement_suspends_overdue_payers(self, fee_ledger, make_account, session_factory):
        make_account("payer-1")
        make_account("payer-2")
        four_days_ago = get_naive_utc_now() - timedelta(days=4)
        fee_ledger.apply_contract_fee("payer-1", "contract-1", Decimal("30000"), now=four_days_ago)
        fee_ledger.apply_contract_fee("payer-2", "contract-2", Decimal("30000"))

        result = await run_fee_enforcement(fee_ledger)

        assert result == {"success": True, "actions": {"overdue": 1}, "errors": 0}
        session = session_factory()
        assert session.get(Account, "payer-1").status == "suspended"
        assert session.get(Account, "payer-2").status == "active"
        session.close()

    @pytest.mark.asyncio
    async def test_enforcement_continues_past_failures(self):
        ledger = MagicMock()
        ledger.contracts_due_for_enforcement.return_value = ["contract-1", "contract-2"]
        ledger.enforce_contract_deadline.side_effect = [RuntimeError("conflict"), "first_reminder"]

        result = await run_fee_enforcement(ledger)

        assert result == {"success": True, "actions": {"first_reminder": 1}, "errors": 1}


class TestOrderExpiryJob:

    @pytest.mark.asyncio
    async def test_expires_overdue_orders(self, order_manager, session_factory):
        order = order_manager.create_order("user-1", "top_up", amount="100")
        order_manager.create_order("user-1", "top_up", amount="200")
        session = session_factory()
        session.get(PaymentOrder, order["order_id"]).expires_at = get_naive_utc_now() - timedelta(seconds=1)
        session.commit()
        session.close()

        result = await run_order_expiry(order_manager)

        assert result == {"success": True, "expired": 1}


class TestSubmissionRecoveryJob:

    @staticmethod
    def _submit(order_manager, amount):
        order = order_manager.create_order("user-1", "top_up", amount=amount)
        return order_manager.create_submission("user-1", order["order_id"], screenshot_url("user-1"))["submission_id"]

    @staticmethod
    def _backdate(session_factory, submission_id, minutes):
        session = session_factory()
        submission = session.get(PaymentSubmission, submission_id)
        submission.created_at = get_naive_utc_now() - timedelta(minutes=minutes)
        session.commit()
        session.close()

    @pytest.mark.asyncio
    async def test_requeues_only_stale_submissions(self, pipeline, order_manager, make_account, session_factory):
        make_account("user-1")
        stale_id = self._submit(order_manager, "1500")
        fresh_id = self._submit(order_manager, "200")
        self._backdate(session_factory, stale_id, minutes=10)

        queue = SubmissionQueue(pipeline, session_factory, worker_count=1)
        await queue.start(recover=False)
        try:
            result = await run_submission_recovery(queue, stale_after_seconds=120)
            await queue.join()
        finally:
            await queue.stop()

        assert result == {"success": True, "requeued": 1}
        session = session_factory()
        assert session.get(PaymentSubmission, stale_id).status == "approved"
        assert session.get(PaymentSubmission, fresh_id).status == "processing"
        session.close()

    @pytest.mark.asyncio
    async def test_stopped_queue_is_reported(self, pipeline, order_manager, make_account, session_factory):
        make_account("user-1")
        submission_id = self._submit(order_manager, "1500")
        self._backdate(session_factory, submission_id, minutes=10)

        result = await run_submission_recovery(SubmissionQueue(pipeline, session_factory), stale_after_seconds=120)

        assert result["success"] is False
        assert "not running" in result["error"]


class TestConsolidatedScheduler:

    def test_registers_payment_jobs(self, fee_ledger, order_manager):
        scheduler = ConsolidatedScheduler(ledger=fee_ledger, order_manager=order_manager)
        scheduler.setup_jobs()

        jobs = {job.id: job for job in scheduler.scheduler.get_jobs()}
        assert set(jobs) == {"fee_reconciliation", "fee_enforcement", "order_expiry"}
        assert jobs["fee_reconciliation"].kwargs == {"ledger": fee_ledger}
        assert jobs["order_expiry"].kwargs == {"order_manager": order_manager}

    def test_stop_without_start(self, fee_ledger, order_manager):
        scheduler = ConsolidatedScheduler(ledger=fee_ledger, order_manager=order_manager)
        scheduler.stop()
        assert scheduler.scheduler.running is False

    def test_registers_recovery_when_queue_given(self, fee_ledger, order_manager, pipeline, session_factory):
        queue = SubmissionQueue(pipeline, session_factory, worker_count=1)
        scheduler = ConsolidatedScheduler(ledger=fee_ledger, order_manager=order_manager, queue=queue)
        scheduler.setup_jobs()

        jobs = {job.id: job for job in scheduler.scheduler.get_jobs()}
        assert "submission_recovery" in jobs
        assert jobs["submission_recovery"].kwargs == {"queue": queue}
