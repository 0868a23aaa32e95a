"""
Outstanding Fee Ledger Tests
Fee caps, billing, settlement, cancellation, deadline enforcement and reconciliation
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from config import Config
from models import (
    Account, AccountStatus, ContractStatus, FeeContract, FraudAuditLog, Notification,
    OrderStatus, PaymentOrder, PlatformFeeStatus,
)
from services.outstanding_fee_ledger import fee_cap_for, settle_contract_fee
from utils.datetime_helpers import get_naive_utc_now
from utils.payment_errors import (
    AccountSuspendedError,
    FeeCapExceededError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
)


def _account(session_factory, account_id):
    session = session_factory()
    try:
        return session.get(Account, account_id)
    finally:
        session.close()


def _contract(session_factory, contract_id):
    session = session_factory()
    try:
        return session.get(FeeContract, contract_id)
    finally:
        session.close()


class TestFeeCaps:

    def test_cap_tiers(self):
        now = get_naive_utc_now()
        veteran = Account(id="a", is_verified=True, created_at=now - timedelta(days=90))
        new_verified = Account(id="b", is_verified=True, created_at=now - timedelta(days=5))
        unverified = Account(id="c", is_verified=False, created_at=now - timedelta(days=90))

        assert fee_cap_for(veteran, now) == Config.FEE_CAP_STANDARD
        assert fee_cap_for(new_verified, now) == Config.FEE_CAP_NEW_ACCOUNT
        assert fee_cap_for(unverified, now) == Config.FEE_CAP_UNVERIFIED

    def test_cap_exceeded_writes_nothing(self, fee_ledger, make_account, session_factory):
        make_account("payer-1", age_days=5, is_verified=False)
        fee_ledger.apply_contract_fee("payer-1", "contract-1", Decimal("30000"))

        with pytest.raises(FeeCapExceededError) as excinfo:
            fee_ledger.apply_contract_fee("payer-1", "contract-2", Decimal("30000"))

        details = excinfo.value.details
        assert Decimal(details["outstanding"]) == Decimal("1500")
        assert Decimal(details["fee"]) == Decimal("1500")
        assert Decimal(details["cap"]) == Config.FEE_CAP_UNVERIFIED
        account = _account(session_factory, "payer-1")
        assert account.outstanding_fee_total == Decimal("1500.00")
        assert account.unpaid_contract_ids == ["contract-1"]
        assert _contract(session_factory, "contract-2") is None

    def test_fee_within_cap_exactly(self, fee_ledger, make_account):
        make_account("payer-1", age_days=5, is_verified=False)
        fee_ledger.apply_contract_fee("payer-1", "contract-1", Decimal("30000"))
        state = fee_ledger.apply_contract_fee("payer-1", "contract-2", Decimal("10000"))

        assert Decimal(state["outstanding_fee_total"]) == Decimal("2000")


class TestApplyContractFee:

    def test_bills_fee_and_sets_due_date(self, fee_ledger, make_account, session_factory):
        make_account("payer-1")
        now = get_naive_utc_now()
        state = fee_ledger.apply_contract_fee("payer-1", "contract-1", Decimal("30000"), bid_id="bid-1", now=now)

        assert state["platform_fee"] == "1500"
        assert state["platform_fee_status"] == "unpaid"
        assert state["fee_cap"] == str(Config.FEE_CAP_STANDARD)

        contract = _contract(session_factory, "contract-1")
        assert contract.status == ContractStatus.SIGNED.value
        assert contract.billing_started_at == now
        assert contract.fee_due_at == now + timedelta(days=Config.FEE_PAYMENT_GRACE_DAYS)
        assert _account(session_factory, "payer-1").outstanding_fee_total == Decimal("1500.00")

    def test_reapplying_is_idempotent(self, fee_ledger, make_account, session_factory):
        make_account("payer-1")
        fee_ledger.apply_contract_fee("payer-1", "contract-1", Decimal("30000"))
        fee_ledger.apply_contract_fee("payer-1", "contract-1", Decimal("30000"))

        account = _account(session_factory, "payer-1")
        assert account.outstanding_fee_total == Decimal("1500.00")
        assert account.unpaid_contract_ids == ["contract-1"]

    def test_first_time_payer_is_provisioned(self, fee_ledger, session_factory):
        fee_ledger.apply_contract_fee("brand-new", "contract-1", Decimal("10000"))
        account = _account(session_factory, "brand-new")

        assert account.outstanding_fee_total == Decimal("500.00")
        assert fee_cap_for(account) == Config.FEE_CAP_UNVERIFIED

    def test_explicit_fee_override(self, fee_ledger, make_account):
        make_account("payer-1")
        state = fee_ledger.apply_contract_fee("payer-1", "contract-1", Decimal("30000"), platform_fee=Decimal("0"))

        assert state["platform_fee_status"] == "paid", "Nothing to collect on a zero fee"
        assert Decimal(state["outstanding_fee_total"]) == 0

    def test_contract_of_another_payer(self, fee_ledger, make_account):
        make_account("payer-1")
        make_account("payer-2")
        fee_ledger.apply_contract_fee("payer-1", "contract-1", Decimal("30000"))

        with pytest.raises(PermissionDeniedError):
            fee_ledger.apply_contract_fee("payer-2", "contract-1", Decimal("30000"))

    def test_suspended_payer(self, fee_ledger, make_account):
        make_account("payer-1", status=AccountStatus.SUSPENDED.value, suspension_reason="fraud")

        with pytest.raises(AccountSuspendedError):
            fee_ledger.apply_contract_fee("payer-1", "contract-1", Decimal("30000"))

    @pytest.mark.parametrize("price", ["0", "-100", "abc", None])
    def test_invalid_price(self, fee_ledger, price):
        with pytest.raises(InvalidArgumentError):
            fee_ledger.apply_contract_fee("payer-1", "contract-1", price)


class TestSettlementAndCancellation:

    def test_settle_releases_and_restores_account(self, fee_ledger, make_account, session_factory):
        make_account("payer-1")
        fee_ledger.apply_contract_fee("payer-1", "contract-1", Decimal("30000"))
        fee_ledger.suspend_account("payer-1", Config.UNPAID_FEES_SUSPENSION_REASON)

        session = session_factory()
        now = get_naive_utc_now()
        assert settle_contract_fee(session, "contract-1", "ORD-X", now) is True
        session.commit()
        assert settle_contract_fee(session, "contract-1", "ORD-X", now) is False, "Second settlement is a no-op"
        session.commit()
        session.close()

        account = _account(session_factory, "payer-1")
        assert account.outstanding_fee_total == Decimal("0")
        assert account.unpaid_contract_ids == []
        assert account.status == AccountStatus.ACTIVE.value
        assert _contract(session_factory, "contract-1").platform_fee_status == PlatformFeeStatus.PAID.value

    def test_settle_keeps_other_suspensions(self, fee_ledger, make_account, session_factory):
        make_account("payer-1")
        fee_ledger.apply_contract_fee("payer-1", "contract-1", Decimal("30000"))
        fee_ledger.suspend_account("payer-1", "chargeback_investigation", admin_id="admin-1")

        session = session_factory()
        settle_contract_fee(session, "contract-1", "ORD-X", get_naive_utc_now())
        session.commit()
        session.close()

        assert _account(session_factory, "payer-1").status == AccountStatus.SUSPENDED.value

    def test_admin_unsuspend(self, fee_ledger, make_account, session_factory):
        make_account("payer-1")
        fee_ledger.suspend_account("payer-1", "chargeback_investigation", admin_id="admin-1")

        assert fee_ledger.unsuspend_account("payer-1", admin_id="admin-2") is True
        assert fee_ledger.unsuspend_account("payer-1", admin_id="admin-2") is False, "Already active"

        account = _account(session_factory, "payer-1")
        assert account.status == AccountStatus.ACTIVE.value
        assert account.suspension_reason is None

        session = session_factory()
        entry = session.query(FraudAuditLog).filter(FraudAuditLog.action == "account_unsuspended").one()
        assert entry.admin_id == "admin-2"
        assert entry.details["previous_reason"] == "chargeback_investigation"
        kinds = [n.kind for n in session.query(Notification).filter(Notification.recipient == "payer-1")]
        assert "account_restored" in kinds
        session.close()

    def test_unsuspend_unknown_account(self, fee_ledger):
        with pytest.raises(NotFoundError):
            fee_ledger.unsuspend_account("ghost")

    def test_cancel_waives_fee_and_expires_fee_orders(self, fee_ledger, order_manager, make_account, session_factory):
        make_account("payer-1")
        fee_ledger.apply_contract_fee("payer-1", "contract-1", Decimal("30000"))
        fee_ledger.apply_contract_fee("payer-1", "contract-2", Decimal("20000"))
        order = order_manager.create_order("payer-1", "fee_settlement", contract_id="contract-1")

        result = fee_ledger.cancel_contract("contract-1", "payer-1")

        assert result == {"contract_id": "contract-1", "status": "cancelled", "platform_fee_status": "waived"}
        account = _account(session_factory, "payer-1")
        assert account.outstanding_fee_total == Decimal("1000.00")
        assert account.unpaid_contract_ids == ["contract-2"]

        session = session_factory()
        assert session.get(PaymentOrder, order["order_id"]).status == OrderStatus.EXPIRED.value
        session.close()

        again = fee_ledger.cancel_contract("contract-1", "payer-1")
        assert again["status"] == "cancelled"
        assert _account(session_factory, "payer-1").outstanding_fee_total == Decimal("1000.00")

    def test_cancel_permissions(self, fee_ledger, make_account):
        make_account("payer-1")
        fee_ledger.apply_contract_fee("payer-1", "contract-1", Decimal("30000"))

        with pytest.raises(PermissionDeniedError):
            fee_ledger.cancel_contract("contract-1", "stranger")
        with pytest.raises(NotFoundError):
            fee_ledger.cancel_contract("missing", "payer-1")

        assert fee_ledger.waive_contract_fee("contract-1", "admin-1")["platform_fee_status"] == "waived"


class TestDeadlineEnforcement:

    @pytest.fixture
    def billed(self, fee_ledger, make_account):
        make_account("payer-1")
        start = get_naive_utc_now() - timedelta(hours=1)
        fee_ledger.apply_contract_fee("payer-1", "contract-1", Decimal("30000"), now=start)
        return start

    def test_reminders_then_overdue(self, fee_ledger, billed, session_factory):
        assert fee_ledger.enforce_contract_deadline("contract-1", now=billed + timedelta(hours=12)) is None
        assert fee_ledger.enforce_contract_deadline("contract-1", now=billed + timedelta(days=1, minutes=1)) == "first_reminder"
        assert fee_ledger.enforce_contract_deadline("contract-1", now=billed + timedelta(days=1, hours=2)) is None
        assert fee_ledger.enforce_contract_deadline("contract-1", now=billed + timedelta(days=2, minutes=1)) == "final_reminder"
        assert fee_ledger.enforce_contract_deadline("contract-1", now=billed + timedelta(days=2, hours=2)) is None
        assert fee_ledger.enforce_contract_deadline("contract-1", now=billed + timedelta(days=3, minutes=1)) == "overdue"

        account = _account(session_factory, "payer-1")
        assert account.status == AccountStatus.SUSPENDED.value
        assert account.suspension_reason == Config.UNPAID_FEES_SUSPENSION_REASON
        assert _contract(session_factory, "contract-1").platform_fee_status == PlatformFeeStatus.OVERDUE.value

        session = session_factory()
        kinds = [n.kind for n in session.query(Notification).filter_by(recipient="payer-1").order_by(Notification.id)]
        actions = [e.action for e in session.query(FraudAuditLog).filter_by(account_id="payer-1")]
        session.close()
        assert kinds == ["fee_reminder_first", "fee_reminder_final", "account_suspended"]
        assert actions == ["account_suspended"]

    def test_overdue_fee_still_counts_toward_total(self, fee_ledger, billed):
        fee_ledger.enforce_contract_deadline("contract-1", now=billed + timedelta(days=4))
        result = fee_ledger.reconcile_account("payer-1")

        assert result.total == Decimal("1500.00")
        assert result.corrected is False

    def test_due_contracts_listing(self, fee_ledger, billed):
        assert fee_ledger.contracts_due_for_enforcement() == ["contract-1"]
        fee_ledger.cancel_contract("contract-1", "payer-1")
        assert fee_ledger.contracts_due_for_enforcement() == []


class TestReconciliation:

    def test_corrects_drift(self, fee_ledger, make_account, session_factory):
        make_account("payer-1")
        fee_ledger.apply_contract_fee("payer-1", "contract-1", Decimal("30000"))

        session = session_factory()
        account = session.get(Account, "payer-1")
        account.outstanding_fee_total = Decimal("9999")
        account.unpaid_contract_ids = ["contract-1", "ghost"]
        session.commit()
        session.close()

        result = fee_ledger.reconcile_account("payer-1")

        assert result.corrected is True
        assert result.previous_total == Decimal("9999.00")
        assert result.total == Decimal("1500.00")
        account = _account(session_factory, "payer-1")
        assert account.outstanding_fee_total == Decimal("1500.00")
        assert account.unpaid_contract_ids == ["contract-1"]
        assert account.ledger_reconciled_at is not None

        session = session_factory()
        corrections = session.query(FraudAuditLog).filter_by(action="ledger_corrected").all()
        session.close()
        assert len(corrections) == 1
        assert Decimal(corrections[0].details["corrected_total"]) == Decimal("1500")

    def test_consistent_ledger_is_untouched(self, fee_ledger, make_account):
        make_account("payer-1")
        fee_ledger.apply_contract_fee("payer-1", "contract-1", Decimal("30000"))
        fee_ledger.apply_contract_fee("payer-1", "contract-2", Decimal("20000"))

        result = fee_ledger.reconcile_account("payer-1")
        assert result.corrected is False
        assert result.total == Decimal("2500.00")
        assert result.unpaid_contract_ids == ["contract-1", "contract-2"]

    def test_restores_fee_suspension_when_nothing_outstanding(self, fee_ledger, make_account, session_factory):
        make_account(
            "payer-1",
            status=AccountStatus.SUSPENDED.value,
            suspension_reason=Config.UNPAID_FEES_SUSPENSION_REASON,
            outstanding_fee_total=Decimal("700"),
            unpaid_contract_ids=["old-contract"],
        )

        result = fee_ledger.reconcile_account("payer-1")

        assert result.unsuspended is True
        assert result.total == Decimal("0")
        assert _account(session_factory, "payer-1").status == AccountStatus.ACTIVE.value

    def test_batch_report(self, fee_ledger, make_account):
        make_account("payer-1")
        make_account("payer-2", outstanding_fee_total=Decimal("300"), unpaid_contract_ids=["gone"])
        make_account(
            "payer-3",
            status=AccountStatus.SUSPENDED.value,
            suspension_reason=Config.UNPAID_FEES_SUSPENSION_REASON,
        )

        report = fee_ledger.reconcile_accounts(batch_size=10)

        assert report.processed == 3
        assert report.corrected == 1
        assert report.unsuspended == 1
        assert report.errors == 0

    def test_outstanding_fee_report(self, fee_ledger, make_account):
        make_account("payer-1")
        fee_ledger.apply_contract_fee("payer-1", "contract-1", Decimal("30000"))
        fee_ledger.apply_contract_fee("payer-1", "contract-2", Decimal("20000"))
        fee_ledger.suspend_account("payer-1", "manual_hold", admin_id="admin-1")

        report = fee_ledger.list_outstanding_fees()

        assert Decimal(report["total_outstanding"]) == Decimal("2500")
        assert {c["contract_id"] for c in report["contracts"]} == {"contract-1", "contract-2"}
        assert report["suspended_accounts"][0]["account_id"] == "payer-1"
