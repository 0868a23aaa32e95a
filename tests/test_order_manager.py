"""
Payment Order Manager Tests
Order creation (idempotency, limits, fee orders), submissions and expiry
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from caching.simple_cache import SimpleCache
from config import Config
from conftest import LosingRaceSessions, screenshot_url
from models import (
    Account, FeeContract, OrderIdempotencyLock, OrderStatus, PaymentOrder, PaymentSubmission, PlatformFeeStatus,
)
from services.order_manager import OrderManager, generate_record_id, parse_topup_amount
from services.outstanding_fee_ledger import OutstandingFeeLedger
from services.platform_settings import PlatformSettingsService
from utils.datetime_helpers import get_naive_utc_now
from utils.payment_errors import (
    AccountSuspendedError,
    AlreadyExistsError,
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
    ResourceExhaustedError,
    UnauthenticatedError,
)


class TestOrderHelpers:

    def test_record_id_format(self):
        record_id = generate_record_id("ORD")
        prefix, stamp, suffix = record_id.split("-")

        assert prefix == "ORD"
        assert stamp.isalnum() and stamp.upper() == stamp
        assert len(suffix) == 4

    @pytest.mark.parametrize("raw,expected", [
        ("1500", Decimal("1500.00")),
        (250.5, Decimal("250.50")),
        ("0.005", Decimal("0.01")),
    ])
    def test_parse_topup_amount(self, raw, expected):
        assert parse_topup_amount(raw) == expected

    @pytest.mark.parametrize("raw", [None, True, "abc", "0", "-1", "Infinity", "50000.01"])
    def test_parse_topup_amount_rejects(self, raw):
        with pytest.raises(InvalidArgumentError):
            parse_topup_amount(raw)


class TestCreateTopUpOrder:

    def test_creates_order_with_receiving_snapshot(self, order_manager, db_session):
        order = order_manager.create_order("user-1", "top_up", amount="1500")

        assert order["status"] == "awaiting_upload"
        assert order["amount"] == "1500.00"
        assert order["receiving_account"] == {"name": "JUAN DELA CRUZ", "number": "0917****567"}
        assert order["order_id"].startswith("ORD-")

        stored = db_session.get(PaymentOrder, order["order_id"])
        assert stored.expires_at - stored.created_at == timedelta(minutes=Config.ORDER_EXPIRY_MINUTES)
        assert db_session.get(Account, "user-1") is not None, "Accounts are provisioned on first use"

    def test_idempotency_token_returns_same_order(self, order_manager, db_session):
        first = order_manager.create_order("user-1", "top_up", amount="500", idempotency_token="tap-1")
        second = order_manager.create_order("user-1", "top_up", amount="500", idempotency_token="tap-1")
        other = order_manager.create_order("user-1", "top_up", amount="500", idempotency_token="tap-2")

        assert first["order_id"] == second["order_id"]
        assert other["order_id"] != first["order_id"]
        assert db_session.query(PaymentOrder).count() == 2

    def test_idempotency_token_is_scoped_per_account(self, order_manager):
        mine = order_manager.create_order("user-1", "top_up", amount="500", idempotency_token="tap-1")
        theirs = order_manager.create_order("user-2", "top_up", amount="500", idempotency_token="tap-1")
        assert mine["order_id"] != theirs["order_id"]

    def test_input_errors(self, order_manager):
        with pytest.raises(UnauthenticatedError):
            order_manager.create_order("", "top_up", amount="100")
        with pytest.raises(InvalidArgumentError):
            order_manager.create_order("user-1", "refund", amount="100")
        with pytest.raises(InvalidArgumentError):
            order_manager.create_order("user-1", "top_up", amount="0")
        with pytest.raises(InvalidArgumentError):
            order_manager.create_order("user-1", "top_up", amount="100", idempotency_token="  ")
        with pytest.raises(InvalidArgumentError):
            order_manager.create_order("user-1", "fee_settlement")

    def test_daily_limit(self, order_manager):
        for _ in range(Config.MAX_DAILY_TOPUP_ORDERS):
            order_manager.create_order("user-1", "top_up", amount="100")

        with pytest.raises(ResourceExhaustedError):
            order_manager.create_order("user-1", "top_up", amount="100")

        # Other accounts are unaffected
        order_manager.create_order("user-2", "top_up", amount="100")

    def test_suspended_account_cannot_top_up(self, order_manager, make_account):
        make_account("user-1", status="suspended", suspension_reason="unpaid_platform_fees")

        with pytest.raises(AccountSuspendedError):
            order_manager.create_order("user-1", "top_up", amount="100")

    def test_maintenance_mode(self, order_manager, settings_service):
        settings_service.update_settings({"maintenance": {"enabled": True, "message": "Back at noon"}}, "admin-1")

        with pytest.raises(FailedPreconditionError, match="Back at noon"):
            order_manager.create_order("user-1", "top_up", amount="100")
        assert order_manager.create_order("admin-1", "top_up", amount="100", is_admin=True)["status"] == "awaiting_upload"

    def test_verification_disabled(self, order_manager, settings_service):
        settings_service.update_settings({"features": {"payment_verification_enabled": False}}, "admin-1")

        with pytest.raises(FailedPreconditionError):
            order_manager.create_order("user-1", "top_up", amount="100")


class TestCreateFeeOrder:

    @pytest.fixture
    def billed_contract(self, make_account, fee_ledger):
        make_account("payer-1")
        fee_ledger.apply_contract_fee("payer-1", "contract-1", Decimal("30000"), bid_id="bid-1")
        return "contract-1"

    def test_fee_order_amount_is_contract_fee(self, order_manager, billed_contract, db_session):
        order = order_manager.create_order("payer-1", "fee_settlement", contract_id=billed_contract)

        assert order["amount"] == "1500.00"
        assert order["contract_id"] == billed_contract
        assert order["bid_id"] == "bid-1"
        assert db_session.get(FeeContract, billed_contract).fee_order_id == order["order_id"]

    def test_one_active_fee_order_per_contract(self, order_manager, billed_contract, db_session):
        first = order_manager.create_order("payer-1", "fee_settlement", contract_id=billed_contract)
        again = order_manager.create_order("payer-1", "fee_settlement", bid_id="bid-1")

        assert again["order_id"] == first["order_id"]
        assert db_session.query(PaymentOrder).count() == 1

    def test_expired_fee_order_is_replaced(self, order_manager, billed_contract, session_factory):
        first = order_manager.create_order("payer-1", "fee_settlement", contract_id=billed_contract)
        order_manager.expire_stale_orders(now=get_naive_utc_now() + timedelta(hours=1))

        second = order_manager.create_order("payer-1", "fee_settlement", contract_id=billed_contract)
        assert second["order_id"] != first["order_id"]

    def test_only_payer_can_settle(self, order_manager, billed_contract):
        with pytest.raises(PermissionDeniedError):
            order_manager.create_order("someone-else", "fee_settlement", contract_id=billed_contract)

    def test_paid_fee(self, order_manager, billed_contract, session_factory):
        session = session_factory()
        contract = session.get(FeeContract, billed_contract)
        contract.platform_fee_status = PlatformFeeStatus.PAID.value
        session.commit()
        session.close()

        with pytest.raises(AlreadyExistsError):
            order_manager.create_order("payer-1", "fee_settlement", contract_id=billed_contract)

    def test_unknown_contract(self, order_manager):
        with pytest.raises(NotFoundError):
            order_manager.create_order("payer-1", "fee_settlement", contract_id="missing")

    def test_suspended_payer_can_still_pay_fees(self, order_manager, billed_contract, fee_ledger):
        fee_ledger.suspend_account("payer-1", "unpaid_platform_fees")
        order = order_manager.create_order("payer-1", "fee_settlement", contract_id=billed_contract)
        assert order["status"] == "awaiting_upload"


class TestReadsAndSubmissions:

    def test_orders_are_owner_scoped(self, order_manager):
        order = order_manager.create_order("user-1", "top_up", amount="100")

        assert order_manager.get_order("user-1", order["order_id"])["order_id"] == order["order_id"]
        assert order_manager.get_order("admin-1", order["order_id"], is_admin=True)
        with pytest.raises(NotFoundError):
            order_manager.get_order("user-2", order["order_id"])

    def test_pending_orders(self, order_manager):
        order_manager.create_order("user-1", "top_up", amount="100")
        order_manager.create_order("user-1", "top_up", amount="200")
        order_manager.create_order("user-2", "top_up", amount="300")

        pending = order_manager.get_pending_orders("user-1")
        assert sorted(o["amount"] for o in pending) == ["100.00", "200.00"]

    def test_submission_moves_order_to_submitted(self, order_manager, db_session):
        order = order_manager.create_order("user-1", "top_up", amount="100")
        result = order_manager.create_submission("user-1", order["order_id"], screenshot_url("user-1"))

        assert result["status"] == "processing"
        assert result["submission_id"].startswith("SUB-")
        stored_order = db_session.get(PaymentOrder, order["order_id"])
        assert stored_order.status == OrderStatus.SUBMITTED.value
        assert stored_order.submission_id == result["submission_id"]

        view = order_manager.get_submission("user-1", result["submission_id"])
        assert view["status"] == "processing"
        assert "fraud_score" not in view, "Owners do not see scoring internals"

    def test_second_submission_is_rejected(self, order_manager):
        order = order_manager.create_order("user-1", "top_up", amount="100")
        order_manager.create_submission("user-1", order["order_id"], screenshot_url("user-1"))

        with pytest.raises(AlreadyExistsError):
            order_manager.create_submission("user-1", order["order_id"], screenshot_url("user-1", "again.png"))

    def test_submission_url_must_belong_to_caller(self, order_manager):
        order = order_manager.create_order("user-1", "top_up", amount="100")

        with pytest.raises(InvalidArgumentError):
            order_manager.create_submission("user-1", order["order_id"], screenshot_url("user-2"))

    def test_submission_against_someone_elses_order(self, order_manager):
        order = order_manager.create_order("user-1", "top_up", amount="100")

        with pytest.raises(NotFoundError):
            order_manager.create_submission("user-2", order["order_id"], screenshot_url("user-2"))

    def test_submission_on_expired_order(self, order_manager, session_factory):
        order = order_manager.create_order("user-1", "top_up", amount="100")
        session = session_factory()
        stored = session.get(PaymentOrder, order["order_id"])
        stored.expires_at = get_naive_utc_now() - timedelta(minutes=1)
        session.commit()
        session.close()

        with pytest.raises(FailedPreconditionError):
            order_manager.create_submission("user-1", order["order_id"], screenshot_url("user-1"))


class TestExpiry:

    def test_expire_stale_orders(self, order_manager, db_session):
        stale = order_manager.create_order("user-1", "top_up", amount="100")
        submitted = order_manager.create_order("user-1", "top_up", amount="200")
        order_manager.create_submission("user-1", submitted["order_id"], screenshot_url("user-1"))

        assert order_manager.expire_stale_orders() == 0
        expired = order_manager.expire_stale_orders(now=get_naive_utc_now() + timedelta(minutes=31))

        assert expired == 2
        assert db_session.get(PaymentOrder, stale["order_id"]).status == OrderStatus.EXPIRED.value
        assert db_session.query(PaymentSubmission).count() == 1


class TestConcurrentOrderCreation:
    """A second request that read before the first committed still ends on the first's order"""

    @pytest.fixture
    def file_settings(self, file_session_factory):
        return PlatformSettingsService(file_session_factory, ttl=30, cache=SimpleCache(default_ttl=30))

    @staticmethod
    def _seed_account(session_factory, account_id):
        session = session_factory()
        session.add(Account(id=account_id, is_verified=True, created_at=get_naive_utc_now() - timedelta(days=60)))
        session.commit()
        session.close()

    def test_same_idempotency_token_yields_one_order(self, file_session_factory, file_settings):
        self._seed_account(file_session_factory, "user-1")
        winner = OrderManager(file_session_factory, settings_service=file_settings)
        racing = LosingRaceSessions(
            file_session_factory,
            OrderIdempotencyLock,
            lambda: winner.create_order("user-1", "top_up", amount="500", idempotency_token="tap-1"),
        )

        result = OrderManager(racing, settings_service=file_settings).create_order(
            "user-1", "top_up", amount="500", idempotency_token="tap-1",
        )

        assert result["order_id"] == racing.competitor_result["order_id"]
        assert racing.opened == 2, "The stale account version forces one retry"
        session = file_session_factory()
        assert session.query(PaymentOrder).count() == 1
        session.close()

    def test_same_contract_and_payer_yields_one_fee_order(self, file_session_factory, file_settings):
        self._seed_account(file_session_factory, "payer-1")
        OutstandingFeeLedger(file_session_factory, settings_service=file_settings).apply_contract_fee(
            "payer-1", "contract-1", Decimal("30000"),
        )
        winner = OrderManager(file_session_factory, settings_service=file_settings)
        racing = LosingRaceSessions(
            file_session_factory,
            FeeContract,
            lambda: winner.create_order("payer-1", "fee_settlement", contract_id="contract-1"),
        )

        result = OrderManager(racing, settings_service=file_settings).create_order(
            "payer-1", "fee_settlement", contract_id="contract-1",
        )

        assert result["order_id"] == racing.competitor_result["order_id"]
        session = file_session_factory()
        orders = session.query(PaymentOrder).filter(PaymentOrder.contract_id == "contract-1").all()
        assert [order.id for order in orders] == [result["order_id"]]
        assert session.get(FeeContract, "contract-1").fee_order_id == result["order_id"]
        session.close()
