"""
Payment Order Manager
Creates idempotent payment orders, accepts receipt submissions against them and
expires orders nobody paid.

Orders are never deleted. A client-supplied idempotency token is hashed together with
the account and operation into the primary key of ``order_idempotency_locks``, written
in the same transaction as the order, so a retried request returns the first order.
"""

import hashlib
import logging
import secrets
import string
import time
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import (
    Account, AccountStatus, ContractStatus, FeeContract, OrderIdempotencyLock, OrderKind,
    OrderStatus, PaymentOrder, PaymentSubmission, PlatformFeeStatus, SubmissionStatus,
)
from services.platform_settings import PlatformSettingsService
from utils.atomic_transactions import run_in_transaction
from utils.datetime_helpers import get_naive_utc_now, to_iso
from utils.optimistic_locking import OptimisticLockManager
from utils.payment_errors import (
    AccountSuspendedError, AlreadyExistsError, FailedPreconditionError, InvalidArgumentError,
    NotFoundError, PermissionDeniedError, ResourceExhaustedError, UnauthenticatedError,
)
from utils.storage_url import check_screenshot_url

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_uppercase
_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_record_id(prefix: str) -> str:
    """``PREFIX-<base36 epoch millis>-<4 random chars>``"""
    millis = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(4))
    return f"{prefix}-{_base36(millis)}-{suffix}"


def idempotency_lock_key(account_id: str, operation: str, token: str) -> str:
    return hashlib.sha256(f"{account_id}:{operation}:{token}".encode("utf-8")).hexdigest()


def parse_topup_amount(raw: Any) -> Decimal:
    if raw is None or isinstance(raw, bool):
        raise InvalidArgumentError("amount must be a positive number")
    try:
        amount = Decimal(str(raw))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidArgumentError("amount must be a positive number")
    if not amount.is_finite() or amount <= 0:
        raise InvalidArgumentError("amount must be a positive number")
    if amount > Config.MAX_TOPUP_AMOUNT:
        raise InvalidArgumentError(f"amount must not exceed ₱{Config.MAX_TOPUP_AMOUNT:,.2f}")
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def get_or_create_account(session: Session, account_id: str) -> Account:
    """Accounts are provisioned on their first authenticated request"""
    account = session.get(Account, account_id)
    if account is None:
        account = Account(id=account_id)
        session.add(account)
        session.flush()
        logger.info(f"👤 New account provisioned: {account_id}")
    return account


def order_to_dict(order: PaymentOrder) -> Dict[str, Any]:
    return {
        "order_id": order.id,
        "kind": order.kind,
        "amount": str(order.amount),
        "status": order.status,
        "contract_id": order.contract_id,
        "bid_id": order.bid_id,
        "receiving_account": {
            "name": order.receiving_account_name,
            "number": order.receiving_account_display,
        },
        "rejection_reason": order.rejection_reason,
        "submission_id": order.submission_id,
        "created_at": to_iso(order.created_at),
        "expires_at": to_iso(order.expires_at),
        "verified_at": to_iso(order.verified_at),
    }


def submission_to_dict(submission: PaymentSubmission, include_analysis: bool = False) -> Dict[str, Any]:
    data = {
        "submission_id": submission.id,
        "order_id": submission.order_id,
        "status": submission.status,
        "ocr_status": submission.ocr_status,
        "created_at": to_iso(submission.created_at),
        "resolved_at": to_iso(submission.resolved_at),
    }
    if include_analysis:
        data.update({
            "account_id": submission.account_id,
            "screenshot_url": submission.screenshot_url,
            "fraud_score": submission.fraud_score,
            "flags": submission.flags or [],
            "recommended_action": submission.recommended_action,
            "reference_number": submission.reference_number,
            "image_hash": submission.image_hash,
            "ocr_confidence": submission.ocr_confidence,
            "extraction": submission.extraction,
            "validation": submission.validation,
            "forensics": submission.forensics,
            "errors": submission.errors or [],
            "resolved_by": submission.resolved_by,
            "resolution_notes": submission.resolution_notes,
            "ocr_completed_at": to_iso(submission.ocr_completed_at),
            "scored_at": to_iso(submission.scored_at),
        })
    return data


class OrderManager:
    """Order lifecycle: creation, owner-scoped reads, submissions and expiry"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        settings_service: Optional[PlatformSettingsService] = None,
    ):
        self.session_factory = session_factory
        self.settings_service = settings_service or PlatformSettingsService(session_factory)

    def _check_settings_gate(self, is_admin: bool) -> None:
        settings = self.settings_service.get_settings()
        if settings.is_maintenance_blocked(is_admin):
            raise FailedPreconditionError(settings.maintenance_message or "The platform is under maintenance")
        if not settings.payment_verification_enabled:
            raise FailedPreconditionError("Payment verification is currently disabled")

    # ------------------------------------------------------------------
    # Order creation
    # ------------------------------------------------------------------

    def create_order(
        self,
        account_id: str,
        kind: str,
        amount: Any = None,
        bid_id: Optional[str] = None,
        contract_id: Optional[str] = None,
        idempotency_token: Optional[str] = None,
        is_admin: bool = False,
    ) -> Dict[str, Any]:
        if not account_id:
            raise UnauthenticatedError("Authentication required")
        if kind not in (OrderKind.TOP_UP.value, OrderKind.FEE_SETTLEMENT.value):
            raise InvalidArgumentError(f"Unknown order kind '{kind}'")
        if idempotency_token is not None and (not isinstance(idempotency_token, str) or not idempotency_token.strip()):
            raise InvalidArgumentError("idempotency_token must be a non-empty string")

        self._check_settings_gate(is_admin)
        settings = self.settings_service.get_settings()

        topup_amount = parse_topup_amount(amount) if kind == OrderKind.TOP_UP.value else None
        if kind == OrderKind.FEE_SETTLEMENT.value and not (contract_id or bid_id):
            raise InvalidArgumentError("contract_id or bid_id is required for fee settlement")

        operation = f"create_order:{kind}"
        lock_key = idempotency_lock_key(account_id, operation, idempotency_token) if idempotency_token else None

        def work(session: Session) -> Dict[str, Any]:
            now = get_naive_utc_now()
            account = get_or_create_account(session, account_id)

            lock = session.get(OrderIdempotencyLock, lock_key) if lock_key else None
            if lock is not None:
                existing = session.get(PaymentOrder, lock.order_id)
                if existing is not None and existing.account_id == account_id and existing.is_active(now):
                    logger.info(f"🔁 IDEMPOTENT_ORDER: returning {existing.id} for {account_id}")
                    return order_to_dict(existing)

            if kind == OrderKind.FEE_SETTLEMENT.value:
                contract = self._load_fee_contract(session, contract_id, bid_id)
                if contract.payer_id != account_id:
                    raise PermissionDeniedError("Only the fee payer can settle this platform fee")
                if contract.platform_fee_status == PlatformFeeStatus.PAID.value:
                    raise AlreadyExistsError("Platform fee is already paid")
                if contract.platform_fee_status == PlatformFeeStatus.WAIVED.value:
                    raise FailedPreconditionError("Platform fee was waived")
                if contract.status == ContractStatus.CANCELLED.value or contract.billing_started_at is None:
                    raise FailedPreconditionError("Contract is not billable")

                active = session.scalars(
                    select(PaymentOrder)
                    .where(
                        PaymentOrder.contract_id == contract.id,
                        PaymentOrder.account_id == account_id,
                        PaymentOrder.status.in_(OrderStatus.active_values()),
                        PaymentOrder.expires_at > now,
                    )
                    .order_by(PaymentOrder.created_at.desc())
                ).first()
                if active is not None:
                    logger.info(f"🔁 ACTIVE_FEE_ORDER: reusing {active.id} for contract {contract.id}")
                    self._write_lock(session, lock, lock_key, account_id, operation, active.id)
                    return order_to_dict(active)

                order_amount = Decimal(contract.platform_fee)
                if order_amount <= 0:
                    raise FailedPreconditionError("Contract carries no platform fee")
            else:
                if account.status == AccountStatus.SUSPENDED.value:
                    raise AccountSuspendedError("Suspended accounts cannot top up", details={"reason": account.suspension_reason})
                since = now - timedelta(hours=24)
                created_today = session.scalar(
                    select(func.count(PaymentOrder.id)).where(
                        PaymentOrder.account_id == account_id,
                        PaymentOrder.kind == OrderKind.TOP_UP.value,
                        PaymentOrder.created_at >= since,
                    )
                )
                if created_today >= Config.MAX_DAILY_TOPUP_ORDERS:
                    raise ResourceExhaustedError(
                        f"Daily limit of {Config.MAX_DAILY_TOPUP_ORDERS} top-up orders reached"
                    )
                contract = None
                order_amount = topup_amount
                # Serializes concurrent top-up creation for this account
                OptimisticLockManager(session).versioned_update(Account, account.id, {}, current_version=account.version)

            order = PaymentOrder(
                id=generate_record_id("ORD"),
                account_id=account_id,
                kind=kind,
                amount=order_amount,
                contract_id=contract.id if contract is not None else None,
                bid_id=contract.bid_id if contract is not None else None,
                receiving_account_name=settings.receiving_account_name or None,
                receiving_account_number=settings.receiving_account_number or None,
                receiving_account_display=settings.receiving_account_display or None,
                status=OrderStatus.AWAITING_UPLOAD.value,
                created_at=now,
                expires_at=now + timedelta(minutes=Config.ORDER_EXPIRY_MINUTES),
            )
            session.add(order)
            session.flush()

            if contract is not None:
                # Version bump makes a concurrent fee order for this contract retry
                contract.fee_order_id = order.id
                session.flush()

            self._write_lock(session, lock, lock_key, account_id, operation, order.id)
            logger.info(f"🧾 ORDER_CREATED: {order.id} {kind} ₱{order_amount} for {account_id}")
            return order_to_dict(order)

        return run_in_transaction(work, self.session_factory, operation="create_order")

    @staticmethod
    def _load_fee_contract(session: Session, contract_id: Optional[str], bid_id: Optional[str]) -> FeeContract:
        contract = None
        if contract_id:
            contract = session.get(FeeContract, contract_id)
        elif bid_id:
            contract = session.scalars(
                select(FeeContract).where(FeeContract.bid_id == bid_id).order_by(FeeContract.created_at.desc())
            ).first()
        if contract is None:
            raise NotFoundError("Contract not found")
        return contract

    @staticmethod
    def _write_lock(
        session: Session,
        lock: Optional[OrderIdempotencyLock],
        lock_key: Optional[str],
        account_id: str,
        operation: str,
        order_id: str,
    ) -> None:
        if not lock_key:
            return
        if lock is None:
            session.add(OrderIdempotencyLock(
                lock_key=lock_key, account_id=account_id, operation=operation, order_id=order_id,
            ))
        else:
            lock.order_id = order_id
        session.flush()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_order(self, account_id: str, order_id: str, is_admin: bool = False) -> Dict[str, Any]:
        def work(session: Session) -> Dict[str, Any]:
            order = session.get(PaymentOrder, order_id)
            # Other accounts' orders are reported as missing
            if order is None or (order.account_id != account_id and not is_admin):
                raise NotFoundError("Order not found")
            return order_to_dict(order)

        return run_in_transaction(work, self.session_factory, operation="get_order")

    def get_pending_orders(self, account_id: str) -> List[Dict[str, Any]]:
        def work(session: Session) -> List[Dict[str, Any]]:
            now = get_naive_utc_now()
            orders = session.scalars(
                select(PaymentOrder)
                .where(
                    PaymentOrder.account_id == account_id,
                    PaymentOrder.status.in_(OrderStatus.active_values()),
                    PaymentOrder.expires_at > now,
                )
                .order_by(PaymentOrder.created_at.desc())
            ).all()
            return [order_to_dict(order) for order in orders]

        return run_in_transaction(work, self.session_factory, operation="get_pending_orders")

    def get_submission(self, account_id: str, submission_id: str, is_admin: bool = False) -> Dict[str, Any]:
        def work(session: Session) -> Dict[str, Any]:
            submission = session.get(PaymentSubmission, submission_id)
            if submission is None or (submission.account_id != account_id and not is_admin):
                raise NotFoundError("Submission not found")
            data = submission_to_dict(submission, include_analysis=is_admin)
            order = session.get(PaymentOrder, submission.order_id)
            if order is not None and order.rejection_reason:
                data["rejection_reason"] = order.rejection_reason
            return data

        return run_in_transaction(work, self.session_factory, operation="get_submission")

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    def create_submission(
        self,
        account_id: str,
        order_id: str,
        screenshot_url: str,
        is_admin: bool = False,
    ) -> Dict[str, Any]:
        """Record a receipt screenshot for an order; evaluation happens asynchronously"""
        if not order_id:
            raise InvalidArgumentError("order_id is required")
        url_check = check_screenshot_url(screenshot_url, account_id)
        if not url_check.valid:
            raise InvalidArgumentError(url_check.reason)

        settings = self.settings_service.get_settings()
        if settings.is_maintenance_blocked(is_admin):
            raise FailedPreconditionError(settings.maintenance_message or "The platform is under maintenance")

        def work(session: Session) -> Dict[str, Any]:
            now = get_naive_utc_now()
            order = session.get(PaymentOrder, order_id)
            if order is None or order.account_id != account_id:
                raise NotFoundError("Order not found")
            if order.status in (OrderStatus.SUBMITTED.value, OrderStatus.PROCESSING.value):
                raise AlreadyExistsError("A receipt is already being verified for this order")
            if order.status != OrderStatus.AWAITING_UPLOAD.value:
                raise FailedPreconditionError(f"Order is {order.status}")
            if order.is_expired(now):
                raise FailedPreconditionError("Order has expired")

            submission = PaymentSubmission(
                id=generate_record_id("SUB"),
                order_id=order.id,
                account_id=account_id,
                screenshot_url=screenshot_url,
                status=SubmissionStatus.PROCESSING.value,
                flags=[],
                errors=[],
                created_at=now,
            )
            session.add(submission)

            order.status = OrderStatus.SUBMITTED.value
            order.submission_id = submission.id
            order.submitted_at = now
            session.flush()

            logger.info(f"📤 SUBMISSION_CREATED: {submission.id} for order {order.id}")
            return {"submission_id": submission.id, "order_id": order.id, "status": submission.status}

        return run_in_transaction(work, self.session_factory, operation="create_submission")

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def expire_stale_orders(self, now: Optional[datetime] = None) -> int:
        def work(session: Session) -> int:
            cutoff = now or get_naive_utc_now()
            result = session.execute(
                update(PaymentOrder)
                .where(
                    PaymentOrder.status.in_([OrderStatus.AWAITING_UPLOAD.value, OrderStatus.SUBMITTED.value]),
                    PaymentOrder.expires_at <= cutoff,
                )
                .values(status=OrderStatus.EXPIRED.value, version=PaymentOrder.version + 1)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

        expired = run_in_transaction(work, self.session_factory, operation="expire_orders")
        if expired:
            logger.info(f"⌛ ORDERS_EXPIRED: {expired}")
        return expired
