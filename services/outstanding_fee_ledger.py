"""
Outstanding Fee Ledger & Suspension Enforcer

Tracks the platform fees each payer owes on signed marketplace contracts, caps that
exposure by account trust level, and suspends or restores accounts as fees go overdue
or are settled.

The per-account running total is a cache of the contracts table. Incremental updates
go through a version-checked UPDATE; reconciliation recomputes the total from the
contracts and is the authority whenever the two disagree.
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import (
    Account, AccountStatus, ContractStatus, FeeContract, FeeReminderStage, FraudAuditAction,
    OrderKind, OrderStatus, PaymentOrder, PlatformFeeStatus,
)
from services.fraud_audit_logger import FraudAuditLogger
from services.notification_service import PaymentNotificationService
from services.order_manager import get_or_create_account
from services.platform_settings import PlatformSettingsService
from utils.atomic_transactions import run_in_transaction
from utils.datetime_helpers import get_naive_utc_now, to_iso
from utils.optimistic_locking import OptimisticLockManager
from utils.payment_errors import (
    AccountSuspendedError, FailedPreconditionError, FeeCapExceededError,
    InvalidArgumentError, NotFoundError, PermissionDeniedError,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
FEE_BEARING_CONTRACT_STATES = (ContractStatus.ACTIVE.value, ContractStatus.SIGNED.value, ContractStatus.PAID.value)


@dataclass
class AccountReconciliation:
    account_id: str
    previous_total: Decimal
    total: Decimal
    unpaid_contract_ids: List[str] = field(default_factory=list)
    corrected: bool = False
    unsuspended: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["previous_total"] = str(self.previous_total)
        data["total"] = str(self.total)
        return data


@dataclass
class ReconciliationReport:
    processed: int = 0
    corrected: int = 0
    unsuspended: int = 0
    errors: int = 0


def _parse_amount(value: Any, name: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidArgumentError(f"{name} must be a number")
    if not amount.is_finite():
        raise InvalidArgumentError(f"{name} must be a finite number")
    return amount


def fee_cap_for(account: Account, now: Optional[datetime] = None) -> Decimal:
    """Smallest cap that applies to the account's trust level"""
    now = now or get_naive_utc_now()
    caps = [Config.FEE_CAP_STANDARD]
    if not account.is_verified:
        caps.append(Config.FEE_CAP_UNVERIFIED)
    created_at = account.created_at or now
    if now - created_at < timedelta(days=Config.FEE_CAP_NEW_ACCOUNT_DAYS):
        caps.append(Config.FEE_CAP_NEW_ACCOUNT)
    return min(caps)


def load_account(session: Session, account_id: str) -> Account:
    account = session.get(Account, account_id)
    if account is None:
        raise NotFoundError(f"Account {account_id} not found")
    return account


def update_account_ledger(session: Session, account: Account, **updates: Any) -> None:
    """Version-checked write of account ledger columns; conflicts surface as OptimisticLockingError"""
    OptimisticLockManager(session).versioned_update(
        Account, account.id, updates, current_version=account.version
    )


def suspend_in_session(
    session: Session,
    account: Account,
    reason: str,
    now: datetime,
    admin_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> bool:
    if account.status == AccountStatus.SUSPENDED.value:
        return False
    update_account_ledger(
        session, account,
        status=AccountStatus.SUSPENDED.value, suspension_reason=reason, suspended_at=now,
    )
    FraudAuditLogger.record(
        session,
        FraudAuditAction.ACCOUNT_SUSPENDED.value,
        account_id=account.id,
        details={"reason": reason, **(details or {})},
        admin_id=admin_id,
    )
    PaymentNotificationService.account_suspended(session, account.id, reason)
    logger.warning(f"⛔ ACCOUNT_SUSPENDED: {account.id} reason={reason}")
    return True


def unsuspend_in_session(
    session: Session,
    account: Account,
    now: datetime,
    admin_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> bool:
    if account.status != AccountStatus.SUSPENDED.value:
        return False
    previous_reason = account.suspension_reason
    update_account_ledger(
        session, account,
        status=AccountStatus.ACTIVE.value, suspension_reason=None, suspended_at=None,
    )
    FraudAuditLogger.record(
        session,
        FraudAuditAction.ACCOUNT_UNSUSPENDED.value,
        account_id=account.id,
        details={"previous_reason": previous_reason, **(details or {})},
        admin_id=admin_id,
    )
    PaymentNotificationService.account_restored(session, account.id)
    logger.info(f"✅ ACCOUNT_RESTORED: {account.id} at {to_iso(now)}")
    return True


def release_fee_in_session(session: Session, account: Account, contract: FeeContract, now: datetime) -> None:
    """Remove a contract's fee from the payer's running total, restoring fee-suspended accounts"""
    remaining_ids = [cid for cid in (account.unpaid_contract_ids or []) if cid != contract.id]
    remaining_total = max(ZERO, Decimal(account.outstanding_fee_total or ZERO) - Decimal(contract.platform_fee))
    if not remaining_ids:
        remaining_total = ZERO

    update_account_ledger(
        session, account,
        outstanding_fee_total=remaining_total, unpaid_contract_ids=remaining_ids,
    )

    if (not remaining_ids
            and account.status == AccountStatus.SUSPENDED.value
            and account.suspension_reason == Config.UNPAID_FEES_SUSPENSION_REASON):
        unsuspend_in_session(session, account, now, details={"contract_id": contract.id})


def settle_contract_fee(session: Session, contract_id: str, order_id: str, now: datetime) -> bool:
    """
    Mark a contract's fee paid by an approved fee-settlement order.

    Runs inside the caller's transaction. Returns False when the fee was already
    settled so a redelivered approval has no further effect.
    """
    contract = session.get(FeeContract, contract_id)
    if contract is None:
        raise NotFoundError(f"Contract {contract_id} not found")
    if contract.platform_fee_status not in PlatformFeeStatus.outstanding_values():
        logger.info(f"ℹ️ FEE_SETTLEMENT: contract {contract_id} already {contract.platform_fee_status}")
        return False

    contract.platform_fee_status = PlatformFeeStatus.PAID.value
    contract.fee_paid_at = now
    contract.fee_order_id = order_id
    session.flush()

    account = load_account(session, contract.payer_id)
    release_fee_in_session(session, account, contract, now)
    logger.info(f"💰 FEE_PAID: contract {contract_id} fee {contract.platform_fee} by order {order_id}")
    return True


class OutstandingFeeLedger:
    """Fee exposure caps, settlement, cancellation, suspension and reconciliation"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        settings_service: Optional[PlatformSettingsService] = None,
    ):
        self.session_factory = session_factory
        self.settings_service = settings_service or PlatformSettingsService(session_factory)

    # ------------------------------------------------------------------
    # Fee lifecycle
    # ------------------------------------------------------------------

    def apply_contract_fee(
        self,
        account_id: str,
        contract_id: str,
        contract_price: Decimal,
        bid_id: Optional[str] = None,
        platform_fee: Optional[Decimal] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Bill the platform fee of a newly signed contract to its payer.

        Raises FeeCapExceededError when the projected outstanding total would exceed the
        payer's cap; nothing is written in that case. Re-applying an already billed
        contract returns the current ledger state.
        """
        price = _parse_amount(contract_price, "contract_price")
        if price <= 0:
            raise InvalidArgumentError("contract_price must be a positive amount")
        fee = (
            _parse_amount(platform_fee, "platform_fee") if platform_fee is not None
            else self.settings_service.compute_platform_fee(price)
        )
        if fee < 0:
            raise InvalidArgumentError("platform_fee must not be negative")

        def work(session: Session) -> Dict[str, Any]:
            current = now or get_naive_utc_now()
            account = get_or_create_account(session, account_id)

            contract = session.get(FeeContract, contract_id)
            if contract is not None:
                if contract.payer_id != account_id:
                    raise PermissionDeniedError("Contract belongs to another payer")
                if contract.billing_started_at is not None:
                    return self._ledger_state(account, contract, cap=fee_cap_for(account, current))

            if account.status == AccountStatus.SUSPENDED.value:
                raise AccountSuspendedError(
                    "Account is suspended; settle outstanding fees first",
                    details={"reason": account.suspension_reason},
                )
            if account.status != AccountStatus.ACTIVE.value:
                raise FailedPreconditionError("Account is not active")

            cap = fee_cap_for(account, current)
            outstanding = Decimal(account.outstanding_fee_total or ZERO)
            projected = outstanding + fee
            if projected > cap:
                raise FeeCapExceededError(
                    f"Outstanding platform fees would reach ₱{projected:,.2f}, above the ₱{cap:,.2f} limit",
                    details={"outstanding": str(outstanding), "fee": str(fee), "cap": str(cap)},
                )

            if contract is None:
                contract = FeeContract(
                    id=contract_id,
                    bid_id=bid_id,
                    payer_id=account_id,
                    contract_price=price,
                    platform_fee=fee,
                )
                session.add(contract)
            contract.status = ContractStatus.SIGNED.value
            contract.platform_fee_status = PlatformFeeStatus.UNPAID.value if fee > 0 else PlatformFeeStatus.PAID.value
            contract.billing_started_at = current
            contract.fee_due_at = current + timedelta(days=Config.FEE_PAYMENT_GRACE_DAYS)
            session.flush()

            if fee > 0:
                update_account_ledger(
                    session, account,
                    outstanding_fee_total=projected,
                    unpaid_contract_ids=list(account.unpaid_contract_ids or []) + [contract_id],
                )
            logger.info(f"🧾 FEE_APPLIED: contract {contract_id} fee {fee} to {account_id} (outstanding {projected}/{cap})")
            return self._ledger_state(account, contract, cap=cap)

        return run_in_transaction(work, self.session_factory, operation="apply_contract_fee")

    @staticmethod
    def _ledger_state(account: Account, contract: FeeContract, cap: Decimal) -> Dict[str, Any]:
        return {
            "contract_id": contract.id,
            "platform_fee": str(contract.platform_fee),
            "platform_fee_status": contract.platform_fee_status,
            "fee_due_at": to_iso(contract.fee_due_at),
            "outstanding_fee_total": str(account.outstanding_fee_total),
            "fee_cap": str(cap),
        }

    def cancel_contract(
        self,
        contract_id: str,
        actor_id: str,
        is_admin: bool = False,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Cancel a contract, waiving an unpaid fee and releasing the payer's exposure"""

        def work(session: Session) -> Dict[str, Any]:
            current = now or get_naive_utc_now()
            contract = session.get(FeeContract, contract_id)
            if contract is None:
                raise NotFoundError(f"Contract {contract_id} not found")
            if not is_admin and contract.payer_id != actor_id:
                raise PermissionDeniedError("Only the fee payer can cancel this contract")
            if contract.status == ContractStatus.CANCELLED.value:
                return {"contract_id": contract.id, "status": contract.status,
                        "platform_fee_status": contract.platform_fee_status}

            waived = contract.platform_fee_status in PlatformFeeStatus.outstanding_values()
            contract.status = ContractStatus.CANCELLED.value
            contract.cancelled_at = current
            if waived:
                contract.platform_fee_status = PlatformFeeStatus.WAIVED.value
            session.flush()

            # Any open fee order for this contract can no longer be paid
            session.execute(
                update(PaymentOrder)
                .where(
                    PaymentOrder.contract_id == contract.id,
                    PaymentOrder.kind == OrderKind.FEE_SETTLEMENT.value,
                    PaymentOrder.status == OrderStatus.AWAITING_UPLOAD.value,
                )
                .values(status=OrderStatus.EXPIRED.value, version=PaymentOrder.version + 1)
                .execution_options(synchronize_session=False)
            )

            if waived:
                account = load_account(session, contract.payer_id)
                release_fee_in_session(session, account, contract, current)
            logger.info(f"🚫 CONTRACT_CANCELLED: {contract_id} by {actor_id} (fee waived: {waived})")
            return {"contract_id": contract.id, "status": contract.status,
                    "platform_fee_status": contract.platform_fee_status}

        return run_in_transaction(work, self.session_factory, operation="cancel_contract")

    def waive_contract_fee(self, contract_id: str, admin_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        return self.cancel_contract(contract_id, admin_id, is_admin=True, now=now)

    # ------------------------------------------------------------------
    # Suspension
    # ------------------------------------------------------------------

    def suspend_account(self, account_id: str, reason: str, admin_id: Optional[str] = None) -> bool:
        def work(session: Session) -> bool:
            account = load_account(session, account_id)
            return suspend_in_session(session, account, reason, get_naive_utc_now(), admin_id=admin_id)

        return run_in_transaction(work, self.session_factory, operation="suspend_account")

    def unsuspend_account(self, account_id: str, admin_id: Optional[str] = None) -> bool:
        def work(session: Session) -> bool:
            account = load_account(session, account_id)
            return unsuspend_in_session(session, account, get_naive_utc_now(), admin_id=admin_id)

        return run_in_transaction(work, self.session_factory, operation="unsuspend_account")

    # ------------------------------------------------------------------
    # Deadline enforcement
    # ------------------------------------------------------------------

    def contracts_due_for_enforcement(self, limit: int = 500) -> List[str]:
        def work(session: Session) -> List[str]:
            return list(session.scalars(
                select(FeeContract.id)
                .where(
                    FeeContract.platform_fee_status.in_(PlatformFeeStatus.outstanding_values()),
                    FeeContract.status != ContractStatus.CANCELLED.value,
                    FeeContract.billing_started_at.is_not(None),
                )
                .order_by(FeeContract.billing_started_at)
                .limit(limit)
            ))

        return run_in_transaction(work, self.session_factory, operation="list_fee_contracts")

    def enforce_contract_deadline(self, contract_id: str, now: Optional[datetime] = None) -> Optional[str]:
        """
        Advance one contract's reminder / overdue state.

        Returns the action taken: ``"first_reminder"``, ``"final_reminder"``,
        ``"overdue"`` or None.
        """

        def work(session: Session) -> Optional[str]:
            current = now or get_naive_utc_now()
            contract = session.get(FeeContract, contract_id)
            if (contract is None
                    or contract.status == ContractStatus.CANCELLED.value
                    or contract.billing_started_at is None):
                return None

            if contract.platform_fee_status == PlatformFeeStatus.UNPAID.value and contract.fee_due_at and current >= contract.fee_due_at:
                contract.platform_fee_status = PlatformFeeStatus.OVERDUE.value
                session.flush()
                account = load_account(session, contract.payer_id)
                suspend_in_session(
                    session, account, Config.UNPAID_FEES_SUSPENSION_REASON, current,
                    details={"contract_id": contract.id, "fee": str(contract.platform_fee)},
                )
                logger.warning(f"⏰ FEE_OVERDUE: contract {contract.id} payer {contract.payer_id}")
                return "overdue"

            if contract.platform_fee_status != PlatformFeeStatus.UNPAID.value:
                return None

            age = current - contract.billing_started_at
            if age >= timedelta(days=2) and contract.reminder_stage != FeeReminderStage.FINAL.value:
                stage = FeeReminderStage.FINAL.value
            elif age >= timedelta(days=1) and contract.reminder_stage == FeeReminderStage.NONE.value:
                stage = FeeReminderStage.FIRST.value
            else:
                return None

            contract.reminder_stage = stage
            contract.last_reminder_at = current
            PaymentNotificationService.fee_reminder(session, contract.payer_id, contract.id, contract.platform_fee, stage)
            logger.info(f"📨 FEE_REMINDER: {stage} for contract {contract.id}")
            return f"{stage}_reminder"

        return run_in_transaction(work, self.session_factory, operation="enforce_fee_deadline")

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile_account(self, account_id: str, now: Optional[datetime] = None) -> AccountReconciliation:
        """Recompute an account's outstanding total from its contracts"""

        def work(session: Session) -> AccountReconciliation:
            current = now or get_naive_utc_now()
            account = load_account(session, account_id)

            rows = session.execute(
                select(FeeContract.id, FeeContract.platform_fee)
                .where(
                    FeeContract.payer_id == account_id,
                    FeeContract.platform_fee_status.in_(PlatformFeeStatus.outstanding_values()),
                    FeeContract.status.in_(FEE_BEARING_CONTRACT_STATES),
                    FeeContract.billing_started_at.is_not(None),
                )
                .order_by(FeeContract.id)
            ).all()
            total = sum((Decimal(fee) for _, fee in rows), ZERO)
            contract_ids = [contract_id for contract_id, _ in rows]

            previous_total = Decimal(account.outstanding_fee_total or ZERO)
            corrected = (previous_total != total
                         or sorted(account.unpaid_contract_ids or []) != contract_ids)

            update_account_ledger(
                session, account,
                outstanding_fee_total=total,
                unpaid_contract_ids=contract_ids,
                ledger_reconciled_at=current,
            )

            if corrected:
                FraudAuditLogger.record(
                    session,
                    FraudAuditAction.LEDGER_CORRECTED.value,
                    account_id=account_id,
                    details={
                        "previous_total": str(previous_total),
                        "corrected_total": str(total),
                        "unpaid_contract_ids": contract_ids,
                    },
                )
                logger.warning(f"🔧 LEDGER_CORRECTED: {account_id} {previous_total} -> {total}")

            unsuspended = False
            if (not contract_ids
                    and account.status == AccountStatus.SUSPENDED.value
                    and account.suspension_reason == Config.UNPAID_FEES_SUSPENSION_REASON):
                unsuspended = unsuspend_in_session(session, account, current, details={"source": "reconciliation"})

            return AccountReconciliation(
                account_id=account_id,
                previous_total=previous_total,
                total=total,
                unpaid_contract_ids=contract_ids,
                corrected=corrected,
                unsuspended=unsuspended,
            )

        return run_in_transaction(work, self.session_factory, operation="reconcile_account")

    def reconcile_accounts(self, batch_size: Optional[int] = None, now: Optional[datetime] = None) -> ReconciliationReport:
        """Reconcile the least recently reconciled accounts, one transaction each"""
        limit = batch_size or Config.FEE_RECONCILIATION_BATCH_SIZE

        def select_batch(session: Session) -> List[str]:
            return list(session.scalars(
                select(Account.id)
                .order_by(Account.ledger_reconciled_at.is_(None).desc(), Account.ledger_reconciled_at, Account.id)
                .limit(limit)
            ))

        account_ids = run_in_transaction(select_batch, self.session_factory, operation="reconciliation_batch")
        report = ReconciliationReport()
        for account_id in account_ids:
            try:
                result = self.reconcile_account(account_id, now=now)
            except Exception as e:
                report.errors += 1
                logger.error(f"❌ Reconciliation failed for {account_id}: {e}", exc_info=True)
                continue
            report.processed += 1
            report.corrected += int(result.corrected)
            report.unsuspended += int(result.unsuspended)

        logger.info(
            f"📊 FEE_RECONCILIATION: processed={report.processed} corrected={report.corrected} "
            f"unsuspended={report.unsuspended} errors={report.errors}"
        )
        return report

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def list_outstanding_fees(self, now: Optional[datetime] = None, limit: int = 200) -> Dict[str, Any]:
        def work(session: Session) -> Dict[str, Any]:
            current = now or get_naive_utc_now()
            contracts = session.scalars(
                select(FeeContract)
                .where(
                    FeeContract.platform_fee_status.in_(PlatformFeeStatus.outstanding_values()),
                    FeeContract.status != ContractStatus.CANCELLED.value,
                )
                .order_by(FeeContract.fee_due_at)
                .limit(limit)
            ).all()
            suspended = session.scalars(
                select(Account)
                .where(Account.status == AccountStatus.SUSPENDED.value)
                .order_by(Account.suspended_at.desc())
                .limit(limit)
            ).all()

            items = []
            total = ZERO
            for contract in contracts:
                total += Decimal(contract.platform_fee)
                days_overdue = 0
                if contract.fee_due_at and current > contract.fee_due_at:
                    days_overdue = (current - contract.fee_due_at).days
                items.append({
                    "contract_id": contract.id,
                    "bid_id": contract.bid_id,
                    "payer_id": contract.payer_id,
                    "platform_fee": str(contract.platform_fee),
                    "platform_fee_status": contract.platform_fee_status,
                    "fee_due_at": to_iso(contract.fee_due_at),
                    "days_overdue": days_overdue,
                    "reminder_stage": contract.reminder_stage,
                })

            return {
                "contracts": items,
                "total_outstanding": str(total),
                "suspended_accounts": [
                    {
                        "account_id": account.id,
                        "suspension_reason": account.suspension_reason,
                        "suspended_at": to_iso(account.suspended_at),
                        "outstanding_fee_total": str(account.outstanding_fee_total),
                    }
                    for account in suspended
                ],
            }

        return run_in_transaction(work, self.session_factory, operation="list_outstanding_fees")
