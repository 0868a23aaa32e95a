"""
Payment Verification Platform - Database Schema
===============================================

Schema for the payment-proof verification pipeline:
- Payment orders (balance top-ups and platform fee settlements) with idempotency locks
- Screenshot submissions and their evaluation artifacts
- First-writer-wins duplicate ledgers for reference numbers and image hashes
- Accounts carrying the outstanding platform fee ledger and suspension state
- Fee-bearing marketplace contracts (source of truth for reconciliation)
- Append-only fraud audit trail, wallet transactions and notification outbox
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, func, JSON
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

from utils.datetime_helpers import get_naive_utc_now
from utils.optimistic_locking import VersionMixin


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class AccountStatus(Enum):
    """Account standing"""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class OrderKind(Enum):
    """What a payment order pays for"""
    TOP_UP = "top_up"
    FEE_SETTLEMENT = "fee_settlement"


class OrderStatus(Enum):
    """Payment order lifecycle states"""
    AWAITING_UPLOAD = "awaiting_upload"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    APPROVED = "approved"
    REJECTED = "rejected"
    MANUAL_REVIEW = "manual_review"
    EXPIRED = "expired"

    @classmethod
    def active_values(cls) -> List[str]:
        """Statuses an order can still be paid from"""
        return [cls.AWAITING_UPLOAD.value, cls.SUBMITTED.value, cls.PROCESSING.value]


class SubmissionStatus(Enum):
    """Screenshot submission dispositions"""
    PROCESSING = "processing"
    APPROVED = "approved"
    REJECTED = "rejected"
    MANUAL_REVIEW = "manual_review"


class OcrStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PlatformFeeStatus(Enum):
    """Platform fee settlement state on a contract"""
    UNPAID = "unpaid"
    PAID = "paid"
    WAIVED = "waived"
    OVERDUE = "overdue"

    @classmethod
    def outstanding_values(cls) -> List[str]:
        """Fee states that count toward an account's outstanding total"""
        return [cls.UNPAID.value, cls.OVERDUE.value]


class ContractStatus(Enum):
    """Marketplace contract states relevant to fee billing"""
    ACTIVE = "active"
    SIGNED = "signed"
    PAID = "paid"
    CANCELLED = "cancelled"


class FeeReminderStage(Enum):
    NONE = "none"
    FIRST = "first"
    FINAL = "final"


class FraudAuditAction(Enum):
    """Disposition recorded in the fraud audit trail"""
    AUTO_APPROVED = "auto_approved"
    AUTO_REJECTED = "auto_rejected"
    FLAGGED_FOR_REVIEW = "flagged_for_review"
    ADMIN_APPROVED = "admin_approved"
    ADMIN_REJECTED = "admin_rejected"
    PROCESSING_ERROR = "processing_error"
    ACCOUNT_SUSPENDED = "account_suspended"
    ACCOUNT_UNSUSPENDED = "account_unsuspended"
    LEDGER_CORRECTED = "ledger_corrected"


class WalletTransactionType(Enum):
    TOP_UP = "top_up"


# ============================================================================
# CORE ENTITIES
# ============================================================================

class Account(VersionMixin, Base):
    """Platform account with balance and outstanding platform fee ledger"""
    __tablename__ = 'accounts'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=AccountStatus.ACTIVE.value, nullable=False)
    suspension_reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    suspended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    # Custodial balance credited by approved top-ups
    balance: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0"), nullable=False)

    # Outstanding platform fee ledger
    outstanding_fee_total: Mapped[Decimal] = mapped_column(Numeric(20, 2), default=Decimal("0"), nullable=False)
    unpaid_contract_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    ledger_reconciled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_account_balance_positive'),
        CheckConstraint('outstanding_fee_total >= 0', name='ck_account_outstanding_positive'),
        Index('ix_accounts_status', 'status'),
    )

    def __repr__(self):
        return f"<Account(id={self.id}, status={self.status}, outstanding={self.outstanding_fee_total})>"


class FeeContract(VersionMixin, Base):
    """Fee-bearing marketplace contract (source of truth for outstanding fees)"""
    __tablename__ = 'fee_contracts'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    bid_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    payer_id: Mapped[str] = mapped_column(String(64), ForeignKey('accounts.id'), nullable=False, index=True)

    contract_price: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    platform_fee_status: Mapped[str] = mapped_column(
        String(20), default=PlatformFeeStatus.UNPAID.value, nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), default=ContractStatus.ACTIVE.value, nullable=False)

    # Billing lifecycle
    billing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    fee_due_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    fee_paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    fee_order_id: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    reminder_stage: Mapped[str] = mapped_column(String(10), default=FeeReminderStage.NONE.value, nullable=False)
    last_reminder_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, server_default=func.now(), nullable=False)

    payer: Mapped["Account"] = relationship("Account")

    __table_args__ = (
        CheckConstraint('platform_fee >= 0', name='ck_contract_fee_positive'),
        Index('ix_fee_contracts_payer_fee_status', 'payer_id', 'platform_fee_status'),
    )


class PaymentOrder(VersionMixin, Base):
    """Payment intent a user fulfils by uploading a transfer receipt"""
    __tablename__ = 'payment_orders'

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), ForeignKey('accounts.id'), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)

    # Fee settlement linkage
    contract_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey('fee_contracts.id'), nullable=True, index=True)
    bid_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Receiving account shown to the payer, snapshotted at creation
    receiving_account_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    receiving_account_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    receiving_account_display: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=OrderStatus.AWAITING_UPLOAD.value, nullable=False)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    submission_id: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_order_amount_positive'),
        Index('ix_payment_orders_account_created', 'account_id', 'created_at'),
        Index('ix_payment_orders_contract_account_status', 'contract_id', 'account_id', 'status'),
    )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_active(self, now: datetime) -> bool:
        return self.status in OrderStatus.active_values() and not self.is_expired(now)

    def __repr__(self):
        return f"<PaymentOrder(id={self.id}, kind={self.kind}, status={self.status})>"


class OrderIdempotencyLock(Base):
    """Maps a hashed (account, operation, client token) to the order it created"""
    __tablename__ = 'order_idempotency_locks'

    lock_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    operation: Mapped[str] = mapped_column(String(50), nullable=False)
    order_id: Mapped[str] = mapped_column(String(40), ForeignKey('payment_orders.id'), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, server_default=func.now(), nullable=False)


class PaymentSubmission(VersionMixin, Base):
    """One uploaded receipt screenshot and everything learned while evaluating it"""
    __tablename__ = 'payment_submissions'

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(40), ForeignKey('payment_orders.id'), nullable=False, index=True)
    account_id: Mapped[str] = mapped_column(String(64), ForeignKey('accounts.id'), nullable=False, index=True)
    screenshot_url: Mapped[str] = mapped_column(Text, nullable=False)

    # Stage artifacts
    ocr_status: Mapped[str] = mapped_column(String(20), default=OcrStatus.PENDING.value, nullable=False)
    recognized_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ocr_confidence: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    extraction: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    validation: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    forensics: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    image_hash: Mapped[Optional[str]] = mapped_column(String(16), nullable=True, index=True)
    reference_number: Mapped[Optional[str]] = mapped_column(String(40), nullable=True, index=True)

    # Scoring and disposition
    fraud_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    flags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    recommended_action: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=SubmissionStatus.PROCESSING.value, nullable=False)
    errors: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    # Resolution
    resolved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Stage timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    ocr_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    scored_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    order: Mapped["PaymentOrder"] = relationship("PaymentOrder")

    __table_args__ = (
        CheckConstraint('fraud_score IS NULL OR (fraud_score >= 0 AND fraud_score <= 100)',
                        name='ck_submission_score_range'),
        Index('ix_payment_submissions_account_created', 'account_id', 'created_at'),
        Index('ix_payment_submissions_status', 'status'),
    )

    def __repr__(self):
        return f"<PaymentSubmission(id={self.id}, status={self.status}, score={self.fraud_score})>"


# ============================================================================
# DUPLICATE LEDGERS (append-only, first writer wins)
# ============================================================================

class ReferenceNumberEntry(Base):
    """First submission seen carrying a given transfer reference number"""
    __tablename__ = 'reference_number_entries'

    reference_number: Mapped[str] = mapped_column(String(40), primary_key=True)
    submission_id: Mapped[str] = mapped_column(String(40), nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, server_default=func.now(), nullable=False)


class ImageHashEntry(Base):
    """First submission seen carrying a given perceptual image hash"""
    __tablename__ = 'image_hash_entries'

    image_hash: Mapped[str] = mapped_column(String(16), primary_key=True)
    submission_id: Mapped[str] = mapped_column(String(40), nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, server_default=func.now(), nullable=False)


# ============================================================================
# AUDIT, MONEY MOVEMENT AND OUTBOX
# ============================================================================

class FraudAuditLog(Base):
    """Immutable record of every disposition and ledger enforcement action"""
    __tablename__ = 'fraud_audit_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    submission_id = Column(String(40), nullable=True, index=True)
    account_id = Column(String(64), nullable=True, index=True)
    action = Column(String(30), nullable=False, index=True)
    fraud_score = Column(Integer, nullable=True)
    flags = Column(JSON, nullable=True)
    details = Column(JSON, nullable=True)
    actor = Column(String(64), nullable=False, default="system")
    admin_id = Column(String(64), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=False), default=get_naive_utc_now, server_default=func.now(), nullable=False)


class WalletTransaction(Base):
    """Balance movement caused by an approved payment order"""
    __tablename__ = 'wallet_transactions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(64), ForeignKey('accounts.id'), nullable=False, index=True)
    transaction_type = Column(String(20), nullable=False)
    amount = Column(Numeric(20, 2), nullable=False)
    order_id = Column(String(40), nullable=False)
    submission_id = Column(String(40), nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=False), default=get_naive_utc_now, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('order_id', name='uq_wallet_transaction_order'),
    )


class Notification(Base):
    """Notification outbox; delivery is handled by an external worker"""
    __tablename__ = 'notifications'

    id = Column(Integer, primary_key=True, autoincrement=True)
    recipient = Column(String(64), nullable=False, index=True)  # account id or "admins"
    kind = Column(String(50), nullable=False)
    title = Column(String(200), nullable=False)
    body = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    delivered = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=False), default=get_naive_utc_now, server_default=func.now(), nullable=False)


class SystemConfig(Base):
    """Platform settings documents, one JSON value per section"""
    __tablename__ = 'system_config'

    key = Column(String(100), primary_key=True)
    value = Column(JSON, nullable=False)
    description = Column(Text, nullable=True)
    updated_by = Column(String(64), nullable=True)
    updated_at = Column(DateTime(timezone=False), default=get_naive_utc_now, server_default=func.now(), onupdate=get_naive_utc_now, nullable=False)
