"""
Submission Pipeline
Evaluates one receipt submission end to end: fetch, text recognition, field extraction,
validation, image forensics, duplicate checks, scoring and disposition.

The terminal transition is a version-checked write of the submission row, and every
side effect of the disposition (order status, balance credit or fee settlement,
notifications, audit entry) is written in that same transaction. A redelivered
submission that is no longer ``processing`` is skipped, so side effects apply once.

Faults never escape: any exception or timeout parks the submission in
``manual_review`` with the error recorded. Database stages run in worker threads so
other submissions keep moving while one waits on a lock.
"""

import asyncio
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import (
    Account, OcrStatus, OrderKind, OrderStatus, PaymentOrder, PaymentSubmission,
    SubmissionStatus, WalletTransaction, WalletTransactionType, FraudAuditAction,
)
from services.duplicate_ledger import DuplicateCheck, DuplicateLedger
from services.fraud_audit_logger import AUTOMATIC_ACTIONS, FraudAuditLogger
from services.fraud_scoring import (
    AccountContext, FraudFlag, FraudScoringEngine, ScoreResult, determine_final_status,
)
from services.image_forensics import ForensicsResult, analyze_image
from services.notification_service import PaymentNotificationService
from services.outstanding_fee_ledger import settle_contract_fee, update_account_ledger
from services.platform_settings import PlatformSettingsService
from services.receipt_patterns import ExtractionResult, extract_receipt_fields
from services.receipt_validation import ValidationResult, validate_receipt
from services.screenshot_fetcher import ScreenshotFetcher
from services.text_recognition_service import TextRecognitionService
from utils.atomic_transactions import run_in_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.storage_url import check_screenshot_url

logger = logging.getLogger(__name__)

TERMINAL_ORDER_STATUS = {
    SubmissionStatus.APPROVED.value: OrderStatus.APPROVED.value,
    SubmissionStatus.REJECTED.value: OrderStatus.REJECTED.value,
    SubmissionStatus.MANUAL_REVIEW.value: OrderStatus.MANUAL_REVIEW.value,
}


class PipelineFault(Exception):
    """Unrecoverable inconsistency found while evaluating a submission"""
    pass


@dataclass
class PipelineOutcome:
    submission_id: str
    status: Optional[str] = None
    fraud_score: Optional[int] = None
    flags: List[str] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class _WorkItem:
    submission_id: str
    account_id: str
    screenshot_url: str
    order_id: str
    order_kind: str
    order_amount: Decimal
    order_status: str
    order_created_at: datetime
    order_expires_at: datetime
    expected_receiver: Optional[str]


def apply_disposition(
    session: Session,
    submission: PaymentSubmission,
    order: PaymentOrder,
    status: str,
    reasons: List[str],
    now: datetime,
) -> None:
    """
    Order status and money movement for a submission's disposition.

    Called inside the transaction that moves the submission to ``status``.
    """
    order.status = TERMINAL_ORDER_STATUS[status]

    if status == SubmissionStatus.APPROVED.value:
        order.verified_at = now
        order.rejection_reason = None
        if order.kind == OrderKind.FEE_SETTLEMENT.value:
            if not order.contract_id:
                raise PipelineFault(f"Fee order {order.id} has no contract")
            settle_contract_fee(session, order.contract_id, order.id, now)
        else:
            account = session.get(Account, order.account_id)
            if account is None:
                raise PipelineFault(f"Account {order.account_id} not found")
            update_account_ledger(session, account, balance=Decimal(account.balance or 0) + Decimal(order.amount))
            session.add(WalletTransaction(
                account_id=order.account_id,
                transaction_type=WalletTransactionType.TOP_UP.value,
                amount=order.amount,
                order_id=order.id,
                submission_id=submission.id,
                description=f"Top-up via order {order.id}",
            ))
            logger.info(f"💰 BALANCE_CREDITED: {order.account_id} +₱{order.amount} (order {order.id})")

    elif status == SubmissionStatus.REJECTED.value:
        order.rejection_reason = "; ".join(reasons) or "Payment could not be verified"

    else:
        PaymentNotificationService.review_required(
            session, submission.id, order.id, submission.account_id, submission.fraud_score, submission.flags or [],
        )

    PaymentNotificationService.payment_disposition(
        session, submission.account_id, submission.id, order.id, status, Decimal(order.amount), reasons,
    )
    session.flush()


class SubmissionPipeline:
    """Runs the evaluation state machine for one submission at a time"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        settings_service: Optional[PlatformSettingsService] = None,
        fetcher: Optional[ScreenshotFetcher] = None,
        recognizer: Optional[TextRecognitionService] = None,
        duplicate_ledger: Optional[DuplicateLedger] = None,
        scoring_engine: Optional[FraudScoringEngine] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.settings_service = settings_service or PlatformSettingsService(session_factory)
        self.fetcher = fetcher or ScreenshotFetcher()
        self.recognizer = recognizer or TextRecognitionService()
        self.duplicate_ledger = duplicate_ledger or DuplicateLedger(session_factory)
        self.scoring_engine = scoring_engine or FraudScoringEngine()
        self.timeout_seconds = timeout_seconds or Config.PIPELINE_TIMEOUT_SECONDS

    async def process(self, submission_id: str) -> PipelineOutcome:
        """Evaluate a submission; never raises"""
        try:
            return await asyncio.wait_for(self._evaluate(submission_id), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(f"⏱️ PIPELINE_TIMEOUT: {submission_id} exceeded {self.timeout_seconds}s")
            return await asyncio.to_thread(
                self._record_fault, submission_id, f"Processing timed out after {self.timeout_seconds} seconds",
            )
        except Exception as e:
            logger.error(f"❌ PIPELINE_FAULT: {submission_id}: {e}", exc_info=True)
            return await asyncio.to_thread(self._record_fault, submission_id, f"{type(e).__name__}: {e}")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _evaluate(self, submission_id: str) -> PipelineOutcome:
        item = await asyncio.to_thread(
            run_in_transaction,
            lambda session: self._claim(session, submission_id),
            self.session_factory,
            operation="pipeline_claim",
        )
        if item is None:
            return PipelineOutcome(submission_id=submission_id, skipped=True)

        now = get_naive_utc_now()
        url_check = check_screenshot_url(item.screenshot_url, item.account_id)
        if not url_check.valid:
            logger.warning(f"🚫 UNTRUSTED_SCREENSHOT: {submission_id} {url_check.reason}")
            return await asyncio.to_thread(
                self._finalize,
                item,
                status=SubmissionStatus.REJECTED.value,
                flags=[FraudFlag.UNTRUSTED_SCREENSHOT_URL.value],
                reasons=[f"Screenshot URL is not trusted: {url_check.reason}"],
            )

        if item.order_status == OrderStatus.EXPIRED.value or item.order_expires_at <= now:
            return await asyncio.to_thread(
                self._finalize,
                item,
                status=SubmissionStatus.REJECTED.value,
                flags=[FraudFlag.ORDER_EXPIRED.value],
                reasons=["Order has expired"],
            )

        settings = await asyncio.to_thread(self.settings_service.get_settings)

        image_bytes = await self.fetcher.fetch(item.screenshot_url, item.account_id)
        recognition = await self.recognizer.recognize(image_bytes)
        await asyncio.to_thread(
            self._save_progress,
            submission_id,
            recognized_text=recognition.text,
            ocr_status=OcrStatus.COMPLETED.value,
            ocr_completed_at=get_naive_utc_now(),
        )

        extraction = extract_receipt_fields(recognition.text)
        validation = validate_receipt(
            extraction,
            order_amount=item.order_amount,
            order_created_at=item.order_created_at,
            expected_receiver=item.expected_receiver or settings.receiving_account_name or None,
            now=get_naive_utc_now(),
            vision_confidence=recognition.confidence,
        )
        forensics = await asyncio.to_thread(analyze_image, image_bytes)

        duplicate_reference = DuplicateCheck()
        if extraction.reference_number:
            duplicate_reference = await asyncio.to_thread(
                self.duplicate_ledger.check_and_record_reference,
                extraction.reference_number, submission_id, item.account_id, extraction.amount,
            )
        duplicate_image = await asyncio.to_thread(
            self.duplicate_ledger.check_and_record_image_hash,
            forensics.image_hash, submission_id, item.account_id,
        )
        similar_image = None
        if not duplicate_image.is_duplicate:
            similar_image = await asyncio.to_thread(
                self.duplicate_ledger.find_similar_image, forensics.image_hash, submission_id,
            )

        account = await asyncio.to_thread(
            run_in_transaction,
            lambda session: self._account_context(session, item.account_id),
            self.session_factory,
            operation="pipeline_account_context",
        )

        result = self.scoring_engine.score(
            order_amount=item.order_amount,
            extraction=extraction,
            validation=validation,
            forensics=forensics,
            duplicate_reference=duplicate_reference,
            duplicate_image=duplicate_image,
            similar_image=similar_image,
            account=account,
        )
        decision = determine_final_status(result, item.order_amount, settings.auto_approve_low_risk)
        status = decision["status"]
        flags = result.flags + decision["extra_flags"]
        reasons = [rule.description for rule in result.rules] or list(validation.errors)

        return await asyncio.to_thread(
            self._finalize,
            item,
            status=status,
            flags=flags,
            reasons=reasons,
            result=result,
            extraction=extraction,
            validation=validation,
            forensics=forensics,
        )

    def _claim(self, session: Session, submission_id: str) -> Optional[_WorkItem]:
        submission = session.get(PaymentSubmission, submission_id)
        if submission is None:
            logger.warning(f"⚠️ PIPELINE: submission {submission_id} not found")
            return None
        if submission.status != SubmissionStatus.PROCESSING.value:
            logger.info(f"ℹ️ PIPELINE: {submission_id} already {submission.status}, skipping")
            return None

        order = session.get(PaymentOrder, submission.order_id)
        if order is None:
            raise PipelineFault(f"Order {submission.order_id} not found")
        if order.status == OrderStatus.SUBMITTED.value:
            order.status = OrderStatus.PROCESSING.value
            session.flush()

        return _WorkItem(
            submission_id=submission.id,
            account_id=submission.account_id,
            screenshot_url=submission.screenshot_url,
            order_id=order.id,
            order_kind=order.kind,
            order_amount=Decimal(order.amount),
            order_status=order.status,
            order_created_at=order.created_at,
            order_expires_at=order.expires_at,
            expected_receiver=order.receiving_account_name,
        )

    @staticmethod
    def _account_context(session: Session, account_id: str) -> AccountContext:
        now = get_naive_utc_now()
        account = session.get(Account, account_id)
        created_at = account.created_at if account is not None and account.created_at else now
        age_days = max(0.0, (now - created_at).total_seconds() / 86400)

        def count_since(since: datetime) -> int:
            return session.scalar(
                select(func.count(PaymentSubmission.id)).where(
                    PaymentSubmission.account_id == account_id,
                    PaymentSubmission.created_at >= since,
                )
            ) or 0

        return AccountContext(
            account_age_days=age_days,
            submissions_last_24h=count_since(now - timedelta(hours=24)),
            submissions_last_hour=count_since(now - timedelta(hours=1)),
        )

    def _save_progress(self, submission_id: str, **fields: Any) -> None:
        def work(session: Session) -> None:
            submission = session.get(PaymentSubmission, submission_id)
            if submission is None or submission.status != SubmissionStatus.PROCESSING.value:
                return
            for name, value in fields.items():
                setattr(submission, name, value)
            session.flush()

        run_in_transaction(work, self.session_factory, operation="pipeline_progress")

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _finalize(
        self,
        item: _WorkItem,
        status: str,
        flags: List[str],
        reasons: List[str],
        result: Optional[ScoreResult] = None,
        extraction: Optional[ExtractionResult] = None,
        validation: Optional[ValidationResult] = None,
        forensics: Optional[ForensicsResult] = None,
    ) -> PipelineOutcome:
        def work(session: Session) -> PipelineOutcome:
            now = get_naive_utc_now()
            submission = session.get(PaymentSubmission, item.submission_id)
            if submission is None or submission.status != SubmissionStatus.PROCESSING.value:
                return PipelineOutcome(submission_id=item.submission_id, skipped=True)
            order = session.get(PaymentOrder, submission.order_id)
            if order is None:
                raise PipelineFault(f"Order {submission.order_id} not found")

            if extraction is not None:
                submission.extraction = extraction.to_dict()
                submission.reference_number = extraction.reference_number
            if validation is not None:
                submission.validation = validation.to_dict()
                submission.ocr_confidence = validation.ocr_confidence
            if forensics is not None:
                submission.forensics = forensics.to_dict()
                submission.image_hash = forensics.image_hash
            if result is not None:
                submission.fraud_score = result.score
                submission.recommended_action = result.recommended_action
                submission.scored_at = now

            submission.flags = list(flags)
            submission.status = status
            if status != SubmissionStatus.MANUAL_REVIEW.value:
                submission.resolved_by = "system"
                submission.resolved_at = now
            # Compare-and-swap on the submission version
            session.flush()

            apply_disposition(session, submission, order, status, reasons, now)
            FraudAuditLogger.record(
                session,
                AUTOMATIC_ACTIONS[status],
                submission_id=submission.id,
                account_id=submission.account_id,
                fraud_score=submission.fraud_score,
                flags=submission.flags,
                details={
                    "order_id": order.id,
                    "order_kind": order.kind,
                    "amount": str(order.amount),
                    "recommended_action": submission.recommended_action,
                    "reasons": reasons,
                    "rules": [asdict(rule) for rule in result.rules] if result is not None else [],
                },
            )
            return PipelineOutcome(
                submission_id=submission.id,
                status=status,
                fraud_score=submission.fraud_score,
                flags=list(flags),
                reasons=list(reasons),
            )

        outcome = run_in_transaction(work, self.session_factory, operation="pipeline_finalize")
        if not outcome.skipped:
            logger.info(
                f"✅ PIPELINE_DONE: {item.submission_id} -> {outcome.status} "
                f"score={outcome.fraud_score} flags={outcome.flags}"
            )
        return outcome

    def _record_fault(self, submission_id: str, error: str) -> PipelineOutcome:
        """Park a failed submission in manual review with the error recorded"""

        def work(session: Session) -> PipelineOutcome:
            now = get_naive_utc_now()
            submission = session.get(PaymentSubmission, submission_id)
            if submission is None or submission.status != SubmissionStatus.PROCESSING.value:
                return PipelineOutcome(submission_id=submission_id, skipped=True)

            submission.status = SubmissionStatus.MANUAL_REVIEW.value
            submission.ocr_status = OcrStatus.FAILED.value
            submission.flags = list(submission.flags or []) + [FraudFlag.PROCESSING_ERROR.value]
            submission.errors = list(submission.errors or []) + [{"at": now.isoformat() + "Z", "error": error}]
            session.flush()

            order = session.get(PaymentOrder, submission.order_id)
            if order is not None:
                order.status = OrderStatus.MANUAL_REVIEW.value
                PaymentNotificationService.payment_disposition(
                    session, submission.account_id, submission.id, order.id,
                    SubmissionStatus.MANUAL_REVIEW.value, Decimal(order.amount),
                )
            PaymentNotificationService.review_required(
                session, submission.id, submission.order_id, submission.account_id,
                submission.fraud_score, submission.flags,
            )
            FraudAuditLogger.record(
                session,
                FraudAuditAction.PROCESSING_ERROR.value,
                submission_id=submission.id,
                account_id=submission.account_id,
                fraud_score=submission.fraud_score,
                flags=submission.flags,
                details={"error": error},
            )
            return PipelineOutcome(
                submission_id=submission.id,
                status=SubmissionStatus.MANUAL_REVIEW.value,
                fraud_score=submission.fraud_score,
                flags=list(submission.flags),
                reasons=[error],
            )

        try:
            return run_in_transaction(work, self.session_factory, operation="pipeline_fault")
        except Exception as e:
            # Left in processing; the periodic recovery sweep redelivers it
            logger.critical(f"🚨 PIPELINE: could not record fault for {submission_id}: {e}", exc_info=True)
            return PipelineOutcome(submission_id=submission_id, reasons=[error, str(e)])
