"""Admin review of held payment submissions"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from models import (
    Account, FraudAuditAction, OrderStatus, PaymentOrder, PaymentSubmission, SubmissionStatus,
)
from services.fraud_audit_logger import FraudAuditLogger, audit_entry_to_dict
from services.order_manager import order_to_dict, submission_to_dict
from services.submission_pipeline import apply_disposition
from utils.atomic_transactions import run_in_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.payment_errors import AdminActionError, AlreadyResolvedError, InvalidArgumentError

logger = logging.getLogger(__name__)

DEFAULT_REJECTION_REASON = "Rejected by admin"


class AdminPaymentService:
    """Approve or reject submissions held for manual review, plus review queue reporting"""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    @staticmethod
    def _require_admin(session: Session, admin_id: str, is_admin: bool) -> None:
        if is_admin:
            return
        account = session.get(Account, admin_id) if admin_id else None
        if account is None or not account.is_admin:
            raise AdminActionError("Admin access required", kind="permission-denied")

    def ensure_admin(self, admin_id: str, is_admin: bool = False) -> None:
        if is_admin:
            return
        run_in_transaction(
            lambda session: self._require_admin(session, admin_id, is_admin),
            self.session_factory,
            operation="admin_check",
        )

    @staticmethod
    def _load_for_resolution(session: Session, submission_id: str, allow_processing: bool) -> PaymentSubmission:
        submission = session.get(PaymentSubmission, submission_id)
        if submission is None:
            raise AdminActionError("Submission not found", kind="not-found")
        if submission.status in (SubmissionStatus.APPROVED.value, SubmissionStatus.REJECTED.value):
            raise AlreadyResolvedError(f"Submission is already {submission.status}")
        if submission.status == SubmissionStatus.PROCESSING.value and not allow_processing:
            raise AdminActionError("Submission is still being processed")
        return submission

    def _resolve(
        self,
        submission_id: str,
        admin_id: str,
        is_admin: bool,
        status: str,
        notes: Optional[str],
        reasons: List[str],
        action: str,
        allow_processing: bool = False,
    ) -> Dict[str, Any]:
        def work(session: Session) -> Dict[str, Any]:
            self._require_admin(session, admin_id, is_admin)
            now = get_naive_utc_now()
            submission = self._load_for_resolution(session, submission_id, allow_processing)
            order = session.get(PaymentOrder, submission.order_id)
            if order is None:
                raise AdminActionError("Order for submission not found", kind="not-found")

            submission.status = status
            submission.resolved_by = admin_id
            submission.resolved_at = now
            submission.resolution_notes = notes
            # Version check: a concurrent resolution makes this attempt retry and fail as already resolved
            session.flush()

            apply_disposition(session, submission, order, status, reasons, now)
            FraudAuditLogger.record(
                session,
                action,
                submission_id=submission.id,
                account_id=submission.account_id,
                fraud_score=submission.fraud_score,
                flags=submission.flags,
                details={"order_id": order.id, "order_kind": order.kind, "amount": str(order.amount)},
                admin_id=admin_id,
                notes=notes,
            )
            return {
                "submission": submission_to_dict(submission, include_analysis=True),
                "order": order_to_dict(order),
            }

        result = run_in_transaction(work, self.session_factory, operation=f"admin_{status}")
        logger.info(f"🛡️ ADMIN ACTION: {admin_id} set submission {submission_id} to {status}")
        return result

    def approve_submission(
        self,
        submission_id: str,
        admin_id: str,
        notes: Optional[str] = None,
        is_admin: bool = False,
    ) -> Dict[str, Any]:
        """Approve a held submission, or rescue one stuck in processing"""
        return self._resolve(
            submission_id, admin_id, is_admin,
            status=SubmissionStatus.APPROVED.value,
            notes=notes,
            reasons=[],
            action=FraudAuditAction.ADMIN_APPROVED.value,
            allow_processing=True,
        )

    def reject_submission(
        self,
        submission_id: str,
        admin_id: str,
        reason: Optional[str] = None,
        is_admin: bool = False,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Reject a held submission; ``notes`` is accepted as an alias for ``reason``"""
        given = reason if reason is not None else notes
        if given is not None and not isinstance(given, str):
            raise InvalidArgumentError("Rejection reason must be a string")
        reason = (given or "").strip() or DEFAULT_REJECTION_REASON
        return self._resolve(
            submission_id, admin_id, is_admin,
            status=SubmissionStatus.REJECTED.value,
            notes=reason,
            reasons=[reason],
            action=FraudAuditAction.ADMIN_REJECTED.value,
        )

    def get_pending_reviews(self, admin_id: str, is_admin: bool = False, limit: int = 50) -> List[Dict[str, Any]]:
        def work(session: Session) -> List[Dict[str, Any]]:
            self._require_admin(session, admin_id, is_admin)
            rows = session.execute(
                select(PaymentSubmission, PaymentOrder)
                .join(PaymentOrder, PaymentOrder.id == PaymentSubmission.order_id)
                .where(PaymentSubmission.status == SubmissionStatus.MANUAL_REVIEW.value)
                .order_by(PaymentSubmission.created_at)
                .limit(limit)
            ).all()
            items = []
            for submission, order in rows:
                data = submission_to_dict(submission, include_analysis=True)
                data["order"] = order_to_dict(order)
                items.append(data)
            return items

        return run_in_transaction(work, self.session_factory, operation="admin_pending_reviews")

    def get_statistics(self, admin_id: str, is_admin: bool = False) -> Dict[str, Any]:
        def work(session: Session) -> Dict[str, Any]:
            self._require_admin(session, admin_id, is_admin)

            submission_counts = {status.value: 0 for status in SubmissionStatus}
            for status, count in session.execute(
                select(PaymentSubmission.status, func.count(PaymentSubmission.id)).group_by(PaymentSubmission.status)
            ):
                submission_counts[status] = count

            order_counts = {status.value: 0 for status in OrderStatus}
            for status, count in session.execute(
                select(PaymentOrder.status, func.count(PaymentOrder.id)).group_by(PaymentOrder.status)
            ):
                order_counts[status] = count

            approved_amount = session.scalar(
                select(func.coalesce(func.sum(PaymentOrder.amount), 0))
                .where(PaymentOrder.status == OrderStatus.APPROVED.value)
            )
            average_score = session.scalar(
                select(func.avg(PaymentSubmission.fraud_score)).where(PaymentSubmission.fraud_score.is_not(None))
            )

            total = sum(submission_counts.values())
            decided = submission_counts[SubmissionStatus.APPROVED.value] + submission_counts[SubmissionStatus.REJECTED.value]
            return {
                "submissions": submission_counts,
                "orders": order_counts,
                "total_submissions": total,
                "pending_review": submission_counts[SubmissionStatus.MANUAL_REVIEW.value],
                "approval_rate_percent": round(
                    submission_counts[SubmissionStatus.APPROVED.value] / decided * 100, 2
                ) if decided else 0,
                "approved_amount": str(Decimal(str(approved_amount or 0))),
                "average_fraud_score": round(float(average_score), 2) if average_score is not None else None,
            }

        return run_in_transaction(work, self.session_factory, operation="admin_statistics")

    def get_submission_audit(self, submission_id: str, admin_id: str, is_admin: bool = False) -> Dict[str, Any]:
        def work(session: Session) -> Dict[str, Any]:
            self._require_admin(session, admin_id, is_admin)
            submission = session.get(PaymentSubmission, submission_id)
            if submission is None:
                raise AdminActionError("Submission not found", kind="not-found")
            return {
                "submission": submission_to_dict(submission, include_analysis=True),
                "audit": [audit_entry_to_dict(entry) for entry in FraudAuditLogger.for_submission(session, submission_id)],
            }

        return run_in_transaction(work, self.session_factory, operation="admin_submission_audit")
