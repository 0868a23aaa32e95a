"""
Payment Notification Outbox
Queues owner and admin notifications for payment dispositions and fee enforcement.

Rows are written in the caller's transaction; a separate delivery worker drains
undelivered rows, so a rolled-back disposition never notifies anyone.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Notification

logger = logging.getLogger(__name__)

ADMIN_RECIPIENT = "admins"


class PaymentNotificationService:
    """Builds notification rows for payment and fee events"""

    @staticmethod
    def queue(
        session: Session,
        recipient: str,
        kind: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        notification = Notification(recipient=recipient, kind=kind, title=title, body=body, data=data or {})
        session.add(notification)
        logger.debug(f"📬 Queued {kind} notification for {recipient}")
        return notification

    @classmethod
    def payment_disposition(
        cls,
        session: Session,
        account_id: str,
        submission_id: str,
        order_id: str,
        status: str,
        amount: Decimal,
        reasons: Optional[List[str]] = None,
    ) -> Notification:
        if status == "approved":
            title = "Payment approved"
            body = f"Your payment of ₱{amount:,.2f} has been verified."
        elif status == "rejected":
            title = "Payment rejected"
            reason_text = "; ".join(reasons or []) or "The receipt could not be verified"
            body = f"Your payment of ₱{amount:,.2f} was rejected: {reason_text}"
        else:
            title = "Payment under review"
            body = f"Your payment of ₱{amount:,.2f} is being reviewed by our team."

        return cls.queue(
            session,
            recipient=account_id,
            kind=f"payment_{status}",
            title=title,
            body=body,
            data={"submission_id": submission_id, "order_id": order_id, "status": status},
        )

    @classmethod
    def review_required(
        cls,
        session: Session,
        submission_id: str,
        order_id: str,
        account_id: str,
        fraud_score: Optional[int],
        flags: List[str],
    ) -> Notification:
        return cls.queue(
            session,
            recipient=ADMIN_RECIPIENT,
            kind="payment_review_required",
            title="Payment needs review",
            body=f"Submission {submission_id} from {account_id} scored {fraud_score}: {', '.join(flags) or 'no flags'}",
            data={
                "submission_id": submission_id,
                "order_id": order_id,
                "account_id": account_id,
                "fraud_score": fraud_score,
                "flags": list(flags),
            },
        )

    @classmethod
    def fee_reminder(cls, session: Session, account_id: str, contract_id: str, fee: Decimal, stage: str) -> Notification:
        final = stage == "final"
        return cls.queue(
            session,
            recipient=account_id,
            kind=f"fee_reminder_{stage}",
            title="Final reminder: platform fee due" if final else "Platform fee reminder",
            body=(
                f"Your platform fee of ₱{fee:,.2f} for contract {contract_id} is still unpaid."
                + (" Your account will be suspended if it is not settled." if final else "")
            ),
            data={"contract_id": contract_id, "fee": str(fee), "stage": stage},
        )

    @classmethod
    def account_suspended(cls, session: Session, account_id: str, reason: str) -> Notification:
        return cls.queue(
            session,
            recipient=account_id,
            kind="account_suspended",
            title="Account suspended",
            body=f"Your account has been suspended ({reason}). Settle outstanding fees to restore access.",
            data={"reason": reason},
        )

    @classmethod
    def account_restored(cls, session: Session, account_id: str) -> Notification:
        return cls.queue(
            session,
            recipient=account_id,
            kind="account_restored",
            title="Account restored",
            body="All outstanding platform fees are settled and your account is active again.",
            data={},
        )

    @staticmethod
    def pending_for(session: Session, recipient: str) -> List[Notification]:
        return list(session.scalars(
            select(Notification)
            .where(Notification.recipient == recipient, Notification.delivered.is_(False))
            .order_by(Notification.id)
        ))
