"""
Fraud Audit Logging
Append-only trail of every submission disposition and fee-ledger enforcement action.

Entries are written through the caller's session so they commit (or roll back)
together with the state change they describe.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import FraudAuditLog, FraudAuditAction
from utils.datetime_helpers import to_iso

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

# Submission status -> audit action for automatic dispositions
AUTOMATIC_ACTIONS = {
    "approved": FraudAuditAction.AUTO_APPROVED.value,
    "rejected": FraudAuditAction.AUTO_REJECTED.value,
    "manual_review": FraudAuditAction.FLAGGED_FOR_REVIEW.value,
}


class FraudAuditLogger:
    """Writes and reads fraud audit entries; entries are never updated or deleted"""

    @staticmethod
    def record(
        session: Session,
        action: str,
        submission_id: Optional[str] = None,
        account_id: Optional[str] = None,
        fraud_score: Optional[int] = None,
        flags: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
        admin_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> FraudAuditLog:
        entry = FraudAuditLog(
            submission_id=submission_id,
            account_id=account_id,
            action=action,
            fraud_score=fraud_score,
            flags=list(flags or []),
            details=details or {},
            actor=admin_id or SYSTEM_ACTOR,
            admin_id=admin_id,
            notes=notes,
        )
        session.add(entry)
        logger.info(
            f"🛡️ FRAUD_AUDIT: {action} submission={submission_id} account={account_id} "
            f"score={fraud_score} actor={entry.actor}"
        )
        return entry

    @staticmethod
    def for_submission(session: Session, submission_id: str) -> List[FraudAuditLog]:
        return list(session.scalars(
            select(FraudAuditLog)
            .where(FraudAuditLog.submission_id == submission_id)
            .order_by(FraudAuditLog.id)
        ))

    @staticmethod
    def for_account(session: Session, account_id: str, limit: int = 100) -> List[FraudAuditLog]:
        return list(session.scalars(
            select(FraudAuditLog)
            .where(FraudAuditLog.account_id == account_id)
            .order_by(FraudAuditLog.id.desc())
            .limit(limit)
        ))


def audit_entry_to_dict(entry: FraudAuditLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "submission_id": entry.submission_id,
        "account_id": entry.account_id,
        "action": entry.action,
        "fraud_score": entry.fraud_score,
        "flags": entry.flags or [],
        "details": entry.details or {},
        "actor": entry.actor,
        "admin_id": entry.admin_id,
        "notes": entry.notes,
        "created_at": to_iso(entry.created_at),
    }
