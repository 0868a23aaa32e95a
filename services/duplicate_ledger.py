"""
Duplicate Ledger
First-writer-wins lookup tables for transfer reference numbers and image hashes.

Each check runs in its own short transaction. The lookup key is the table's primary
key, so when two submissions race on the same key the database lets exactly one
INSERT commit; the loser's transaction is retried, re-reads the winner's row and
reports itself as the duplicate.
"""

import logging
from dataclasses import dataclass, asdict
from decimal import Decimal
from typing import Optional, Dict, Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import ReferenceNumberEntry, ImageHashEntry
from services.image_forensics import compare_hashes
from services.receipt_patterns import clean_reference_number
from utils.atomic_transactions import run_in_transaction

logger = logging.getLogger(__name__)


@dataclass
class DuplicateCheck:
    is_duplicate: bool = False
    first_submission_id: Optional[str] = None
    first_account_id: Optional[str] = None
    first_amount: Optional[Decimal] = None
    similarity: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["first_amount"] = str(self.first_amount) if self.first_amount is not None else None
        return data


class DuplicateLedger:
    """Reference-number and image-hash reuse detection"""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Reference numbers
    # ------------------------------------------------------------------

    def check_and_record_reference(
        self,
        reference_number: str,
        submission_id: str,
        account_id: str,
        amount: Optional[Decimal] = None,
    ) -> DuplicateCheck:
        key = clean_reference_number(reference_number)
        if not key:
            return DuplicateCheck()

        def work(session: Session) -> DuplicateCheck:
            existing = session.get(ReferenceNumberEntry, key)
            if existing is not None:
                if existing.submission_id == submission_id:
                    return DuplicateCheck()
                return DuplicateCheck(
                    is_duplicate=True,
                    first_submission_id=existing.submission_id,
                    first_account_id=existing.account_id,
                    first_amount=existing.amount,
                )

            session.add(ReferenceNumberEntry(
                reference_number=key,
                submission_id=submission_id,
                account_id=account_id,
                amount=amount,
            ))
            session.flush()
            return DuplicateCheck()

        result = run_in_transaction(work, self.session_factory, operation="reference_ledger")
        if result.is_duplicate:
            logger.warning(
                f"🚨 DUPLICATE_REFERENCE: {key} on submission {submission_id} "
                f"first seen on {result.first_submission_id} (account {result.first_account_id})"
            )
        return result

    # ------------------------------------------------------------------
    # Image hashes
    # ------------------------------------------------------------------

    def check_and_record_image_hash(self, image_hash: str, submission_id: str, account_id: str) -> DuplicateCheck:
        if not image_hash:
            return DuplicateCheck()

        def work(session: Session) -> DuplicateCheck:
            existing = session.get(ImageHashEntry, image_hash)
            if existing is not None:
                if existing.submission_id == submission_id:
                    return DuplicateCheck()
                return DuplicateCheck(
                    is_duplicate=True,
                    first_submission_id=existing.submission_id,
                    first_account_id=existing.account_id,
                    similarity=1.0,
                )

            session.add(ImageHashEntry(image_hash=image_hash, submission_id=submission_id, account_id=account_id))
            session.flush()
            return DuplicateCheck()

        result = run_in_transaction(work, self.session_factory, operation="image_hash_ledger")
        if result.is_duplicate:
            logger.warning(
                f"🚨 DUPLICATE_IMAGE: hash {image_hash} on submission {submission_id} "
                f"first seen on {result.first_submission_id}"
            )
        return result

    def find_similar_image(self, image_hash: str, submission_id: str, scan_limit: Optional[int] = None) -> DuplicateCheck:
        """Best near-match (similar but not identical) among recorded hashes of other submissions"""
        if not image_hash:
            return DuplicateCheck()

        limit = scan_limit or Config.SIMILAR_IMAGE_SCAN_LIMIT

        def work(session: Session) -> DuplicateCheck:
            rows = session.execute(
                select(ImageHashEntry.image_hash, ImageHashEntry.submission_id, ImageHashEntry.account_id)
                .where(ImageHashEntry.submission_id != submission_id)
                .order_by(ImageHashEntry.created_at.desc())
                .limit(limit)
            ).all()

            best: Optional[DuplicateCheck] = None
            for other_hash, other_submission, other_account in rows:
                if len(other_hash) != len(image_hash):
                    continue
                comparison = compare_hashes(image_hash, other_hash)
                if comparison.is_similar and (best is None or comparison.similarity > best.similarity):
                    best = DuplicateCheck(
                        is_duplicate=False,
                        first_submission_id=other_submission,
                        first_account_id=other_account,
                        similarity=comparison.similarity,
                    )
            return best or DuplicateCheck()

        return run_in_transaction(work, self.session_factory, operation="similar_image_scan")
