"""
Fraud Scoring Engine
Additive, rule-based risk scoring for payment receipt submissions.

Every rule contributes a fixed number of points when it triggers and the total is
capped at 100, so each point of a score can be traced back to a named rule when a
disposition is disputed.
"""

import logging
from dataclasses import dataclass, field, asdict
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Any

from config import Config
from services.duplicate_ledger import DuplicateCheck
from services.image_forensics import ForensicsResult
from services.receipt_patterns import ExtractionResult
from services.receipt_validation import ValidationResult

logger = logging.getLogger(__name__)

MAX_SCORE = 100


class FraudFlag(Enum):
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    DUPLICATE_REFERENCE = "DUPLICATE_REFERENCE"
    DUPLICATE_IMAGE = "DUPLICATE_IMAGE"
    SIMILAR_IMAGE = "SIMILAR_IMAGE"
    RECEIVER_MISMATCH = "RECEIVER_MISMATCH"
    NEW_ACCOUNT_HIGH_VALUE = "NEW_ACCOUNT_HIGH_VALUE"
    TIMESTAMP_EXPIRED = "TIMESTAMP_EXPIRED"
    VELOCITY_EXCEEDED = "VELOCITY_EXCEEDED"
    LOW_OCR_CONFIDENCE = "LOW_OCR_CONFIDENCE"
    MISSING_REQUIRED_FIELDS = "MISSING_REQUIRED_FIELDS"
    SUSPICIOUS_DIMENSIONS = "SUSPICIOUS_DIMENSIONS"
    MISSING_EXIF = "MISSING_EXIF"
    # Non-scoring flags set by the pipeline itself
    PROCESSING_ERROR = "PROCESSING_ERROR"
    UNTRUSTED_SCREENSHOT_URL = "UNTRUSTED_SCREENSHOT_URL"
    ORDER_EXPIRED = "ORDER_EXPIRED"
    AUTO_APPROVE_DISABLED = "AUTO_APPROVE_DISABLED"
    HIGH_AMOUNT_REVIEW = "HIGH_AMOUNT_REVIEW"


# Proof of reuse, not probabilistic risk
CRITICAL_FLAGS = frozenset({FraudFlag.DUPLICATE_REFERENCE.value, FraudFlag.DUPLICATE_IMAGE.value})


class RecommendedAction(Enum):
    AUTO_APPROVE = "auto_approve"
    MANUAL_REVIEW = "manual_review"
    AUTO_REJECT = "auto_reject"


@dataclass
class AccountContext:
    """Account-level signals gathered by the pipeline before scoring"""
    account_age_days: float
    submissions_last_24h: int = 0
    submissions_last_hour: int = 0


@dataclass
class TriggeredRule:
    flag: str
    points: int
    description: str


@dataclass
class ScoreResult:
    score: int
    flags: List[str]
    recommended_action: str
    critical: bool
    rules: List[TriggeredRule] = field(default_factory=list)
    raw_score: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class FraudScoringEngine:
    """Combines validation, duplicate, forensic and velocity signals into a score"""

    def __init__(
        self,
        rule_points: Optional[Dict[str, int]] = None,
        auto_approve_threshold: Optional[int] = None,
        auto_reject_threshold: Optional[int] = None,
    ):
        self.rule_points = dict(rule_points or Config.FRAUD_SCORES)
        self.auto_approve_threshold = (
            Config.AUTO_APPROVE_THRESHOLD if auto_approve_threshold is None else auto_approve_threshold
        )
        self.auto_reject_threshold = (
            Config.AUTO_REJECT_THRESHOLD if auto_reject_threshold is None else auto_reject_threshold
        )

    def _points(self, flag: FraudFlag) -> int:
        return max(0, int(self.rule_points.get(flag.value, 0)))

    def recommend(self, score: int) -> RecommendedAction:
        if score <= self.auto_approve_threshold:
            return RecommendedAction.AUTO_APPROVE
        if score >= self.auto_reject_threshold:
            return RecommendedAction.AUTO_REJECT
        return RecommendedAction.MANUAL_REVIEW

    def score(
        self,
        order_amount: Decimal,
        extraction: ExtractionResult,
        validation: ValidationResult,
        forensics: Optional[ForensicsResult],
        duplicate_reference: DuplicateCheck,
        duplicate_image: DuplicateCheck,
        similar_image: Optional[DuplicateCheck],
        account: AccountContext,
    ) -> ScoreResult:
        rules: List[TriggeredRule] = []

        def trigger(flag: FraudFlag, description: str) -> None:
            rules.append(TriggeredRule(flag=flag.value, points=self._points(flag), description=description))

        # Receipt content
        if not validation.amount_match:
            trigger(FraudFlag.AMOUNT_MISMATCH, f"Receipt amount {extraction.amount} does not match order amount {order_amount}")

        if duplicate_reference.is_duplicate:
            trigger(
                FraudFlag.DUPLICATE_REFERENCE,
                f"Reference number already used by submission {duplicate_reference.first_submission_id}",
            )

        if not validation.receiver_match and extraction.receiver_name:
            trigger(FraudFlag.RECEIVER_MISMATCH, f"Receiver '{extraction.receiver_name}' does not match the platform account")

        if not validation.timestamp_valid and extraction.timestamp:
            trigger(FraudFlag.TIMESTAMP_EXPIRED, f"Receipt time {extraction.timestamp.isoformat()} is outside the valid window")

        if validation.ocr_confidence < Config.MIN_OCR_CONFIDENCE:
            trigger(FraudFlag.LOW_OCR_CONFIDENCE, f"Text recognition confidence {validation.ocr_confidence} below {Config.MIN_OCR_CONFIDENCE}")

        if not validation.has_required_fields:
            trigger(FraudFlag.MISSING_REQUIRED_FIELDS, f"Missing or unmatched required fields: {', '.join(extraction.missing_fields()) or 'amount'}")

        # Image reuse
        if duplicate_image.is_duplicate:
            trigger(FraudFlag.DUPLICATE_IMAGE, f"Identical image already submitted as {duplicate_image.first_submission_id}")
        elif similar_image is not None and similar_image.first_submission_id:
            trigger(
                FraudFlag.SIMILAR_IMAGE,
                f"Image is {round((similar_image.similarity or 0) * 100)}% similar to submission {similar_image.first_submission_id}",
            )

        # Image characteristics
        if forensics is not None:
            if forensics.suspicious_dimensions:
                trigger(FraudFlag.SUSPICIOUS_DIMENSIONS, f"Unusual image dimensions {forensics.width}x{forensics.height}")
            if not forensics.has_exif:
                trigger(FraudFlag.MISSING_EXIF, "Image carries no capture metadata")

        # Account behaviour
        if account.account_age_days < Config.NEW_ACCOUNT_DAYS and order_amount > Config.HIGH_VALUE_THRESHOLD:
            trigger(
                FraudFlag.NEW_ACCOUNT_HIGH_VALUE,
                f"Account is {account.account_age_days:.1f} days old paying {order_amount}",
            )

        if (account.submissions_last_24h >= Config.MAX_DAILY_SUBMISSIONS
                or account.submissions_last_hour > Config.MAX_HOURLY_SUBMISSIONS):
            trigger(
                FraudFlag.VELOCITY_EXCEEDED,
                f"{account.submissions_last_24h} submissions in 24h, {account.submissions_last_hour} in the last hour",
            )

        raw_score = sum(rule.points for rule in rules)
        score = min(MAX_SCORE, raw_score)
        flags = [rule.flag for rule in rules]
        critical = any(flag in CRITICAL_FLAGS for flag in flags)
        action = RecommendedAction.AUTO_REJECT if critical else self.recommend(score)

        logger.info(
            f"🎯 FRAUD_SCORE: score={score} (raw={raw_score}) action={action.value} "
            f"critical={critical} flags={flags}"
        )

        return ScoreResult(
            score=score,
            flags=flags,
            recommended_action=action.value,
            critical=critical,
            rules=rules,
            raw_score=raw_score,
        )


def determine_final_status(
    result: ScoreResult,
    order_amount: Decimal,
    auto_approve_enabled: bool = True,
) -> Dict[str, Any]:
    """
    Map a score result to a submission status.

    Returns ``{"status": ..., "extra_flags": [...]}``; extra flags record why a
    low-risk result was held for review.
    """
    if result.critical:
        return {"status": "rejected", "extra_flags": []}

    if result.recommended_action == RecommendedAction.AUTO_REJECT.value:
        return {"status": "rejected", "extra_flags": []}

    if result.recommended_action == RecommendedAction.AUTO_APPROVE.value:
        if not auto_approve_enabled:
            return {"status": "manual_review", "extra_flags": [FraudFlag.AUTO_APPROVE_DISABLED.value]}
        if order_amount > Config.MAX_AUTO_APPROVE_AMOUNT:
            return {"status": "manual_review", "extra_flags": [FraudFlag.HIGH_AMOUNT_REVIEW.value]}
        return {"status": "approved", "extra_flags": []}

    return {"status": "manual_review", "extra_flags": []}
