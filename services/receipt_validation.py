"""
Receipt Validation
Checks extracted receipt fields against the payment order they claim to settle
"""

import logging
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, List, Dict, Any

from config import Config
from services.receipt_patterns import ExtractionResult

logger = logging.getLogger(__name__)

_NAME_STOP_WORDS = {"THE", "AND", "OF", "INC", "LLC", "CORP"}


@dataclass
class ValidationResult:
    amount_match: bool = False
    receiver_match: bool = False
    timestamp_valid: bool = False
    reference_present: bool = False
    ocr_confidence: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def has_required_fields(self) -> bool:
        return self.reference_present and self.amount_match

    @property
    def all_passed(self) -> bool:
        return self.amount_match and self.receiver_match and self.reference_present

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["has_required_fields"] = self.has_required_fields
        data["all_passed"] = self.all_passed
        return data


def _name_tokens(name: str) -> List[str]:
    cleaned = re.sub(r"[^A-Z*\s]", "", name.upper())
    return [w for w in cleaned.split() if w and w not in _NAME_STOP_WORDS]


def _token_matches(token: str, expected_words: List[str]) -> bool:
    # Wallets mask receiver names ("JU** DE** C.") - compare the visible prefix
    if "*" in token or len(token) == 1:
        prefix = token.split("*", 1)[0]
        return bool(prefix) and any(w.startswith(prefix) for w in expected_words)
    return token in expected_words


def names_match(found: Optional[str], expected: Optional[str]) -> bool:
    """Fuzzy receiver comparison: containment, or at least half the words in common"""
    if not found or not expected:
        return False

    found_upper, expected_upper = found.upper().strip(), expected.upper().strip()
    if found_upper in expected_upper or expected_upper in found_upper:
        return True

    found_words = _name_tokens(found)
    expected_words = [w for w in _name_tokens(expected) if "*" not in w]
    min_words = min(len(found_words), len(expected_words))
    if min_words == 0:
        return False

    matched = sum(1 for token in found_words if _token_matches(token, expected_words))
    return matched >= min_words * 0.5


def amounts_match(found: Optional[Decimal], expected: Decimal, tolerance_percent: Optional[Decimal] = None) -> bool:
    if found is None:
        return False
    tolerance = Config.AMOUNT_TOLERANCE_PERCENT if tolerance_percent is None else tolerance_percent
    allowed = expected * tolerance / Decimal("100")
    return abs(found - expected) <= allowed


def receipt_time_to_utc(receipt_time: datetime) -> datetime:
    return receipt_time - timedelta(hours=Config.RECEIPT_UTC_OFFSET_HOURS)


def timestamp_is_fresh(receipt_time: Optional[datetime], order_created_at: datetime, now: datetime) -> bool:
    """
    Receipt must fall between order creation (minus clock skew) and now (plus skew),
    and be no older than MAX_RECEIPT_AGE_MINUTES.
    """
    if receipt_time is None:
        return False
    receipt_utc = receipt_time_to_utc(receipt_time)
    skew = timedelta(minutes=Config.RECEIPT_CLOCK_SKEW_MINUTES)
    max_age = timedelta(minutes=Config.MAX_RECEIPT_AGE_MINUTES)
    return (
        receipt_utc >= order_created_at - skew
        and receipt_utc <= now + skew
        and now - receipt_utc <= max_age
    )


def combined_ocr_confidence(vision_confidence: Optional[float], extraction: ExtractionResult) -> int:
    """Average of the recognizer's own confidence (0-100) and extraction completeness"""
    if vision_confidence is None:
        vision_score = Config.DEFAULT_VISION_CONFIDENCE
    else:
        vision_score = max(0.0, min(1.0, vision_confidence)) * 100
    return int(round((vision_score + extraction.completeness_score()) / 2))


def validate_receipt(
    extraction: ExtractionResult,
    order_amount: Decimal,
    order_created_at: datetime,
    expected_receiver: Optional[str],
    now: datetime,
    vision_confidence: Optional[float] = None,
) -> ValidationResult:
    result = ValidationResult(ocr_confidence=combined_ocr_confidence(vision_confidence, extraction))

    if extraction.amount is None:
        result.errors.append("Amount not found in screenshot")
    elif amounts_match(extraction.amount, order_amount):
        result.amount_match = True
    else:
        result.errors.append(f"Amount mismatch: expected {order_amount}, found {extraction.amount}")

    if extraction.receiver_name is None:
        result.errors.append("Receiver name not found in screenshot")
    elif not expected_receiver:
        # Nothing configured to compare against
        result.receiver_match = True
    elif names_match(extraction.receiver_name, expected_receiver):
        result.receiver_match = True
    else:
        result.errors.append(
            f'Receiver name mismatch: expected "{expected_receiver}", found "{extraction.receiver_name}"'
        )

    if extraction.timestamp is None:
        result.errors.append("Transaction timestamp not found in screenshot")
    elif timestamp_is_fresh(extraction.timestamp, order_created_at, now):
        result.timestamp_valid = True
    else:
        result.errors.append(
            f"Receipt timestamp is outside valid window (must be within {Config.MAX_RECEIPT_AGE_MINUTES} minutes)"
        )

    if extraction.reference_number:
        result.reference_present = True
    else:
        result.errors.append("Reference number not found in screenshot")

    logger.debug(
        f"🧾 VALIDATION: amount={result.amount_match} receiver={result.receiver_match} "
        f"timestamp={result.timestamp_valid} ref={result.reference_present} confidence={result.ocr_confidence}"
    )
    return result
