"""
Receipt Validation Tests
Amount, receiver, timestamp window and confidence checks against the payment order
"""

from datetime import datetime, timedelta
from decimal import Decimal

from services.receipt_patterns import ExtractionResult
from services.receipt_validation import (
    amounts_match,
    combined_ocr_confidence,
    names_match,
    timestamp_is_fresh,
    validate_receipt,
)

NOW = datetime(2026, 10, 18, 7, 0)
ORDER_CREATED = NOW - timedelta(minutes=10)


def _local(utc: datetime) -> datetime:
    return utc + timedelta(hours=8)


def _extraction(**overrides) -> ExtractionResult:
    fields = dict(
        has_success_indicator=True,
        has_branding=True,
        reference_number="1234567890123",
        amount=Decimal("1500.00"),
        sender_name="MARIA SANTOS",
        receiver_name="JUAN DELA CRUZ",
        timestamp=_local(NOW - timedelta(minutes=2)),
    )
    fields.update(overrides)
    return ExtractionResult(**fields)


class TestNameMatching:

    def test_exact_and_containment(self):
        assert names_match("JUAN DELA CRUZ", "Juan Dela Cruz")
        assert names_match("JUAN CRUZ", "JUAN CRUZ SANTOS")

    def test_masked_wallet_name(self):
        assert names_match("JU** DE** C.", "JUAN DELA CRUZ"), "Masked prefixes should match"

    def test_different_person(self):
        assert not names_match("PEDRO REYES", "JUAN DELA CRUZ")
        assert not names_match("PE** RE** G.", "JUAN DELA CRUZ")

    def test_missing_values(self):
        assert not names_match(None, "JUAN DELA CRUZ")
        assert not names_match("JUAN DELA CRUZ", "")


class TestAmountsAndTime:

    def test_amounts_must_be_exact_by_default(self):
        assert amounts_match(Decimal("1500.00"), Decimal("1500"))
        assert not amounts_match(Decimal("1499.99"), Decimal("1500"))
        assert not amounts_match(None, Decimal("1500"))

    def test_amount_tolerance(self):
        assert amounts_match(Decimal("1490"), Decimal("1500"), tolerance_percent=Decimal("1"))
        assert not amounts_match(Decimal("1480"), Decimal("1500"), tolerance_percent=Decimal("1"))

    def test_fresh_receipt_in_local_time(self):
        assert timestamp_is_fresh(_local(NOW - timedelta(minutes=5)), ORDER_CREATED, NOW)

    def test_receipt_older_than_window(self):
        created = NOW - timedelta(hours=2)
        assert not timestamp_is_fresh(_local(NOW - timedelta(minutes=31)), created, NOW)

    def test_receipt_before_order_creation(self):
        assert not timestamp_is_fresh(_local(ORDER_CREATED - timedelta(minutes=6)), ORDER_CREATED, NOW)
        assert timestamp_is_fresh(_local(ORDER_CREATED - timedelta(minutes=4)), ORDER_CREATED, NOW)

    def test_receipt_from_the_future(self):
        assert not timestamp_is_fresh(_local(NOW + timedelta(minutes=6)), ORDER_CREATED, NOW)

    def test_missing_timestamp(self):
        assert not timestamp_is_fresh(None, ORDER_CREATED, NOW)


class TestConfidence:

    def test_average_of_vision_and_completeness(self):
        assert combined_ocr_confidence(0.9, _extraction()) == 95

    def test_vision_confidence_is_clamped(self):
        assert combined_ocr_confidence(1.7, _extraction()) == 100

    def test_missing_vision_confidence_uses_default(self):
        assert combined_ocr_confidence(None, ExtractionResult()) == 35


class TestValidateReceipt:

    def test_all_checks_pass(self):
        result = validate_receipt(_extraction(), Decimal("1500"), ORDER_CREATED, "JUAN DELA CRUZ", NOW, 0.95)

        assert result.amount_match and result.receiver_match
        assert result.timestamp_valid and result.reference_present
        assert result.has_required_fields and result.all_passed
        assert result.errors == []

    def test_amount_mismatch_and_missing_reference(self):
        result = validate_receipt(
            _extraction(amount=Decimal("150.00"), reference_number=None),
            Decimal("1500"), ORDER_CREATED, "JUAN DELA CRUZ", NOW, 0.95,
        )

        assert not result.amount_match
        assert not result.reference_present
        assert not result.has_required_fields
        assert "Amount mismatch: expected 1500, found 150.00" in result.errors
        assert "Reference number not found in screenshot" in result.errors

    def test_receiver_passes_when_nothing_configured(self):
        result = validate_receipt(_extraction(), Decimal("1500"), ORDER_CREATED, None, NOW, 0.95)
        assert result.receiver_match is True

    def test_stale_receipt_is_reported(self):
        stale = _extraction(timestamp=_local(NOW - timedelta(hours=3)))
        result = validate_receipt(stale, Decimal("1500"), ORDER_CREATED, "JUAN DELA CRUZ", NOW, 0.95)

        assert result.timestamp_valid is False
        assert any("outside valid window" in error for error in result.errors)
        assert result.to_dict()["all_passed"] is True, "Timestamp is scored separately"
