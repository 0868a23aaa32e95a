"""
Receipt Pattern Extraction Tests
Field extraction from recognized receipt text, plausibility filters and normalizers
"""

from datetime import datetime
from decimal import Decimal

import pytest

from services.receipt_patterns import (
    ExtractionResult,
    clean_reference_number,
    extract_receipt_fields,
    parse_amount,
    parse_receipt_timestamp,
)


GCASH_RECEIPT = """GCash
Send Money
To: JUAN DELA CRUZ
From: MARIA SANTOS
Amount: ₱1,500.00
Ref No. 1234 567 890123
10/18/2026 03:45 PM
Transfer successful"""


class TestExtractReceiptFields:
    """Full-text extraction"""

    def test_complete_gcash_receipt(self):
        result = extract_receipt_fields(GCASH_RECEIPT)

        assert result.reference_number == "1234567890123", "Reference should be compacted"
        assert result.amount == Decimal("1500.00")
        assert result.receiver_name == "JUAN DELA CRUZ"
        assert result.sender_name == "MARIA SANTOS"
        assert result.timestamp == datetime(2026, 10, 18, 15, 45)
        assert result.has_success_indicator is True
        assert result.has_branding is True
        assert result.completeness_score() == 100
        assert result.missing_fields() == []

    def test_empty_text_returns_empty_result(self):
        for text in (None, "", "   \n  "):
            result = extract_receipt_fields(text)
            assert result == ExtractionResult()
            assert result.completeness_score() == 0

    def test_masked_receiver_is_extracted(self):
        text = "Sent to\nTo: JU** DE** C.\nPHP 250.00\nReference: ABCD12345678"
        result = extract_receipt_fields(text)

        assert result.receiver_name == "JU** DE** C"
        assert result.amount == Decimal("250.00")
        assert result.reference_number == "ABCD12345678"

    def test_short_reference_is_rejected(self):
        result = extract_receipt_fields("Ref No. 12345\nAmount: ₱100.00")
        assert result.reference_number is None, "References under 10 characters are implausible"
        assert "reference_number" in result.missing_fields()

    def test_month_name_timestamp(self):
        result = extract_receipt_fields("Oct 18, 2026 at 9:05 AM\nPHP 80.00")
        assert result.timestamp == datetime(2026, 10, 18, 9, 5)

    def test_serialization_preserves_fields(self):
        original = extract_receipt_fields(GCASH_RECEIPT)
        data = original.to_dict()

        assert data["amount"] == "1500.00"
        assert data["timestamp"] == "2026-10-18T15:45:00"
        assert ExtractionResult.from_dict(data) == original
        assert ExtractionResult.from_dict(None) == ExtractionResult()


class TestNormalizers:
    """Individual parsers"""

    @pytest.mark.parametrize("raw,expected", [
        ("1,500.00", Decimal("1500.00")),
        ("250", Decimal("250.00")),
        ("0.5", Decimal("0.50")),
    ])
    def test_parse_amount_valid(self, raw, expected):
        assert parse_amount(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "0", "0.00", "abc", "-5", "9" * 40 + ".00", "1000000000000000000"])
    def test_parse_amount_invalid(self, raw):
        assert parse_amount(raw) is None

    def test_clean_reference_number(self):
        assert clean_reference_number(" 1234 567\t890123 ") == "1234567890123"
        assert clean_reference_number("abcd 1234") == "ABCD1234"
        assert clean_reference_number("") is None
        assert clean_reference_number("   ") is None

    def test_numeric_dates_are_month_first(self):
        assert parse_receipt_timestamp("03/04/2026", "1:15 PM") == datetime(2026, 3, 4, 13, 15)

    def test_two_digit_year_and_midnight(self):
        assert parse_receipt_timestamp("12/31/25", "12:30 AM") == datetime(2025, 12, 31, 0, 30)

    def test_impossible_date_returns_none(self):
        assert parse_receipt_timestamp("13/45/2026", "10:00") is None


class TestAdversarialText:
    """Forged receipts must still extract cleanly so they can be scored"""

    def test_absurd_amount_is_dropped(self):
        text = GCASH_RECEIPT.replace("₱1,500.00", "₱" + "9" * 40 + ".00")

        result = extract_receipt_fields(text)

        assert result.amount is None
        assert result.reference_number == "1234567890123"
        assert result.receiver_name == "JUAN DELA CRUZ"
