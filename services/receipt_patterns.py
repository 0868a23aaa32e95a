"""
Receipt Pattern Extractor
Turns recognized receipt text into structured candidate fields.

Receipts are heterogeneous and adversarial, so each field has an ordered list of
patterns running from most to least specific. The first pattern that matches AND
whose capture passes the field's plausibility filter wins.
"""

import logging
import re
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, List, Dict, Any, Callable, Tuple, Pattern

logger = logging.getLogger(__name__)

_I = re.IGNORECASE

# Amount columns are Numeric(20, 2)
MAX_RECEIPT_AMOUNT = Decimal(10) ** 18

REFERENCE_PATTERNS: List[Pattern] = [
    # GCash prints "Ref No. 1234 567 890123"
    re.compile(r"Ref(?:erence)?\.?\s*(?:No\.?|Number|#)?:?\s*(\d{4}\s\d{3}\s\d{6})", _I),
    re.compile(r"Ref(?:erence)?\.?\s*(?:No\.?|Number|#)?:?\s*([A-Z0-9]{4}\s?[A-Z0-9]{8,12})", _I),
    re.compile(r"(?:GCash|Transaction)\s*Ref(?:erence)?:?\s*([A-Z0-9\s]{12,20})", _I),
    re.compile(r"(\d{4}\s\d{4}\s\d{4})"),
    re.compile(r"Ref(?:erence)?\s*(?:No\.?)?[\s:]*\n?\s*([A-Z0-9]{10,16})", _I),
    re.compile(r"\b(\d{12,16})\b"),
]

AMOUNT_PATTERNS: List[Pattern] = [
    re.compile(r"(?:PHP|₱)\s*([\d,]+\.?\d{0,2})", _I),
    re.compile(r"Amount:?\s*(?:PHP|₱)?\s*([\d,]+\.?\d{0,2})", _I),
    re.compile(r"You\s+(?:sent|paid)\s+(?:PHP|₱)?\s*([\d,]+\.?\d{0,2})", _I),
    re.compile(r"Total:?\s*(?:PHP|₱)?\s*([\d,]+\.?\d{0,2})", _I),
    re.compile(r"\bP\s*([\d,]+\.\d{2})\b"),
    re.compile(r"(?:PHP|₱|P)\s*(\d{1,3}(?:,\d{3})*(?:\.\d{2})?)(?![\d,])"),
]

SENDER_PATTERNS: List[Pattern] = [
    re.compile(r"\bFrom\b:?\s*([A-Za-z\s\.*]+?)(?:\n|$|Phone)", _I),
    re.compile(r"Sent\s+by:?\s*([A-Za-z\s\.*]+?)(?:\n|$)", _I),
    re.compile(r"Sender:?\s*([A-Za-z\s\.*]+?)(?:\n|$)", _I),
    re.compile(r"\bFrom[\s:]*\n\s*([A-Za-z\s\.*]+)", _I),
]

RECEIVER_PATTERNS: List[Pattern] = [
    re.compile(r"\bTo\b:?\s*([A-Za-z\s\.*]+?)(?:\n|$|Phone)", _I),
    re.compile(r"Received\s+by:?\s*([A-Za-z\s\.*]+?)(?:\n|$)", _I),
    re.compile(r"Recipient:?\s*([A-Za-z\s\.*]+?)(?:\n|$)", _I),
    re.compile(r"Send\s+Money\s+to:?\s*([A-Za-z\s\.*]+?)(?:\n|$)", _I),
    re.compile(r"\bTo[\s:]*\n\s*([A-Za-z\s\.*]+)", _I),
    re.compile(r"09\d{9}\s*\n?\s*([A-Za-z\s\.*]+)"),
]

_MONTHS = r"(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\.?"

TIMESTAMP_PATTERNS: List[Pattern] = [
    re.compile(r"(\d{1,2}/\d{1,2}/\d{2,4})\s*,?\s*(\d{1,2}:\d{2}\s*(?:AM|PM)?)", _I),
    re.compile(r"(" + _MONTHS + r"\s+\d{1,2},?\s+\d{4})\s+(?:at\s+)?(\d{1,2}:\d{2}\s*(?:AM|PM)?)", _I),
    re.compile(r"Date:?\s*(\d{1,2}[-/]\d{1,2}[-/]\d{2,4})", _I),
    re.compile(r"(\d{4}-\d{2}-\d{2})\s+(\d{2}:\d{2})"),
    re.compile(r"(" + _MONTHS + r"\s+\d{1,2},?\s+\d{4})", _I),
    re.compile(r"(\d{2}/\d{2}/\d{4})"),
]

SUCCESS_PATTERNS: List[Pattern] = [
    re.compile(p, _I) for p in (
        r"success(?:ful(?:ly)?)?",
        r"completed",
        r"sent\s+to",
        r"received",
        r"transaction\s+complete",
        r"payment\s+successful",
        r"money\s+sent",
        r"transfer\s+successful",
    )
]

BRANDING_PATTERNS: List[Pattern] = [
    re.compile(p, _I) for p in (r"gcash", r"g-?cash", r"globe\s+fintech", r"mynt")
]

# Points awarded to extraction completeness, summing to 100
EXTRACTION_WEIGHTS = {
    "reference_number": 30,
    "amount": 30,
    "receiver_name": 15,
    "timestamp": 10,
    "sender_name": 5,
    "has_success_indicator": 5,
    "has_branding": 5,
}


@dataclass
class ExtractionResult:
    """Structured fields read off a receipt; every field is optional except the two booleans"""
    has_success_indicator: bool = False
    has_branding: bool = False
    reference_number: Optional[str] = None
    amount: Optional[Decimal] = None
    amount_raw: Optional[str] = None
    sender_name: Optional[str] = None
    receiver_name: Optional[str] = None
    timestamp: Optional[datetime] = None
    timestamp_raw: Optional[str] = None

    def completeness_score(self) -> int:
        """0-100 score of how much of a typical receipt was recovered"""
        return sum(weight for name, weight in EXTRACTION_WEIGHTS.items() if getattr(self, name))

    def missing_fields(self) -> List[str]:
        return [name for name in ("reference_number", "amount", "receiver_name", "timestamp")
                if getattr(self, name) is None]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["amount"] = str(self.amount) if self.amount is not None else None
        data["timestamp"] = self.timestamp.isoformat() if self.timestamp else None
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ExtractionResult":
        if not data:
            return cls()
        values = dict(data)
        if values.get("amount") is not None:
            values["amount"] = Decimal(values["amount"])
        if values.get("timestamp"):
            values["timestamp"] = datetime.fromisoformat(values["timestamp"])
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in values.items() if k in known})


# ---------------------------------------------------------------------------
# Plausibility filters and normalizers
# ---------------------------------------------------------------------------

def clean_reference_number(raw: Optional[str]) -> Optional[str]:
    """Canonical reference key: whitespace removed, upper-cased"""
    if not raw:
        return None
    cleaned = re.sub(r"\s+", "", raw).upper()
    return cleaned or None


def _plausible_reference(raw: str) -> Optional[str]:
    cleaned = clean_reference_number(raw)
    if cleaned and len(cleaned) >= 10:
        return cleaned
    return None


def parse_amount(raw: Optional[str]) -> Optional[Decimal]:
    """Parse "1,500.00" style amounts; None unless strictly positive"""
    if not raw:
        return None
    try:
        value = Decimal(raw.replace(",", "").strip())
    except InvalidOperation:
        return None
    if not value.is_finite() or value <= 0 or value >= MAX_RECEIPT_AMOUNT:
        return None
    return value.quantize(Decimal("0.01"))


def _plausible_name(raw: str) -> Optional[str]:
    first_line = next((line for line in raw.splitlines() if line.strip()), "")
    name = re.sub(r"\s+", " ", first_line).strip(" .")
    if not name:
        return None
    if len(name) >= 5 or len(name.split(" ")) >= 2:
        return name
    return None


def _parse_clock(raw: Optional[str]) -> Tuple[int, int]:
    if not raw:
        return 0, 0
    match = re.match(r"(\d{1,2}):(\d{2})\s*(AM|PM)?", raw.strip(), _I)
    if not match:
        return 0, 0
    hour, minute = int(match.group(1)), int(match.group(2))
    meridiem = (match.group(3) or "").upper()
    if meridiem == "PM" and hour < 12:
        hour += 12
    elif meridiem == "AM" and hour == 12:
        hour = 0
    if hour > 23 or minute > 59:
        return 0, 0
    return hour, minute


def parse_receipt_timestamp(date_part: str, time_part: Optional[str] = None) -> Optional[datetime]:
    """
    Parse a receipt date (+ optional clock time) as printed on the receipt.

    Numeric dates are read month-first (MM/DD/YYYY) as Philippine wallets print them,
    two-digit years are taken as 20xx. Returns None when nothing sensible parses.
    """
    date_part = date_part.strip()
    hour, minute = _parse_clock(time_part)

    try:
        numeric = re.match(r"^(\d{1,2})[-/](\d{1,2})[-/](\d{2,4})$", date_part)
        if numeric:
            month, day, year = (int(g) for g in numeric.groups())
            if year < 100:
                year += 2000
            return datetime(year, month, day, hour, minute)

        iso = re.match(r"^(\d{4})-(\d{2})-(\d{2})$", date_part)
        if iso:
            year, month, day = (int(g) for g in iso.groups())
            return datetime(year, month, day, hour, minute)

        words = re.sub(r"[,.]", " ", date_part).split()
        if len(words) == 3:
            month_word, day, year = words
            parsed = datetime.strptime(f"{month_word[:3].title()} {day} {year}", "%b %d %Y")
            return parsed.replace(hour=hour, minute=minute)
    except ValueError:
        return None

    return None


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def _first_match(text: str, patterns: List[Pattern], accept: Callable[[str], Any]) -> Tuple[Any, Optional[str]]:
    for pattern in patterns:
        for match in pattern.finditer(text):
            raw = match.group(1)
            if raw is None:
                continue
            value = accept(raw)
            if value is not None:
                return value, raw
    return None, None


def _extract_timestamp(text: str) -> Tuple[Optional[datetime], Optional[str]]:
    for pattern in TIMESTAMP_PATTERNS:
        for match in pattern.finditer(text):
            date_part = match.group(1)
            time_part = match.group(2) if match.lastindex and match.lastindex >= 2 else None
            parsed = parse_receipt_timestamp(date_part, time_part)
            if parsed is not None:
                return parsed, match.group(0).strip()
    return None, None


def extract_receipt_fields(text: Optional[str]) -> ExtractionResult:
    """Pure extraction of candidate fields from recognized receipt text"""
    if not text or not text.strip():
        return ExtractionResult()

    reference, _ = _first_match(text, REFERENCE_PATTERNS, _plausible_reference)
    amount, amount_raw = _first_match(text, AMOUNT_PATTERNS, parse_amount)
    sender, _ = _first_match(text, SENDER_PATTERNS, _plausible_name)
    receiver, _ = _first_match(text, RECEIVER_PATTERNS, _plausible_name)
    timestamp, timestamp_raw = _extract_timestamp(text)

    result = ExtractionResult(
        has_success_indicator=any(p.search(text) for p in SUCCESS_PATTERNS),
        has_branding=any(p.search(text) for p in BRANDING_PATTERNS),
        reference_number=reference,
        amount=amount,
        amount_raw=amount_raw,
        sender_name=sender,
        receiver_name=receiver,
        timestamp=timestamp,
        timestamp_raw=timestamp_raw,
    )

    logger.debug(
        f"🔎 EXTRACTION: ref={'yes' if reference else 'no'} amount={amount} "
        f"receiver={'yes' if receiver else 'no'} timestamp={timestamp} "
        f"score={result.completeness_score()}"
    )
    return result
