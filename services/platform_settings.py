"""
Platform Settings Service
Admin-editable platform settings (fee schedule, receiving account, feature switches,
maintenance mode) stored as one JSON document and served through a short TTL cache.

Consumers receive a ``PlatformSettingsService`` instance instead of reading a module
global, so tests can hand in their own session factory and cache.
"""

import copy
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session, sessionmaker

from caching.simple_cache import SimpleCache
from config import Config
from models import SystemConfig
from utils.atomic_transactions import run_in_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.payment_errors import InvalidArgumentError

logger = logging.getLogger(__name__)

SETTINGS_KEY = "platform"
_CACHE_KEY = "platform_settings"

# Field types accepted by update_settings, per section
_SETTINGS_SCHEMA = {
    "platform_fee": {"percentage": "number", "minimum_fee": "number", "maximum_fee": "number"},
    "receiving_account": {"account_name": "text", "account_number": "text", "qr_code_url": "text"},
    "features": {"payment_verification_enabled": "bool", "auto_approve_low_risk": "bool"},
    "maintenance": {"enabled": "bool", "message": "text"},
}


def default_settings_document() -> Dict[str, Any]:
    return {
        "platform_fee": {
            "percentage": str(Config.DEFAULT_PLATFORM_FEE_PERCENTAGE),
            "minimum_fee": str(Config.DEFAULT_PLATFORM_MINIMUM_FEE),
            "maximum_fee": str(Config.DEFAULT_PLATFORM_MAXIMUM_FEE),
        },
        "receiving_account": {
            "account_name": Config.RECEIVING_ACCOUNT_NAME,
            "account_number": Config.RECEIVING_ACCOUNT_NUMBER,
            "qr_code_url": "",
        },
        "features": {
            "payment_verification_enabled": Config.PAYMENT_VERIFICATION_ENABLED,
            "auto_approve_low_risk": Config.AUTO_APPROVE_LOW_RISK,
        },
        "maintenance": {"enabled": False, "message": ""},
    }


def mask_account_number(number: Optional[str]) -> str:
    """09171234567 -> 0917****567"""
    digits = (number or "").strip()
    if len(digits) < 8:
        return digits
    return f"{digits[:4]}****{digits[-3:]}"


def _to_decimal(value: Any, fallback: Decimal) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return fallback
    return result if result.is_finite() else fallback


def _whole_pesos(value: Decimal) -> Decimal:
    return value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PlatformSettings:
    fee_percentage: Decimal
    minimum_fee: Decimal
    maximum_fee: Decimal
    receiving_account_name: str
    receiving_account_number: str
    qr_code_url: str
    payment_verification_enabled: bool
    auto_approve_low_risk: bool
    maintenance_enabled: bool
    maintenance_message: str

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "PlatformSettings":
        """Build normalized settings; out-of-range values are clamped, not rejected"""
        fee = document.get("platform_fee") or {}
        account = document.get("receiving_account") or {}
        features = document.get("features") or {}
        maintenance = document.get("maintenance") or {}

        percentage = _to_decimal(fee.get("percentage"), Config.DEFAULT_PLATFORM_FEE_PERCENTAGE)
        percentage = min(max(percentage, Decimal("0")), Decimal("100"))
        minimum = max(Decimal("0"), _whole_pesos(_to_decimal(fee.get("minimum_fee"), Config.DEFAULT_PLATFORM_MINIMUM_FEE)))
        maximum = max(minimum, _whole_pesos(_to_decimal(fee.get("maximum_fee"), Config.DEFAULT_PLATFORM_MAXIMUM_FEE)))

        return cls(
            fee_percentage=percentage,
            minimum_fee=minimum,
            maximum_fee=maximum,
            receiving_account_name=str(account.get("account_name") or "").strip(),
            receiving_account_number=str(account.get("account_number") or "").strip(),
            qr_code_url=str(account.get("qr_code_url") or "").strip(),
            payment_verification_enabled=bool(features.get("payment_verification_enabled", True)),
            auto_approve_low_risk=bool(features.get("auto_approve_low_risk", True)),
            maintenance_enabled=bool(maintenance.get("enabled", False)),
            maintenance_message=str(maintenance.get("message") or ""),
        )

    @property
    def receiving_account_display(self) -> str:
        return mask_account_number(self.receiving_account_number)

    def compute_platform_fee(self, contract_price: Decimal) -> Decimal:
        """Percentage of the price rounded to whole pesos, clamped to [minimum, maximum]"""
        price = _to_decimal(contract_price, Decimal("0"))
        if price <= 0:
            return Decimal("0")
        raw = _whole_pesos(price * self.fee_percentage / Decimal("100"))
        return min(max(raw, self.minimum_fee), self.maximum_fee)

    def is_maintenance_blocked(self, is_admin: bool) -> bool:
        return self.maintenance_enabled and not is_admin

    def to_document(self) -> Dict[str, Any]:
        return {
            "platform_fee": {
                "percentage": str(self.fee_percentage),
                "minimum_fee": str(self.minimum_fee),
                "maximum_fee": str(self.maximum_fee),
            },
            "receiving_account": {
                "account_name": self.receiving_account_name,
                "account_number": self.receiving_account_number,
                "qr_code_url": self.qr_code_url,
            },
            "features": {
                "payment_verification_enabled": self.payment_verification_enabled,
                "auto_approve_low_risk": self.auto_approve_low_risk,
            },
            "maintenance": {"enabled": self.maintenance_enabled, "message": self.maintenance_message},
        }


def validate_settings_patch(patch: Dict[str, Any]) -> None:
    """Reject unknown sections/fields and values of the wrong type"""
    if not isinstance(patch, dict) or not patch:
        raise InvalidArgumentError("Settings update must be a non-empty object")

    for section, fields in patch.items():
        schema = _SETTINGS_SCHEMA.get(section)
        if schema is None:
            raise InvalidArgumentError(f"Unknown settings section '{section}'")
        if not isinstance(fields, dict):
            raise InvalidArgumentError(f"Settings section '{section}' must be an object")

        for name, value in fields.items():
            expected = schema.get(name)
            if expected is None:
                raise InvalidArgumentError(f"Unknown setting '{section}.{name}'")
            if expected == "bool" and not isinstance(value, bool):
                raise InvalidArgumentError(f"Setting '{section}.{name}' must be a boolean")
            if expected == "text" and not isinstance(value, str):
                raise InvalidArgumentError(f"Setting '{section}.{name}' must be text")
            if expected == "number":
                if isinstance(value, bool):
                    raise InvalidArgumentError(f"Setting '{section}.{name}' must be a number")
                try:
                    number = Decimal(str(value))
                except (InvalidOperation, TypeError, ValueError):
                    raise InvalidArgumentError(f"Setting '{section}.{name}' must be a number")
                if not number.is_finite():
                    raise InvalidArgumentError(f"Setting '{section}.{name}' must be a finite number")


class PlatformSettingsService:
    """Cached access to the platform settings document"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        ttl: Optional[int] = None,
        cache: Optional[SimpleCache] = None,
    ):
        self.session_factory = session_factory
        self.ttl = Config.SETTINGS_CACHE_TTL_SECONDS if ttl is None else ttl
        self.cache = cache or SimpleCache(default_ttl=self.ttl)

    def _load_document(self, session: Session) -> Dict[str, Any]:
        document = default_settings_document()
        row = session.get(SystemConfig, SETTINGS_KEY)
        if row is not None and isinstance(row.value, dict):
            for section, fields in row.value.items():
                if isinstance(fields, dict):
                    document.setdefault(section, {}).update(fields)
        return document

    def _load(self) -> PlatformSettings:
        document = run_in_transaction(self._load_document, self.session_factory, operation="load_settings")
        return PlatformSettings.from_document(document)

    def get_settings(self) -> PlatformSettings:
        return self.cache.get_or_load(_CACHE_KEY, self._load, self.ttl)

    def invalidate(self) -> None:
        self.cache.delete(_CACHE_KEY)

    def update_settings(self, patch: Dict[str, Any], admin_id: str) -> PlatformSettings:
        """Merge ``patch`` into the stored document and refresh the cache"""
        validate_settings_patch(patch)

        def work(session: Session) -> PlatformSettings:
            merged = self._load_document(session)
            for section, fields in patch.items():
                merged[section].update(copy.deepcopy(fields))
            settings = PlatformSettings.from_document(merged)

            row = session.get(SystemConfig, SETTINGS_KEY)
            if row is None:
                row = SystemConfig(key=SETTINGS_KEY, description="Platform settings")
                session.add(row)
            row.value = settings.to_document()
            row.updated_by = admin_id
            row.updated_at = get_naive_utc_now()
            return settings

        settings = run_in_transaction(work, self.session_factory, operation="update_settings")
        self.invalidate()
        self.cache.set(_CACHE_KEY, settings, self.ttl)
        logger.info(f"⚙️ SETTINGS_UPDATED by {admin_id}: sections={sorted(patch.keys())}")
        return settings

    def compute_platform_fee(self, contract_price: Decimal) -> Decimal:
        return self.get_settings().compute_platform_fee(contract_price)

    def is_maintenance_blocked(self, is_admin: bool) -> bool:
        return self.get_settings().is_maintenance_blocked(is_admin)
