"""
Bearer Token Verification
HMAC-signed tokens of the form ``<account_id>.<expiry>.<role>.<signature>`` shared with
the identity provider. Signature = HMAC-SHA256 over ``account_id.expiry.role``.
"""

import hmac
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Optional

from config import Config

logger = logging.getLogger(__name__)

ROLE_USER = "user"
ROLE_ADMIN = "admin"
VALID_ROLES = (ROLE_USER, ROLE_ADMIN)


class InvalidTokenError(Exception):
    """Raised when a bearer token is malformed, expired or badly signed"""
    pass


@dataclass(frozen=True)
class AuthenticatedCaller:
    account_id: str
    role: str
    expires_at: int

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


class AuthTokenSecurity:
    """Issue and verify signed bearer tokens"""

    @classmethod
    def _get_secret_key(cls, secret: Optional[str] = None) -> bytes:
        secret = secret or Config.AUTH_TOKEN_SECRET
        if not secret:
            if Config.IS_PRODUCTION:
                raise ValueError("AUTH_TOKEN_SECRET must be set in production")
            secret = "dev_fallback_auth_token_secret_32chars"
            logger.warning("⚠️ Using development fallback for AUTH_TOKEN_SECRET")
        return secret.encode("utf-8")

    @classmethod
    def _sign(cls, message: str, secret: Optional[str] = None) -> str:
        return hmac.new(cls._get_secret_key(secret), message.encode("utf-8"), hashlib.sha256).hexdigest()

    @classmethod
    def issue_token(
        cls,
        account_id: str,
        role: str = ROLE_USER,
        ttl_seconds: Optional[int] = None,
        secret: Optional[str] = None,
        now: Optional[float] = None,
    ) -> str:
        if not account_id or "." in account_id:
            raise ValueError("account_id must be non-empty and must not contain '.'")
        if role not in VALID_ROLES:
            raise ValueError(f"Unknown role '{role}'")
        ttl = Config.AUTH_TOKEN_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        expiry = int((time.time() if now is None else now) + ttl)
        message = f"{account_id}.{expiry}.{role}"
        return f"{message}.{cls._sign(message, secret)}"

    @classmethod
    def verify_token(cls, token: str, secret: Optional[str] = None, now: Optional[float] = None) -> AuthenticatedCaller:
        parts = (token or "").strip().split(".")
        if len(parts) != 4:
            raise InvalidTokenError("Malformed token")

        account_id, expiry_raw, role, signature = parts
        if not account_id or role not in VALID_ROLES:
            raise InvalidTokenError("Malformed token")
        try:
            expiry = int(expiry_raw)
        except ValueError:
            raise InvalidTokenError("Malformed token expiry")

        expected = cls._sign(f"{account_id}.{expiry_raw}.{role}", secret)
        if not hmac.compare_digest(expected, signature):
            logger.warning(f"🔒 AUTH: invalid token signature for account {account_id}")
            raise InvalidTokenError("Invalid token signature")

        if expiry <= (time.time() if now is None else now):
            raise InvalidTokenError("Token expired")

        return AuthenticatedCaller(account_id=account_id, role=role, expires_at=expiry)
