"""
Trusted screenshot URL validation

Screenshots may only be fetched from the platform's own blob-store hosts, over
https, and only from the submitting account's own ``/payments/{account_id}/`` path.
Everything is checked before any network request is attempted.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Iterable
from urllib.parse import urlsplit, unquote

from config import Config

logger = logging.getLogger(__name__)


@dataclass
class UrlCheck:
    valid: bool
    reason: Optional[str] = None


def check_screenshot_url(
    url: Optional[str],
    account_id: str,
    trusted_hosts: Optional[Iterable[str]] = None,
    max_length: Optional[int] = None,
) -> UrlCheck:
    """Validate that a screenshot URL is trusted and owned by ``account_id``"""
    hosts = {h.lower() for h in (trusted_hosts or Config.TRUSTED_STORAGE_HOSTS)}
    limit = max_length or Config.MAX_SCREENSHOT_URL_LENGTH

    if not url or not isinstance(url, str):
        return UrlCheck(False, "Screenshot URL is required")
    if len(url) > limit:
        return UrlCheck(False, "Screenshot URL is too long")
    if not account_id:
        return UrlCheck(False, "Account id is required")

    try:
        parts = urlsplit(url)
    except ValueError:
        return UrlCheck(False, "Screenshot URL is malformed")

    if parts.scheme != "https":
        return UrlCheck(False, "Screenshot URL must use https")
    if parts.username or parts.password:
        return UrlCheck(False, "Screenshot URL must not carry credentials")
    try:
        port = parts.port
    except ValueError:
        return UrlCheck(False, "Screenshot URL is malformed")
    if port not in (None, 443):
        return UrlCheck(False, "Screenshot URL must use the default https port")
    if (parts.hostname or "").lower() not in hosts:
        return UrlCheck(False, "Screenshot URL host is not trusted")

    # Storage object names arrive percent-encoded ("payments%2Fuid%2Ffile.jpg")
    decoded = unquote(parts.path) + ("?" + unquote(parts.query) if parts.query else "")
    if "/../" in decoded or decoded.endswith("/.."):
        return UrlCheck(False, "Screenshot URL path is not allowed")
    if "/payments/" not in decoded:
        return UrlCheck(False, "Screenshot must be stored under the payments folder")
    if f"/payments/{account_id}/" not in decoded:
        return UrlCheck(False, "Screenshot does not belong to this account")

    return UrlCheck(True)


def is_trusted_screenshot_url(url: Optional[str], account_id: str) -> bool:
    result = check_screenshot_url(url, account_id)
    if not result.valid:
        logger.warning(f"🚫 UNTRUSTED_URL: account={account_id} reason={result.reason}")
    return result.valid
