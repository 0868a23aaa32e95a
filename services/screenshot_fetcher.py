"""Downloads receipt screenshots from the trusted blob store"""

import asyncio
import logging
from typing import Optional

import aiohttp

from config import Config
from utils.storage_url import check_screenshot_url

logger = logging.getLogger(__name__)


class ImageFetchError(Exception):
    """Raised when a screenshot cannot be downloaded"""
    pass


class ScreenshotFetcher:
    """Fetches screenshot bytes; never follows redirects off the trusted host"""

    def __init__(self, timeout_seconds: Optional[int] = None, max_bytes: Optional[int] = None):
        self.timeout_seconds = timeout_seconds or Config.IMAGE_FETCH_TIMEOUT_SECONDS
        self.max_bytes = max_bytes or Config.MAX_SCREENSHOT_BYTES

    async def fetch(self, url: str, account_id: str) -> bytes:
        check = check_screenshot_url(url, account_id)
        if not check.valid:
            raise ImageFetchError(f"Refusing to fetch untrusted URL: {check.reason}")

        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, allow_redirects=False) as response:
                    if response.status != 200:
                        raise ImageFetchError(f"Screenshot download failed: HTTP {response.status}")
                    if response.content_length and response.content_length > self.max_bytes:
                        raise ImageFetchError(f"Screenshot too large: {response.content_length} bytes")

                    chunks = []
                    received = 0
                    async for chunk in response.content.iter_chunked(64 * 1024):
                        received += len(chunk)
                        if received > self.max_bytes:
                            raise ImageFetchError(f"Screenshot exceeds {self.max_bytes} bytes")
                        chunks.append(chunk)
        except asyncio.TimeoutError as e:
            raise ImageFetchError(f"Screenshot download timed out after {self.timeout_seconds}s") from e
        except aiohttp.ClientError as e:
            raise ImageFetchError(f"Screenshot download error: {e}") from e

        data = b"".join(chunks)
        logger.debug(f"📥 FETCH: {len(data)} bytes for account {account_id}")
        return data
