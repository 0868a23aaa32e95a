"""
Text Recognition Service
Google Cloud Vision ``images:annotate`` client (DOCUMENT_TEXT_DETECTION) over aiohttp
"""

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

import aiohttp

from config import Config

logger = logging.getLogger(__name__)


class TextRecognitionError(Exception):
    """Custom exception for text recognition failures"""
    pass


@dataclass
class RecognitionResult:
    text: str
    # Vision's own page confidence, 0-1; None when the API did not report one
    confidence: Optional[float]


def _page_confidence(annotation: Dict[str, Any]) -> Optional[float]:
    pages: List[Dict[str, Any]] = annotation.get("pages") or []
    confidences = [p["confidence"] for p in pages if isinstance(p.get("confidence"), (int, float))]
    if not confidences:
        blocks = [b for p in pages for b in (p.get("blocks") or [])]
        confidences = [b["confidence"] for b in blocks if isinstance(b.get("confidence"), (int, float))]
    if not confidences:
        return None
    return sum(confidences) / len(confidences)


def parse_annotate_response(payload: Dict[str, Any]) -> RecognitionResult:
    """Pull text and confidence out of an ``images:annotate`` response body"""
    responses = payload.get("responses") or []
    if not responses:
        raise TextRecognitionError("Vision response contained no results")

    first = responses[0]
    if first.get("error"):
        message = first["error"].get("message", "unknown error")
        raise TextRecognitionError(f"Vision API error: {message}")

    full = first.get("fullTextAnnotation")
    if full and full.get("text"):
        return RecognitionResult(text=full["text"], confidence=_page_confidence(full))

    annotations = first.get("textAnnotations") or []
    if annotations and annotations[0].get("description"):
        return RecognitionResult(text=annotations[0]["description"], confidence=None)

    return RecognitionResult(text="", confidence=None)


class TextRecognitionService:
    """Recognizes text on receipt images"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ):
        self.api_key = api_key if api_key is not None else Config.VISION_API_KEY
        self.api_url = api_url or Config.VISION_API_URL
        self.timeout_seconds = timeout_seconds or Config.VISION_TIMEOUT_SECONDS

    def _build_request(self, image_bytes: bytes) -> Dict[str, Any]:
        return {
            "requests": [{
                "image": {"content": base64.b64encode(image_bytes).decode("ascii")},
                "features": [{"type": "DOCUMENT_TEXT_DETECTION"}],
                "imageContext": {"languageHints": Config.VISION_LANGUAGE_HINTS},
            }]
        }

    async def recognize(self, image_bytes: bytes) -> RecognitionResult:
        if not self.api_key:
            raise TextRecognitionError("VISION_API_KEY is not configured")

        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    self.api_url,
                    params={"key": self.api_key},
                    json=self._build_request(image_bytes),
                ) as response:
                    if response.status == 429:
                        raise TextRecognitionError("Vision API rate-limited")
                    if response.status in (401, 403):
                        raise TextRecognitionError("Vision API key rejected")
                    if response.status != 200:
                        body = await response.text()
                        raise TextRecognitionError(f"Vision API HTTP {response.status}: {body[:200]}")
                    payload = await response.json()
        except asyncio.TimeoutError as e:
            raise TextRecognitionError(f"Vision API timed out after {self.timeout_seconds}s") from e
        except aiohttp.ClientError as e:
            raise TextRecognitionError(f"Vision API connection error: {e}") from e

        result = parse_annotate_response(payload)
        logger.info(
            f"📝 OCR: recognized {len(result.text)} chars "
            f"(confidence={result.confidence if result.confidence is not None else 'n/a'})"
        )
        return result
