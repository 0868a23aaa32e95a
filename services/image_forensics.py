"""
Image Forensics for receipt screenshots

Computes an 8x8 average perceptual hash, basic image metadata and two heuristic
signals: "likely screenshot" (expected for genuine mobile receipts) and "possible
manipulation" (no capture metadata on an image that is not screen-sized).
"""

import io
import logging
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from config import Config

logger = logging.getLogger(__name__)

HASH_GRID_SIZE = 8
HASH_BITS = HASH_GRID_SIZE * HASH_GRID_SIZE
HASH_HEX_LENGTH = HASH_BITS // 4

# Common phone screen resolutions (portrait), matched with a small tolerance
SCREEN_WIDTHS = (720, 750, 828, 1080, 1125, 1170, 1242, 1284, 1440)
SCREEN_HEIGHTS = (1280, 1334, 1792, 1920, 2340, 2436, 2532, 2688, 2560)
SCREEN_TOLERANCE_PX = 10


class ImageForensicsError(Exception):
    """Raised when image bytes cannot be decoded"""
    pass


@dataclass
class ForensicsResult:
    """Forensic signature of one screenshot"""
    image_hash: str
    width: int
    height: int
    format: Optional[str]
    mode: Optional[str]
    has_alpha: bool
    has_exif: bool
    exif_tag_count: int
    likely_screenshot: bool
    suspicious_dimensions: bool
    possible_manipulation: bool
    byte_size: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ForensicsResult"]:
        if not data:
            return None
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class HashComparison:
    distance: int
    similarity: float
    is_duplicate: bool
    is_similar: bool


def compute_average_hash(image: Image.Image) -> str:
    """
    Average hash: shrink to 8x8, greyscale, one bit per pixel (pixel > mean),
    packed row-major into 16 hex characters.
    """
    grid = image.convert("L").resize((HASH_GRID_SIZE, HASH_GRID_SIZE), Image.Resampling.LANCZOS)
    pixels = np.asarray(grid, dtype=np.float64)
    bits = (pixels > pixels.mean()).flatten()
    value = 0
    for bit in bits:
        value = (value << 1) | int(bit)
    return f"{value:0{HASH_HEX_LENGTH}x}"


def hamming_distance(hash_a: str, hash_b: str) -> int:
    """Number of differing bits between two hex hashes of equal width"""
    if len(hash_a) != len(hash_b):
        raise ValueError(f"Hash width mismatch: {len(hash_a)} vs {len(hash_b)}")
    return bin(int(hash_a, 16) ^ int(hash_b, 16)).count("1")


def hash_similarity(hash_a: str, hash_b: str) -> float:
    """1.0 for identical hashes, 0.0 for fully inverted ones"""
    return 1 - hamming_distance(hash_a, hash_b) / HASH_BITS


def compare_hashes(
    hash_a: str,
    hash_b: str,
    similar_threshold: Optional[float] = None,
    duplicate_threshold: Optional[float] = None,
) -> HashComparison:
    similar_threshold = Config.SIMILAR_HASH_THRESHOLD if similar_threshold is None else similar_threshold
    duplicate_threshold = Config.DUPLICATE_HASH_THRESHOLD if duplicate_threshold is None else duplicate_threshold

    distance = hamming_distance(hash_a, hash_b)
    similarity = 1 - distance / HASH_BITS
    is_duplicate = similarity >= duplicate_threshold
    return HashComparison(
        distance=distance,
        similarity=similarity,
        is_duplicate=is_duplicate,
        is_similar=not is_duplicate and similarity >= similar_threshold,
    )


def _near(value: int, candidates: Tuple[int, ...]) -> bool:
    return any(abs(value - c) <= SCREEN_TOLERANCE_PX for c in candidates)


def is_screen_sized(width: int, height: int) -> bool:
    """Width or height close to a known phone screen dimension (either orientation)"""
    portrait_w, portrait_h = min(width, height), max(width, height)
    return _near(portrait_w, SCREEN_WIDTHS) or _near(portrait_h, SCREEN_HEIGHTS)


def has_suspicious_dimensions(width: int, height: int) -> bool:
    return (
        width < Config.MIN_IMAGE_WIDTH
        or height < Config.MIN_IMAGE_HEIGHT
        or width > Config.MAX_IMAGE_WIDTH
        or height > Config.MAX_IMAGE_HEIGHT
    )


def analyze_image(image_bytes: bytes) -> ForensicsResult:
    """Decode image bytes and compute the forensic signature"""
    if not image_bytes:
        raise ImageForensicsError("Empty image payload")

    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ImageForensicsError(f"Unreadable image: {e}") from e

    width, height = image.size
    image_format = image.format
    mode = image.mode or ""
    has_alpha = "A" in mode or "transparency" in image.info

    exif = image.getexif()
    exif_tag_count = len(exif) if exif else 0
    has_exif = exif_tag_count > 0

    screen_sized = is_screen_sized(width, height)
    likely_screenshot = screen_sized or (image_format == "PNG" and not has_exif)
    suspicious = has_suspicious_dimensions(width, height)
    possible_manipulation = not has_exif and not screen_sized

    result = ForensicsResult(
        image_hash=compute_average_hash(image),
        width=width,
        height=height,
        format=image_format,
        mode=mode or None,
        has_alpha=has_alpha,
        has_exif=has_exif,
        exif_tag_count=exif_tag_count,
        likely_screenshot=likely_screenshot,
        suspicious_dimensions=suspicious,
        possible_manipulation=possible_manipulation,
        byte_size=len(image_bytes),
    )

    logger.debug(
        f"🖼️ FORENSICS: {width}x{height} {image_format} hash={result.image_hash} "
        f"screenshot={likely_screenshot} suspicious={suspicious} manipulation={possible_manipulation}"
    )
    return result
