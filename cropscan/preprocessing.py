"""
Upload preprocessing - shrinks images before they go to the analysis service.

Images larger than UPLOAD_MAX_DIMENSION on either side are downscaled with
their aspect ratio kept and re-encoded in their own format. Images already
inside the box are sent untouched.
"""

import hashlib
import io
import logging
import threading
from collections import OrderedDict

from PIL import Image, ImageOps

from cropscan.config import (
    UPLOAD_MAX_DIMENSION,
    UPLOAD_JPEG_QUALITY,
    PREPROCESS_CACHE_SIZE,
)
from cropscan.models import AnalysisError

logger = logging.getLogger("cropscan.preprocessing")

_PIL_FORMATS = {"image/jpeg": "JPEG", "image/jpg": "JPEG", "image/png": "PNG"}


def preprocess_for_analysis(
    image_bytes: bytes,
    mime_type: str,
    max_dimension: int = UPLOAD_MAX_DIMENSION,
    jpeg_quality: int = UPLOAD_JPEG_QUALITY,
) -> bytes:
    """
    Fits an image inside max_dimension x max_dimension.

    Pipeline:
    1. Decode header, return input as-is if it already fits
    2. Apply EXIF orientation
    3. Thumbnail (aspect ratio kept, LANCZOS)
    4. Re-encode in the declared format

    Raises:
        AnalysisError: If the image cannot be decoded or re-encoded.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            if img.width <= max_dimension and img.height <= max_dimension:
                return image_bytes

            fmt = _PIL_FORMATS.get(mime_type.lower(), img.format or "JPEG")
            original_size = img.size
            resized = ImageOps.exif_transpose(img)
            resized.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

            buf = io.BytesIO()
            if fmt == "JPEG":
                if resized.mode not in ("RGB", "L"):
                    resized = resized.convert("RGB")
                resized.save(buf, format="JPEG", quality=jpeg_quality, optimize=True)
            else:
                resized.save(buf, format=fmt, optimize=True)
    except (OSError, ValueError, SyntaxError) as e:
        raise AnalysisError(f"Image could not be prepared for analysis: {e}") from e

    logger.debug(
        "Downscaled %dx%d -> %dx%d (%d -> %d bytes)",
        *original_size, *resized.size, len(image_bytes), buf.tell(),
    )
    return buf.getvalue()


class ImagePreprocessor:
    """preprocess_for_analysis with a small LRU of prepared uploads. Thread-safe."""

    def __init__(
        self,
        max_dimension: int = UPLOAD_MAX_DIMENSION,
        jpeg_quality: int = UPLOAD_JPEG_QUALITY,
        cache_size: int = PREPROCESS_CACHE_SIZE,
    ):
        self.max_dimension = max_dimension
        self.jpeg_quality = jpeg_quality
        self.cache_size = cache_size
        self._cache: OrderedDict[str, bytes] = OrderedDict()
        self._lock = threading.Lock()

    def prepare(self, image_bytes: bytes, mime_type: str) -> bytes:
        key = f"{mime_type.lower()}:{hashlib.sha256(image_bytes).hexdigest()}"

        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
                return cached

        prepared = preprocess_for_analysis(image_bytes, mime_type, self.max_dimension, self.jpeg_quality)

        with self._lock:
            self._cache[key] = prepared
            self._cache.move_to_end(key)
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
        return prepared

    def cached_count(self) -> int:
        with self._lock:
            return len(self._cache)
