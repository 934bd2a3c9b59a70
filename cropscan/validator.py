"""
Image validation - access, size, format, geometry.

All pre-analysis checks in a single module. Ensures images are
acceptable before any network call or storage write happens.

Checks short-circuit in a fixed order and the first failing one is
reported:
1. Content reachable
2. Byte length (too large, then empty)
3. Declared MIME type
4. Bounds-only decode (header, no pixel data)
5. Dimensions (too small, then too large)
6. Aspect ratio
"""

import asyncio
import logging
from typing import BinaryIO

from PIL import Image, UnidentifiedImageError

from cropscan.config import UNDETERMINED
from cropscan.content import ContentSource
from cropscan.models import (
    DEFAULT_CONSTRAINTS,
    ImageConstraints,
    ImageInfo,
    ValidationErrorKind,
    ValidationFailure,
    ValidationResult,
    ValidationSuccess,
)

logger = logging.getLogger("cropscan.validator")


class ImageDecodeError(Exception):
    """Header could not be parsed into dimensions."""


class ImageDimensionsExceededError(Exception):
    """Header declares more pixels than the decoder is willing to open."""


def probe_dimensions(stream: BinaryIO) -> tuple[int, int]:
    """
    Reads width and height from the image header.

    Image.open is lazy: it parses the header and stops. Pixel data is
    never loaded because load() is never called.

    Raises:
        ImageDecodeError: Not a decodable image.
        ImageDimensionsExceededError: Header exceeds Pillow's pixel limit.
    """
    try:
        with Image.open(stream) as img:
            return img.size
    except Image.DecompressionBombError as e:
        raise ImageDimensionsExceededError(str(e)) from e
    except (UnidentifiedImageError, SyntaxError, ValueError, EOFError) as e:
        raise ImageDecodeError(str(e) or "unrecognized image data") from e


def _fail(kind: ValidationErrorKind) -> ValidationFailure:
    return ValidationFailure(error=kind)


class ImageValidator:
    """
    Applies ImageConstraints to content references.

    Stateless apart from its policy and source, so one instance can
    serve any number of concurrent callers.
    """

    def __init__(self, source: ContentSource, constraints: ImageConstraints = DEFAULT_CONSTRAINTS):
        self.source = source
        self.constraints = constraints

    # --- Public API ---

    async def validate_image(self, ref: str) -> ValidationResult:
        """Full validation including the bounds-only decode."""
        return await asyncio.to_thread(self._validate, ref, True)

    async def quick_validate_image(self, ref: str) -> ValidationResult:
        """Access, size and MIME checks only. Geometry comes back as -1."""
        return await asyncio.to_thread(self._validate, ref, False)

    async def is_image_suitable_for_analysis(self, ref: str) -> bool:
        """
        Stricter gate for expensive analysis: a valid image of at least
        224x224 that is under half the hard size limit.
        """
        result = await self.validate_image(ref)
        if not result.is_success:
            return False
        return self.is_info_suitable_for_analysis(result.image_info)

    def is_info_suitable_for_analysis(self, info: ImageInfo) -> bool:
        c = self.constraints
        return (
            info.width >= c.analysis_min_dimension
            and info.height >= c.analysis_min_dimension
            and info.file_size < c.analysis_max_file_size_bytes
        )

    # --- Internal ---

    def _validate(self, ref: str, decode: bool) -> ValidationResult:
        try:
            result = self._run_checks(ref, decode)
        except PermissionError:
            result = _fail(ValidationErrorKind.PERMISSION_DENIED)
        except OSError:
            result = _fail(ValidationErrorKind.IO_ERROR)
        except Exception:
            logger.exception("Unexpected failure validating %s", ref)
            result = _fail(ValidationErrorKind.UNKNOWN_ERROR)

        if not result.is_success:
            logger.debug("Rejected %s: %s", ref, result.error.name)
        return result

    def _run_checks(self, ref: str, decode: bool) -> ValidationResult:
        c = self.constraints

        try:
            stream = self.source.open(ref)
        except FileNotFoundError:
            return _fail(ValidationErrorKind.INVALID_URI)

        with stream:
            file_size = self.source.size(ref)
            if file_size > c.max_file_size_bytes:
                return _fail(ValidationErrorKind.FILE_TOO_LARGE)
            if file_size == 0:
                return _fail(ValidationErrorKind.EMPTY_FILE)

            mime_type = self.source.mime_type(ref)
            if not c.is_supported(mime_type):
                return _fail(ValidationErrorKind.UNSUPPORTED_FORMAT)

            if not decode:
                return ValidationSuccess(image_info=ImageInfo(
                    width=UNDETERMINED,
                    height=UNDETERMINED,
                    file_size=file_size,
                    mime_type=mime_type,
                    aspect_ratio=float(UNDETERMINED),
                ))

            try:
                width, height = probe_dimensions(stream)
            except ImageDecodeError:
                return _fail(ValidationErrorKind.CORRUPTED_IMAGE)
            except ImageDimensionsExceededError:
                return _fail(ValidationErrorKind.IMAGE_TOO_LARGE)

        if width <= 0 or height <= 0:
            return _fail(ValidationErrorKind.CORRUPTED_IMAGE)
        if c.is_too_small(width, height):
            return _fail(ValidationErrorKind.IMAGE_TOO_SMALL)
        if c.is_too_large(width, height):
            return _fail(ValidationErrorKind.IMAGE_TOO_LARGE)

        aspect_ratio = width / height
        if not c.is_aspect_ratio_allowed(aspect_ratio):
            return _fail(ValidationErrorKind.INVALID_ASPECT_RATIO)

        return ValidationSuccess(image_info=ImageInfo(
            width=width,
            height=height,
            file_size=file_size,
            mime_type=mime_type,
            aspect_ratio=aspect_ratio,
        ))
