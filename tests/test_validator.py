"""
Unit tests for validator module
"""
import io
from unittest.mock import patch

import pytest

from cropscan.config import MAX_FILE_SIZE_BYTES, ANALYSIS_MAX_FILE_SIZE_BYTES
from cropscan.content import InMemorySource
from cropscan.models import (
    ImageConstraints,
    ValidationErrorKind,
    ValidationFailure,
    ValidationSuccess,
)
from cropscan.validator import (
    ImageDecodeError,
    ImageValidator,
    probe_dimensions,
)
from conftest import make_image_bytes, pad_to


# ============================================================================
# HELPERS
# ============================================================================

async def validate(validator, source, data, mime="image/jpeg", ref="img"):
    source.add(ref, data, mime)
    return await validator.validate_image(ref)


class RaisingSource:
    """Content source whose calls fail with a chosen exception."""

    def __init__(self, on_open=None, on_size=None):
        self.on_open = on_open
        self.on_size = on_size

    def open(self, ref):
        if self.on_open:
            raise self.on_open
        return io.BytesIO(make_image_bytes(200, 200))

    def size(self, ref):
        if self.on_size:
            raise self.on_size
        return 1000

    def mime_type(self, ref):
        return "image/jpeg"


# ============================================================================
# SUCCESS
# ============================================================================

class TestValidImages:

    @pytest.mark.asyncio
    async def test_valid_jpeg(self, validator, source, valid_jpeg):
        result = await validate(validator, source, valid_jpeg)

        assert isinstance(result, ValidationSuccess)
        assert result.is_success is True
        assert result.error is None
        assert result.message is None
        info = result.image_info
        assert (info.width, info.height) == (512, 512)
        assert info.file_size == len(valid_jpeg)
        assert info.mime_type == "image/jpeg"
        assert info.aspect_ratio == 1.0

    @pytest.mark.asyncio
    async def test_valid_png(self, validator, source, valid_png):
        result = await validate(validator, source, valid_png, mime="image/png")
        assert result.is_success
        assert result.image_info.mime_type == "image/png"

    @pytest.mark.asyncio
    async def test_image_jpg_alias_accepted(self, validator, source, valid_jpeg):
        result = await validate(validator, source, valid_jpeg, mime="image/jpg")
        assert result.is_success

    @pytest.mark.asyncio
    async def test_aspect_ratio_is_width_over_height(self, validator, source):
        data = make_image_bytes(300, 200)
        result = await validate(validator, source, data)
        assert result.image_info.aspect_ratio == 300 / 200
        assert result.image_info.dimensions == "300x200"

    @pytest.mark.asyncio
    async def test_input_is_not_modified(self, validator, source, valid_jpeg):
        await validate(validator, source, valid_jpeg)
        assert source.mime_type("img") == "image/jpeg"
        assert source.open("img").read() == valid_jpeg


# ============================================================================
# FILE SIZE
# ============================================================================

class TestFileSize:

    @pytest.mark.asyncio
    async def test_exactly_max_size_accepted(self, validator, source):
        data = pad_to(make_image_bytes(200, 200), MAX_FILE_SIZE_BYTES)
        result = await validate(validator, source, data)
        assert result.is_success
        assert result.image_info.file_size == MAX_FILE_SIZE_BYTES

    @pytest.mark.asyncio
    async def test_one_byte_over_rejected(self, validator, source):
        data = pad_to(make_image_bytes(200, 200), MAX_FILE_SIZE_BYTES + 1)
        result = await validate(validator, source, data)
        assert result.error == ValidationErrorKind.FILE_TOO_LARGE

    @pytest.mark.asyncio
    async def test_empty_file(self, validator, source):
        result = await validate(validator, source, b"")
        assert result.error == ValidationErrorKind.EMPTY_FILE

    @pytest.mark.asyncio
    async def test_size_checked_before_format(self, validator, source):
        """Too large and wrong format reports the size problem."""
        data = b"x" * (MAX_FILE_SIZE_BYTES + 1)
        result = await validate(validator, source, data, mime="image/gif")
        assert result.error == ValidationErrorKind.FILE_TOO_LARGE

    @pytest.mark.asyncio
    async def test_empty_checked_before_format(self, validator, source):
        result = await validate(validator, source, b"", mime=None)
        assert result.error == ValidationErrorKind.EMPTY_FILE


# ============================================================================
# FORMAT
# ============================================================================

class TestFormat:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mime", ["image/gif", "image/webp", "application/pdf", None])
    async def test_unsupported_mime(self, validator, source, valid_jpeg, mime):
        result = await validate(validator, source, valid_jpeg, mime=mime)
        assert isinstance(result, ValidationFailure)
        assert result.error == ValidationErrorKind.UNSUPPORTED_FORMAT

    @pytest.mark.asyncio
    async def test_format_checked_before_decode(self, validator, source):
        """Undecodable bytes with a bad MIME type report the MIME type."""
        result = await validate(validator, source, b"garbage", mime="text/plain")
        assert result.error == ValidationErrorKind.UNSUPPORTED_FORMAT

    @pytest.mark.asyncio
    async def test_corrupted_data(self, validator, source):
        result = await validate(validator, source, b"not an image at all")
        assert result.error == ValidationErrorKind.CORRUPTED_IMAGE
        assert result.message == "Image file is corrupted or cannot be decoded"

    @pytest.mark.asyncio
    async def test_non_positive_dimensions_are_corrupted(self, validator, source, valid_jpeg):
        with patch("cropscan.validator.probe_dimensions", return_value=(0, 512)):
            result = await validate(validator, source, valid_jpeg)
        assert result.error == ValidationErrorKind.CORRUPTED_IMAGE


# ============================================================================
# DIMENSIONS
# ============================================================================

class TestDimensions:

    @pytest.mark.asyncio
    async def test_one_pixel_below_minimum(self, validator, source):
        result = await validate(validator, source, make_image_bytes(99, 100))
        assert result.error == ValidationErrorKind.IMAGE_TOO_SMALL

    @pytest.mark.asyncio
    async def test_height_below_minimum(self, validator, source):
        result = await validate(validator, source, make_image_bytes(100, 99))
        assert result.error == ValidationErrorKind.IMAGE_TOO_SMALL

    @pytest.mark.asyncio
    async def test_minimum_accepted(self, validator, source):
        result = await validate(validator, source, make_image_bytes(100, 100))
        assert result.is_success
        assert result.image_info.dimensions == "100x100"

    @pytest.mark.asyncio
    async def test_maximum_accepted(self, validator, source):
        data = make_image_bytes(4096, 4096, "PNG", mode="1")
        result = await validate(validator, source, data, mime="image/png")
        assert result.is_success

    @pytest.mark.asyncio
    async def test_one_pixel_above_maximum(self, validator, source):
        data = make_image_bytes(4097, 4096, "PNG", mode="1")
        result = await validate(validator, source, data, mime="image/png")
        assert result.error == ValidationErrorKind.IMAGE_TOO_LARGE

    @pytest.mark.asyncio
    async def test_small_checked_before_aspect_ratio(self, validator, source):
        """50x400 is both too small and 1:8; size wins."""
        result = await validate(validator, source, make_image_bytes(50, 400))
        assert result.error == ValidationErrorKind.IMAGE_TOO_SMALL


# ============================================================================
# ASPECT RATIO
# ============================================================================

class TestAspectRatio:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("width,height,ok", [
        (120, 500, False),   # 0.24
        (100, 400, True),    # 0.25
        (400, 100, True),    # 4.0
        (401, 100, False),   # 4.01
    ])
    async def test_bounds(self, validator, source, width, height, ok):
        result = await validate(validator, source, make_image_bytes(width, height))
        if ok:
            assert result.is_success
            assert result.image_info.aspect_ratio == width / height
        else:
            assert result.error == ValidationErrorKind.INVALID_ASPECT_RATIO


# ============================================================================
# ACCESS FAILURES
# ============================================================================

class TestAccessFailures:

    @pytest.mark.asyncio
    async def test_unknown_reference(self, validator):
        result = await validator.validate_image("missing")
        assert result.error == ValidationErrorKind.INVALID_URI

    @pytest.mark.asyncio
    async def test_permission_denied(self):
        validator = ImageValidator(RaisingSource(on_open=PermissionError("denied")))
        result = await validator.validate_image("x")
        assert result.error == ValidationErrorKind.PERMISSION_DENIED

    @pytest.mark.asyncio
    async def test_io_error(self):
        validator = ImageValidator(RaisingSource(on_size=OSError("disk failure")))
        result = await validator.validate_image("x")
        assert result.error == ValidationErrorKind.IO_ERROR

    @pytest.mark.asyncio
    async def test_unexpected_error(self):
        validator = ImageValidator(RaisingSource(on_size=RuntimeError("boom")))
        result = await validator.validate_image("x")
        assert result.error == ValidationErrorKind.UNKNOWN_ERROR
        assert result.image_info is None


# ============================================================================
# QUICK VALIDATION
# ============================================================================

class TestQuickValidation:

    @pytest.mark.asyncio
    async def test_success_has_sentinel_geometry(self, validator, source, valid_jpeg):
        source.add("img", valid_jpeg, "image/jpeg")
        result = await validator.quick_validate_image("img")

        assert result.is_success
        info = result.image_info
        assert info.width == -1
        assert info.height == -1
        assert info.aspect_ratio == -1
        assert info.file_size == len(valid_jpeg)
        assert info.is_probed is False

    @pytest.mark.asyncio
    async def test_never_decodes(self, validator, source):
        source.add("img", b"undecodable", "image/png")
        with patch("cropscan.validator.probe_dimensions") as read_header:
            result = await validator.quick_validate_image("img")
        read_header.assert_not_called()
        assert result.is_success

    @pytest.mark.asyncio
    async def test_rejects_format_and_size(self, validator, source, valid_jpeg):
        source.add("gif", valid_jpeg, "image/gif")
        source.add("empty", b"", "image/jpeg")
        source.add("huge", b"x" * (MAX_FILE_SIZE_BYTES + 1), "image/jpeg")

        assert (await validator.quick_validate_image("gif")).error == ValidationErrorKind.UNSUPPORTED_FORMAT
        assert (await validator.quick_validate_image("empty")).error == ValidationErrorKind.EMPTY_FILE
        assert (await validator.quick_validate_image("huge")).error == ValidationErrorKind.FILE_TOO_LARGE
        assert (await validator.quick_validate_image("nope")).error == ValidationErrorKind.INVALID_URI

    @pytest.mark.asyncio
    async def test_geometry_not_checked(self, validator, source):
        source.add("tiny", make_image_bytes(10, 10), "image/jpeg")
        result = await validator.quick_validate_image("tiny")
        assert result.is_success


# ============================================================================
# ANALYSIS SUITABILITY
# ============================================================================

class TestSuitability:

    @pytest.mark.asyncio
    async def test_valid_large_image_is_suitable(self, validator, source, valid_jpeg):
        source.add("img", valid_jpeg, "image/jpeg")
        assert await validator.is_image_suitable_for_analysis("img") is True

    @pytest.mark.asyncio
    async def test_valid_small_image_is_not_suitable(self, validator, source):
        source.add("img", make_image_bytes(100, 100), "image/jpeg")
        assert (await validator.validate_image("img")).is_success
        assert await validator.is_image_suitable_for_analysis("img") is False

    @pytest.mark.asyncio
    async def test_invalid_image_is_never_suitable(self, validator, source):
        source.add("img", b"not an image", "image/jpeg")
        assert await validator.is_image_suitable_for_analysis("img") is False
        assert await validator.is_image_suitable_for_analysis("missing") is False

    @pytest.mark.asyncio
    async def test_just_below_224_is_not_suitable(self, validator, source):
        source.add("img", make_image_bytes(223, 300), "image/jpeg")
        assert await validator.is_image_suitable_for_analysis("img") is False

    @pytest.mark.asyncio
    async def test_file_size_must_be_strictly_below_half_limit(self, validator, source):
        base = make_image_bytes(512, 512)
        source.add("at", pad_to(base, ANALYSIS_MAX_FILE_SIZE_BYTES), "image/jpeg")
        source.add("below", pad_to(base, ANALYSIS_MAX_FILE_SIZE_BYTES - 1), "image/jpeg")

        assert await validator.is_image_suitable_for_analysis("at") is False
        assert await validator.is_image_suitable_for_analysis("below") is True


# ============================================================================
# PROBE & CONSTRAINTS
# ============================================================================

class TestProbe:

    def test_reads_dimensions_from_header(self):
        data = make_image_bytes(321, 123, "PNG")
        assert probe_dimensions(io.BytesIO(data)) == (321, 123)

    def test_trailing_bytes_do_not_matter(self):
        data = pad_to(make_image_bytes(640, 480, "JPEG"), 200_000)
        assert probe_dimensions(io.BytesIO(data)) == (640, 480)

    def test_garbage_raises_decode_error(self):
        with pytest.raises(ImageDecodeError):
            probe_dimensions(io.BytesIO(b"\x00\x01\x02garbage"))


class TestCustomConstraints:

    @pytest.mark.asyncio
    async def test_validator_honours_injected_policy(self, valid_jpeg):
        source = InMemorySource()
        source.add("img", valid_jpeg, "image/jpeg")
        strict = ImageValidator(source, ImageConstraints(min_width=600, min_height=600))

        result = await strict.validate_image("img")
        assert result.error == ValidationErrorKind.IMAGE_TOO_SMALL
