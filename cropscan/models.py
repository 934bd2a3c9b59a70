"""
Domain models for the crop scan pipeline.

All Pydantic models in one place. Imported by validator, analysis,
storage, store, and repository modules. Single source of truth for
data contracts.
"""

import threading
import time
import uuid
from enum import Enum
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cropscan.config import (
    SUPPORTED_MIME_TYPES,
    MIN_WIDTH,
    MIN_HEIGHT,
    MAX_WIDTH,
    MAX_HEIGHT,
    MAX_FILE_SIZE_BYTES,
    MIN_ASPECT_RATIO,
    MAX_ASPECT_RATIO,
    ANALYSIS_MIN_DIMENSION,
    ANALYSIS_MAX_FILE_SIZE_BYTES,
    SEVERITY_HIGH_CONFIDENCE,
    SEVERITY_MEDIUM_CONFIDENCE,
    UNDETERMINED,
)


# --- Domain Enums ---

class AnalysisType(str, Enum):
    """
    What the scan looks at. Inherits str so Pydantic serializes
    to "FRUIT" / "LEAVES" without extra conversion.
    """
    FRUIT = "FRUIT"
    LEAVES = "LEAVES"
    NON_LANSONES = "NON_LANSONES"

    @property
    def display_name(self) -> str:
        return {
            AnalysisType.FRUIT: "Fruit Analysis",
            AnalysisType.LEAVES: "Leaf Analysis",
            AnalysisType.NON_LANSONES: "General Analysis",
        }[self]

    @property
    def description(self) -> str:
        return {
            AnalysisType.FRUIT: "Analyzes fruit surface for diseases, ripeness, and quality issues",
            AnalysisType.LEAVES: "Analyzes leaves for diseases, pest damage, nutrient deficiencies, and environmental stress",
            AnalysisType.NON_LANSONES: "Provides factual analysis of non-lansones items",
        }[self]

    @classmethod
    def from_string(cls, value: str | None) -> "AnalysisType | None":
        """Case-insensitive lookup. None for missing or unknown values."""
        if value is None:
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


class SeverityLevel(str, Enum):
    HEALTHY = "HEALTHY"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def display_name(self) -> str:
        return {
            SeverityLevel.HEALTHY: "Healthy",
            SeverityLevel.LOW: "Low Risk",
            SeverityLevel.MEDIUM: "Medium Risk",
            SeverityLevel.HIGH: "High Risk",
        }[self]

    @property
    def color(self) -> str:
        return {
            SeverityLevel.HEALTHY: "#4CAF50",
            SeverityLevel.LOW: "#FFC107",
            SeverityLevel.MEDIUM: "#FF9800",
            SeverityLevel.HIGH: "#F44336",
        }[self]


class ValidationErrorKind(Enum):
    """
    Why an image was rejected. Each member's value is its fixed,
    user-facing message.
    """
    INVALID_URI = "Invalid image URI or file not accessible"
    UNSUPPORTED_FORMAT = "Image format not supported. Please use JPEG or PNG"
    FILE_TOO_LARGE = "Image file is too large. Maximum size is 10MB"
    EMPTY_FILE = "Image file is empty or corrupted"
    IMAGE_TOO_SMALL = "Image is too small. Minimum size is 100x100"
    IMAGE_TOO_LARGE = "Image is too large. Maximum size is 4096x4096"
    INVALID_ASPECT_RATIO = "Image aspect ratio is not suitable for analysis"
    CORRUPTED_IMAGE = "Image file is corrupted or cannot be decoded"
    IO_ERROR = "Error reading image file"
    PERMISSION_DENIED = "Permission denied to access image file"
    UNKNOWN_ERROR = "Unknown error occurred during validation"

    @property
    def message(self) -> str:
        return self.value


class CauseCategory(str, Enum):
    """
    Structural category of a failure. Collaborator adapters tag the
    exceptions they raise with one of these; classification reads
    only the tag.
    """
    UNRESOLVED_HOST = "UNRESOLVED_HOST"
    CONNECTION_TIMEOUT = "CONNECTION_TIMEOUT"
    NETWORK_IO = "NETWORK_IO"
    STORE_FAILURE = "STORE_FAILURE"
    FILE_MISSING = "FILE_MISSING"
    FILE_IO = "FILE_IO"
    ACCESS_DENIED = "ACCESS_DENIED"
    ILLEGAL_ARGUMENT = "ILLEGAL_ARGUMENT"
    ILLEGAL_STATE = "ILLEGAL_STATE"
    ANALYSIS_FAILURE = "ANALYSIS_FAILURE"
    UNRECOGNIZED = "UNRECOGNIZED"


# --- Validation Context ---

class ImageConstraints(BaseModel):
    """Acceptance policy for incoming images."""
    model_config = ConfigDict(frozen=True)

    supported_mime_types: frozenset[str] = SUPPORTED_MIME_TYPES
    min_width: int = MIN_WIDTH
    min_height: int = MIN_HEIGHT
    max_width: int = MAX_WIDTH
    max_height: int = MAX_HEIGHT
    max_file_size_bytes: int = MAX_FILE_SIZE_BYTES
    min_aspect_ratio: float = MIN_ASPECT_RATIO
    max_aspect_ratio: float = MAX_ASPECT_RATIO
    analysis_min_dimension: int = ANALYSIS_MIN_DIMENSION
    analysis_max_file_size_bytes: int = ANALYSIS_MAX_FILE_SIZE_BYTES

    def is_supported(self, mime_type: str | None) -> bool:
        return mime_type is not None and mime_type.lower() in self.supported_mime_types

    def is_too_small(self, width: int, height: int) -> bool:
        return width < self.min_width or height < self.min_height

    def is_too_large(self, width: int, height: int) -> bool:
        return width > self.max_width or height > self.max_height

    def is_aspect_ratio_allowed(self, aspect_ratio: float) -> bool:
        return self.min_aspect_ratio <= aspect_ratio <= self.max_aspect_ratio


DEFAULT_CONSTRAINTS = ImageConstraints()


class ImageInfo(BaseModel):
    """Properties of an accepted image. -1 marks undetermined geometry."""
    model_config = ConfigDict(frozen=True)

    width: int
    height: int
    file_size: int = Field(ge=0)
    mime_type: str
    aspect_ratio: float

    @property
    def file_size_mb(self) -> float:
        return self.file_size / (1024 * 1024)

    @property
    def dimensions(self) -> str:
        return f"{self.width}x{self.height}"

    @property
    def is_probed(self) -> bool:
        return self.width != UNDETERMINED and self.height != UNDETERMINED


class ValidationSuccess(BaseModel):
    """Image passed every check."""
    model_config = ConfigDict(frozen=True)

    status: Literal["success"] = "success"
    image_info: ImageInfo

    @property
    def is_success(self) -> bool:
        return True

    @property
    def error(self) -> None:
        return None

    @property
    def message(self) -> None:
        return None


class ValidationFailure(BaseModel):
    """Image rejected for exactly one reason. The message is bound to the kind."""
    model_config = ConfigDict(frozen=True)

    status: Literal["failure"] = "failure"
    error: ValidationErrorKind

    @property
    def is_success(self) -> bool:
        return False

    @property
    def image_info(self) -> None:
        return None

    @property
    def message(self) -> str:
        return self.error.message


ValidationResult = Union[ValidationSuccess, ValidationFailure]


# --- Analysis Context ---

class AnalysisOutcome(BaseModel):
    """Parsed response of the remote analysis service."""
    model_config = ConfigDict(populate_by_name=True)

    disease_detected: bool = Field(alias="diseaseDetected")
    disease_name: str | None = Field(None, alias="diseaseName")
    confidence_level: float = Field(ge=0.0, le=1.0, alias="confidenceLevel")
    recommendations: list[str] = []
    api_version: str = Field(min_length=1, alias="apiVersion")
    detected_analysis_type: AnalysisType | None = Field(None, alias="analysisType")

    @field_validator("api_version")
    @classmethod
    def _non_blank_version(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("API version cannot be blank")
        return value

    @field_validator("detected_analysis_type", mode="before")
    @classmethod
    def _lenient_analysis_type(cls, value):
        if value is None or isinstance(value, AnalysisType):
            return value
        return AnalysisType.from_string(str(value))


# --- Storage Context ---

_VALID_IMAGE_FORMATS = {"JPEG", "JPG", "PNG", "WEBP"}


class ScanMetadata(BaseModel):
    """Measurements recorded alongside a scan."""
    model_config = ConfigDict(frozen=True)

    image_size: int = Field(ge=0)
    image_format: str = Field(min_length=1)
    analysis_time_ms: int = Field(ge=0)
    api_version: str = Field(min_length=1)

    @field_validator("image_format")
    @classmethod
    def _upper_format(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Image format cannot be blank")
        return value.upper()

    @field_validator("api_version")
    @classmethod
    def _non_blank_version(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("API version cannot be blank")
        return value

    @property
    def formatted_image_size(self) -> str:
        if self.image_size < 1024:
            return f"{self.image_size} B"
        if self.image_size < 1024 * 1024:
            return f"{self.image_size // 1024} KB"
        return f"{self.image_size // (1024 * 1024)} MB"

    @property
    def formatted_analysis_time(self) -> str:
        if self.analysis_time_ms < 1000:
            return f"{self.analysis_time_ms}ms"
        if self.analysis_time_ms < 60_000:
            return f"{self.analysis_time_ms // 1000}s"
        minutes, rest = divmod(self.analysis_time_ms, 60_000)
        return f"{minutes}m {rest // 1000}s"

    def is_valid_image_format(self) -> bool:
        return self.image_format in _VALID_IMAGE_FORMATS


class ScanResult(BaseModel):
    """Persisted unit of work. Immutable; change it through the repository."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    image_path: str = Field(min_length=1)
    analysis_type: AnalysisType
    disease_detected: bool
    disease_name: str | None = None
    confidence_level: float = Field(ge=0.0, le=1.0)
    recommendations: list[str] = []
    timestamp: int = Field(gt=0)  # epoch milliseconds
    metadata: ScanMetadata

    @model_validator(mode="after")
    def _disease_needs_name(self) -> "ScanResult":
        if self.disease_detected and not (self.disease_name and self.disease_name.strip()):
            raise ValueError("Disease name cannot be null or blank when disease is detected")
        return self

    @classmethod
    def create(
        cls,
        image_path: str,
        analysis_type: AnalysisType,
        disease_detected: bool,
        disease_name: str | None,
        confidence_level: float,
        recommendations: list[str],
        metadata: ScanMetadata,
    ) -> "ScanResult":
        """New scan with a generated id and the next creation timestamp."""
        return cls(
            id=str(uuid.uuid4()),
            image_path=image_path,
            analysis_type=analysis_type,
            disease_detected=disease_detected,
            disease_name=disease_name,
            confidence_level=confidence_level,
            recommendations=list(recommendations),
            timestamp=next_timestamp(),
            metadata=metadata,
        )

    @property
    def confidence_percentage(self) -> int:
        return int(self.confidence_level * 100)

    @property
    def status_text(self) -> str:
        return f"Disease Detected: {self.disease_name}" if self.disease_detected else "Healthy"

    @property
    def severity_level(self) -> SeverityLevel:
        if not self.disease_detected:
            return SeverityLevel.HEALTHY
        if self.confidence_level >= SEVERITY_HIGH_CONFIDENCE:
            return SeverityLevel.HIGH
        if self.confidence_level >= SEVERITY_MEDIUM_CONFIDENCE:
            return SeverityLevel.MEDIUM
        return SeverityLevel.LOW

    def is_valid(self) -> bool:
        """Full persistence check, including the image format whitelist."""
        return self.metadata.is_valid_image_format()

    def with_recommendations(self, recommendations: list[str]) -> "ScanResult":
        return self.model_copy(update={"recommendations": list(recommendations)})


class StorageSummary(BaseModel):
    """Aggregate view over persisted scans for settings screens."""
    total_scans: int = Field(ge=0)
    disease_detected_count: int = Field(ge=0)
    healthy_count: int = Field(ge=0)
    total_image_size: int = Field(ge=0)
    scans_by_type: dict[AnalysisType, int] = {}
    average_confidence: float | None = None
    generated_at: int

    @property
    def disease_detection_rate(self) -> float:
        """Percentage of scans with a detected disease."""
        if self.total_scans == 0:
            return 0.0
        return self.disease_detected_count / self.total_scans * 100

    @property
    def average_bytes_per_scan(self) -> int:
        return self.total_image_size // self.total_scans if self.total_scans else 0

    @property
    def formatted_size(self) -> str:
        size = self.total_image_size
        if size < 1024:
            return f"{size} B"
        if size < 1024 ** 2:
            return f"{size // 1024} KB"
        if size < 1024 ** 3:
            return f"{size // 1024 ** 2} MB"
        return f"{size // 1024 ** 3} GB"


# --- Timestamps ---
# Strictly increasing within the process so newest-first ordering is total.

_timestamp_lock = threading.Lock()
_last_timestamp = 0


def next_timestamp() -> int:
    global _last_timestamp
    with _timestamp_lock:
        now = int(time.time() * 1000)
        _last_timestamp = max(now, _last_timestamp + 1)
        return _last_timestamp


# --- Exceptions ---
# Each carries the structural category used for classification.

class ScanPipelineError(Exception):
    """Base for tagged pipeline failures."""
    category: CauseCategory = CauseCategory.UNRECOGNIZED


class HostUnresolvedError(ScanPipelineError):
    """Analysis host name could not be resolved."""
    category = CauseCategory.UNRESOLVED_HOST


class ConnectionTimeoutError(ScanPipelineError):
    """Analysis call timed out."""
    category = CauseCategory.CONNECTION_TIMEOUT


class NetworkIOError(ScanPipelineError):
    """Transport failure during a network call."""
    category = CauseCategory.NETWORK_IO


class AnalysisError(ScanPipelineError):
    """Analysis service answered, but not with a usable result."""
    category = CauseCategory.ANALYSIS_FAILURE


class StoreError(ScanPipelineError):
    """Persistence store query or write failed."""
    category = CauseCategory.STORE_FAILURE


class ImageStorageError(ScanPipelineError):
    """Image file operation failed."""
    category = CauseCategory.FILE_IO


class ImageNotFoundError(ImageStorageError):
    category = CauseCategory.FILE_MISSING


class StorageAccessDeniedError(ImageStorageError):
    category = CauseCategory.ACCESS_DENIED


class InvalidArgumentError(ScanPipelineError):
    """Caller supplied input that fails a precondition."""
    category = CauseCategory.ILLEGAL_ARGUMENT


class InvalidStateError(ScanPipelineError):
    """Data reached a state the pipeline cannot continue from."""
    category = CauseCategory.ILLEGAL_STATE


class ImageRejectedError(InvalidArgumentError):
    """Validation rejection carried across the repository boundary."""

    def __init__(self, kind: ValidationErrorKind):
        super().__init__(kind.message)
        self.kind = kind
