"""
Configuration for the crop scan pipeline.

All thresholds, limits, and deployment settings in one place.
Change here, not in business logic modules.
"""

import logging
import os

# --- Validation ---

SUPPORTED_MIME_TYPES: frozenset[str] = frozenset({"image/jpeg", "image/jpg", "image/png"})

MIN_WIDTH: int = 100
MIN_HEIGHT: int = 100
MAX_WIDTH: int = 4096
MAX_HEIGHT: int = 4096

MAX_FILE_SIZE_MB: int = 10
MAX_FILE_SIZE_BYTES: int = MAX_FILE_SIZE_MB * 1024 * 1024

# 1:4 .. 4:1, closed interval
MIN_ASPECT_RATIO: float = 0.25
MAX_ASPECT_RATIO: float = 4.0

# Stricter gate applied before committing to remote analysis
ANALYSIS_MIN_DIMENSION: int = 224
ANALYSIS_MAX_FILE_SIZE_BYTES: int = MAX_FILE_SIZE_BYTES // 2

# Sentinel for dimensions that were not determined (quick validation)
UNDETERMINED: int = -1

# --- Analysis ---

ANALYSIS_API_URL: str = os.environ.get("CROPSCAN_ANALYSIS_URL", "http://localhost:8080/v1/analyze")
ANALYSIS_API_KEY: str | None = os.environ.get("CROPSCAN_ANALYSIS_KEY")
ANALYSIS_TIMEOUT_SECONDS: float = float(os.environ.get("CROPSCAN_ANALYSIS_TIMEOUT", "30.0"))
API_VERSION: str = os.environ.get("CROPSCAN_API_VERSION", "gemini-1.5-flash")

ANALYSIS_CACHE_SIZE: int = 50
ANALYSIS_CACHE_TTL_SECONDS: float = 24 * 60 * 60

# Uploads are shrunk to fit this box before analysis
UPLOAD_MAX_DIMENSION: int = 1024
UPLOAD_JPEG_QUALITY: int = 85
PREPROCESS_CACHE_SIZE: int = 10

UNIDENTIFIED_DISEASE: str = "Unidentified Disease"

# Severity bands on confidence when a disease is detected
SEVERITY_HIGH_CONFIDENCE: float = 0.8
SEVERITY_MEDIUM_CONFIDENCE: float = 0.6

# --- Storage ---

DYNAMODB_TABLE: str = os.environ.get("CROPSCAN_TABLE", "scan_results")
IMAGE_STORAGE_DIR: str = os.environ.get("CROPSCAN_IMAGE_DIR", "./data/images")

# --- Logging ---

LOG_LEVEL: str = os.environ.get("CROPSCAN_LOG_LEVEL", "INFO")
LOG_FORMAT: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configures root logging for scripts and services embedding the pipeline."""
    logging.basicConfig(level=(level or LOG_LEVEL).upper(), format=LOG_FORMAT)

    for noisy in ("httpx", "httpcore", "botocore", "boto3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
