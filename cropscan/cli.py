"""
Command-line entry point - submits one image through the scan pipeline.

Wires the default validator, analysis client, image storage, and table,
then prints the saved scan as JSON. Never raises; failures become a
message on stderr and a non-zero exit code.
"""

import argparse
import asyncio
import logging
import sys

from cropscan.analysis import CachingAnalysisService, RemoteAnalysisService
from cropscan.config import DYNAMODB_TABLE, IMAGE_STORAGE_DIR, configure_logging
from cropscan.content import LocalFileSource
from cropscan.image_storage import LocalImageStorage
from cropscan.models import AnalysisType
from cropscan.repository import ScanRepository
from cropscan.store import DynamoScanStore
from cropscan.validator import ImageValidator

logger = logging.getLogger("cropscan.cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def build_repository(image_dir: str = IMAGE_STORAGE_DIR, table_name: str = DYNAMODB_TABLE) -> ScanRepository:
    return ScanRepository(
        ImageValidator(LocalFileSource()),
        CachingAnalysisService(RemoteAnalysisService()),
        LocalImageStorage(image_dir),
        DynamoScanStore(table_name=table_name),
    )


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="cropscan", description="Scan a lansones image for disease.")
    parser.add_argument("image", help="Path to a JPEG or PNG image")
    parser.add_argument("--type", dest="analysis_type", default="fruit", help="fruit or leaves")
    parser.add_argument("--image-dir", default=IMAGE_STORAGE_DIR)
    parser.add_argument("--table", default=DYNAMODB_TABLE)
    parser.add_argument("--log-level", default=None)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None, repository: ScanRepository | None = None) -> int:
    args = _parse_args(argv)
    configure_logging(args.log_level)

    analysis_type = AnalysisType.from_string(args.analysis_type)
    if analysis_type is None:
        print(f"Unknown analysis type: {args.analysis_type}", file=sys.stderr)
        return EXIT_USAGE

    repository = repository or build_repository(args.image_dir, args.table)
    result = asyncio.run(repository.submit_scan(args.image, analysis_type))

    if not result.is_success:
        logger.error("Scan failed: %r", result.error)
        print(result.error.message, file=sys.stderr)
        return EXIT_FAILED

    print(result.value.model_dump_json(indent=2))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
