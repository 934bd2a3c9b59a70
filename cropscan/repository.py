"""
Scan repository - orchestrates the validate → analyze → store → persist pipeline.

Coordinates the validator, the analysis service, image storage, and the
scan store. Never raises past its boundary except for cancellation:
every failure is classified and returned as Failure(RepositoryError).

No business logic lives here beyond stage ordering, result
normalisation, and orphan cleanup.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Awaitable, TypeVar

from pydantic import ValidationError as PydanticValidationError

from cropscan.analysis import AnalysisService
from cropscan.config import UNIDENTIFIED_DISEASE
from cropscan.content import read_all
from cropscan.errors import Failure, RepositoryError, RepositoryResult, Success
from cropscan.image_storage import LocalImageStorage
from cropscan.models import (
    AnalysisOutcome,
    AnalysisType,
    ImageInfo,
    ImageNotFoundError,
    ImageRejectedError,
    ImageStorageError,
    InvalidArgumentError,
    InvalidStateError,
    ScanMetadata,
    ScanResult,
    StorageAccessDeniedError,
    StorageSummary,
    next_timestamp,
)
from cropscan.store import DynamoScanStore
from cropscan.validator import ImageValidator

logger = logging.getLogger("cropscan.repository")

T = TypeVar("T")


def image_format_for(mime_type: str) -> str:
    mime = mime_type.lower()
    if "jpeg" in mime or "jpg" in mime:
        return "JPEG"
    if "png" in mime:
        return "PNG"
    if "webp" in mime:
        return "WEBP"
    return "JPEG"


def _extension_for(image_format: str) -> str:
    return {"JPEG": "jpg", "PNG": "png", "WEBP": "webp"}.get(image_format, "jpg")


def _to_millis(instant: datetime) -> int:
    return int(instant.timestamp() * 1000)


def normalize_disease(outcome: AnalysisOutcome) -> tuple[bool, str | None]:
    """A detected disease always has a name; a healthy result never does."""
    if not outcome.disease_detected:
        return False, None
    name = (outcome.disease_name or "").strip()
    if not name:
        logger.warning("Disease detected but no name in analysis result, using fallback")
        return True, UNIDENTIFIED_DISEASE
    return True, name


class ScanRepository:
    """
    Entry point for presentation callers.

    Stages of submit_scan run strictly in order; each await between
    stages is a cancellation checkpoint.
    """

    def __init__(
        self,
        validator: ImageValidator,
        analysis_service: AnalysisService,
        image_storage: LocalImageStorage,
        store: DynamoScanStore,
    ):
        self.validator = validator
        self.analysis_service = analysis_service
        self.image_storage = image_storage
        self.store = store

    # --- Orchestration ---

    async def submit_scan(
        self,
        image_ref: str,
        analysis_type: AnalysisType,
    ) -> RepositoryResult[ScanResult]:
        """
        Validates, analyzes, stores, and persists one scan.

        Either the image and the record are both persisted, or neither
        is left behind (best effort for the image).
        """
        logger.info("Starting scan: ref=%s type=%s", image_ref, analysis_type.value)

        # 1. Validate
        validation = await self.validator.validate_image(image_ref)
        if not validation.is_success:
            return self._failed("validate image", ImageRejectedError(validation.error))
        info = validation.image_info

        try:
            image_bytes = await asyncio.to_thread(read_all, self.validator.source, image_ref)
        except OSError as e:
            return self._failed("read image", _content_error(image_ref, e))

        # 2. Analyze
        started = time.perf_counter()
        try:
            outcome = await self.analysis_service.analyze(image_bytes, info.mime_type, analysis_type)
        except Exception as e:
            return self._failed("analyze image", e)
        analysis_time_ms = int((time.perf_counter() - started) * 1000)
        logger.debug("Analysis completed: disease_detected=%s", outcome.disease_detected)

        # 3. Store image. A cancelled write still completes so the file is known
        image_format = image_format_for(info.mime_type)
        write = asyncio.ensure_future(self.image_storage.store(image_bytes, _extension_for(image_format)))
        try:
            image_path = await asyncio.shield(write)
        except asyncio.CancelledError:
            written = await _settle(write, "image write")
            if written is not None:
                await self._discard_image(written)
            raise
        except Exception as e:
            return self._failed("store image", e)

        # 4. Persist record; the image is discarded unless the record lands
        try:
            await asyncio.sleep(0)
            scan = self._build_scan(image_path, analysis_type, outcome, info, image_format, analysis_time_ms)
        except asyncio.CancelledError:
            await self._discard_image(image_path)
            raise
        except Exception as e:
            await self._discard_image(image_path)
            return self._failed("persist scan", e)

        save = asyncio.ensure_future(self.store.save(scan))
        try:
            await asyncio.shield(save)
        except asyncio.CancelledError:
            if await _settle(save, "record write") is None:
                await self._discard_image(image_path)
            raise
        except Exception as e:
            await self._discard_image(image_path)
            return self._failed("persist scan", e)

        logger.info("Scan saved: id=%s", scan.id)
        return Success(scan)

    def _build_scan(
        self,
        image_path: str,
        requested_type: AnalysisType,
        outcome: AnalysisOutcome,
        info: ImageInfo,
        image_format: str,
        analysis_time_ms: int,
    ) -> ScanResult:
        disease_detected, disease_name = normalize_disease(outcome)
        try:
            return ScanResult.create(
                image_path=image_path,
                analysis_type=outcome.detected_analysis_type or requested_type,
                disease_detected=disease_detected,
                disease_name=disease_name,
                confidence_level=outcome.confidence_level,
                recommendations=outcome.recommendations,
                metadata=ScanMetadata(
                    image_size=info.file_size,
                    image_format=image_format,
                    analysis_time_ms=analysis_time_ms,
                    api_version=outcome.api_version,
                ),
            )
        except PydanticValidationError as e:
            raise InvalidStateError(f"Analysis result cannot form a scan: {e.error_count()} error(s)") from e

    async def _discard_image(self, image_path: str) -> None:
        """Best-effort removal of an image whose record was not persisted."""
        try:
            await self.image_storage.delete(image_path)
            logger.info("Removed orphaned image %s", image_path)
        except Exception as e:
            logger.warning("Failed to remove orphaned image %s: %s", image_path, e)

    # --- Writes ---

    async def save_scan_result(self, scan: ScanResult) -> RepositoryResult[ScanResult]:
        if not scan.is_valid():
            return self._failed("save scan", InvalidArgumentError("Invalid scan result provided"))
        return await self._guard("save scan", self.store.save(scan))

    async def update_scan(self, scan: ScanResult) -> RepositoryResult[ScanResult]:
        if not scan.is_valid():
            return self._failed("update scan", InvalidArgumentError("Invalid scan result provided"))
        return await self._guard("update scan", self.store.update(scan))

    async def delete_scan(self, scan_id: str) -> RepositoryResult[None]:
        """Deletes the record, then its image. Image failures are logged only."""
        async def _delete() -> None:
            scan = await self.store.get_by_id(scan_id)
            if scan is None:
                raise InvalidArgumentError(f"Scan with ID {scan_id} not found")
            await self.store.delete_by_id(scan_id)
            await self._remove_images([scan])

        return await self._guard("delete scan", _delete())

    async def clear_all_scans(self) -> RepositoryResult[int]:
        async def _clear() -> int:
            removed = await self.store.delete_all()
            await self._remove_images(removed)
            logger.info("Cleared %d scans", len(removed))
            return len(removed)

        return await self._guard("clear scans", _clear())

    async def delete_scans_older_than(self, cutoff: datetime) -> RepositoryResult[int]:
        async def _purge() -> int:
            removed = await self.store.delete_older_than(_to_millis(cutoff))
            await self._remove_images(removed)
            return len(removed)

        return await self._guard("delete old scans", _purge())

    async def keep_most_recent(self, keep: int) -> RepositoryResult[int]:
        async def _trim() -> int:
            removed = await self.store.keep_most_recent(keep)
            await self._remove_images(removed)
            return len(removed)

        return await self._guard("trim scans", _trim())

    async def cleanup_orphaned_images(self) -> RepositoryResult[int]:
        """Deletes stored images that no scan references."""
        async def _cleanup() -> int:
            referenced = {scan.image_path for scan in await self.store.get_all()}
            orphaned = await self.image_storage.list_paths() - referenced
            deleted = 0
            for path in orphaned:
                if await self.image_storage.delete(path):
                    deleted += 1
                    logger.debug("Deleted orphaned image: %s", path)
            logger.info("Orphan cleanup removed %d images", deleted)
            return deleted

        return await self._guard("clean up orphaned images", _cleanup())

    async def _remove_images(self, scans: list[ScanResult]) -> None:
        for scan in scans:
            try:
                if not await self.image_storage.delete(scan.image_path):
                    logger.warning("Image already missing: %s", scan.image_path)
            except Exception as e:
                logger.warning("Failed to delete image file %s: %s", scan.image_path, e)

    # --- Reads (pass-through) ---

    async def get_all_scans(self) -> RepositoryResult[list[ScanResult]]:
        return await self._guard("list scans", self.store.get_all())

    async def get_scan_by_id(self, scan_id: str) -> RepositoryResult[ScanResult | None]:
        return await self._guard("get scan", self.store.get_by_id(scan_id))

    async def get_recent_scans(self, limit: int) -> RepositoryResult[list[ScanResult]]:
        return await self._guard("list recent scans", self.store.get_recent(limit))

    async def get_most_recent_scan(self) -> RepositoryResult[ScanResult | None]:
        return await self._guard("get most recent scan", self.store.get_most_recent())

    async def get_scans_by_analysis_type(self, analysis_type: AnalysisType) -> RepositoryResult[list[ScanResult]]:
        return await self._guard("list scans by type", self.store.get_by_analysis_type(analysis_type))

    async def get_scans_by_disease_status(self, disease_detected: bool) -> RepositoryResult[list[ScanResult]]:
        return await self._guard("list scans by status", self.store.get_by_disease_status(disease_detected))

    async def search_scans_by_disease_name(self, term: str) -> RepositoryResult[list[ScanResult]]:
        return await self._guard("search scans", self.store.search_by_disease_name(term))

    async def get_scans_in_date_range(self, start: datetime, end: datetime) -> RepositoryResult[list[ScanResult]]:
        return await self._guard(
            "list scans in range",
            self.store.get_in_date_range(_to_millis(start), _to_millis(end)),
        )

    async def get_high_confidence_disease_scans(self, min_confidence: float) -> RepositoryResult[list[ScanResult]]:
        return await self._guard(
            "list high-confidence scans",
            self.store.get_high_confidence_disease_scans(min_confidence),
        )

    async def get_scans_paginated(self, limit: int, offset: int) -> RepositoryResult[list[ScanResult]]:
        return await self._guard("page scans", self.store.get_paginated(limit, offset))

    async def get_scan_count(self) -> RepositoryResult[int]:
        return await self._guard("count scans", self.store.count())

    async def get_scan_count_by_type(self, analysis_type: AnalysisType) -> RepositoryResult[int]:
        return await self._guard("count scans by type", self.store.count_by_type(analysis_type))

    async def get_disease_detected_count(self) -> RepositoryResult[int]:
        return await self._guard("count diseased scans", self.store.disease_detected_count())

    async def get_healthy_scans_count(self) -> RepositoryResult[int]:
        return await self._guard("count healthy scans", self.store.healthy_count())

    async def get_total_storage_size(self) -> RepositoryResult[int]:
        return await self._guard("sum storage size", self.store.total_image_size())

    async def get_average_confidence(self) -> RepositoryResult[float | None]:
        return await self._guard("average confidence", self.store.average_confidence())

    async def get_storage_summary(self) -> RepositoryResult[StorageSummary]:
        async def _summary() -> StorageSummary:
            scans = await self.store.get_all()
            by_type = {t: 0 for t in AnalysisType}
            for scan in scans:
                by_type[scan.analysis_type] += 1
            diseased = sum(1 for s in scans if s.disease_detected)
            return StorageSummary(
                total_scans=len(scans),
                disease_detected_count=diseased,
                healthy_count=len(scans) - diseased,
                total_image_size=sum(s.metadata.image_size for s in scans),
                scans_by_type=by_type,
                average_confidence=(
                    sum(s.confidence_level for s in scans) / len(scans) if scans else None
                ),
                generated_at=next_timestamp(),
            )

        return await self._guard("summarize storage", _summary())

    async def export_scan_data(self) -> RepositoryResult[str]:
        async def _export() -> str:
            scans = await self.store.get_all()
            return render_export(scans, datetime.now())

        return await self._guard("export scans", _export())

    # --- Helpers ---

    async def _guard(self, action: str, operation: Awaitable[T]) -> RepositoryResult[T]:
        try:
            return Success(await operation)
        except Exception as e:
            return self._failed(action, e)

    @staticmethod
    def _failed(action: str, cause: BaseException) -> Failure:
        error = RepositoryError.from_cause(cause)
        logger.error("Failed to %s [%s]: %s", action, error.kind.name, error.message)
        return Failure(error)


async def _settle(task: "asyncio.Future[T]", what: str) -> T | None:
    """Waits out a shielded write after cancellation. None if it did not land."""
    try:
        return await task
    except Exception as e:
        logger.warning("Cancelled %s also failed: %s", what, e)
        return None


def _content_error(ref: str, e: OSError) -> ImageStorageError:
    if isinstance(e, FileNotFoundError):
        return ImageNotFoundError(f"Image content disappeared: {ref}")
    if isinstance(e, PermissionError):
        return StorageAccessDeniedError(f"Access denied reading image: {ref}")
    return ImageStorageError(f"Failed to read image {ref}: {e}")


def render_export(scans: list[ScanResult], generated: datetime) -> str:
    """Plain-text report of scans, in the order given."""
    lines = [
        "Lansones Disease Scanner - Scan Export",
        f"Generated: {generated.isoformat(timespec='seconds')}",
        f"Total Scans: {len(scans)}",
        "",
    ]
    for scan in scans:
        lines.append(f"Scan ID: {scan.id}")
        lines.append(f"Date: {datetime.fromtimestamp(scan.timestamp / 1000).isoformat(timespec='seconds')}")
        lines.append(f"Analysis Type: {scan.analysis_type.display_name}")
        lines.append(f"Disease Detected: {'Yes' if scan.disease_detected else 'No'}")
        if scan.disease_detected and scan.disease_name:
            lines.append(f"Disease Name: {scan.disease_name}")
        lines.append(f"Confidence: {scan.confidence_percentage}%")
        lines.append("Recommendations:")
        lines.extend(f"  - {r}" for r in scan.recommendations)
        lines.append("---")
        lines.append("")
    return "\n".join(lines)
