"""
Storage layer - DynamoDB operations for scan persistence.

Handles scan creation, retrieval, queries, aggregates, and retention.
All database interaction is isolated here. Every boto3/botocore
failure is raised as StoreError.
"""

import asyncio
import json
import logging
from decimal import Decimal
from typing import Any, Callable

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from cropscan.config import DYNAMODB_TABLE
from cropscan.models import (
    AnalysisType,
    InvalidArgumentError,
    ScanResult,
    StoreError,
)

logger = logging.getLogger("cropscan.store")


def _to_dynamodb(data: dict) -> dict:
    """Convert floats to Decimal for DynamoDB compatibility."""
    return json.loads(json.dumps(data), parse_float=Decimal)


def _from_dynamodb(value: Any) -> Any:
    """Convert DynamoDB Decimals back to int/float, recursively."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamodb(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_dynamodb(v) for v in value]
    return value


def _newest_first(scans: list[ScanResult]) -> list[ScanResult]:
    return sorted(scans, key=lambda s: s.timestamp, reverse=True)


class DynamoScanStore:
    """
    ScanResult persistence keyed by id.

    The table resource is created lazily and cached for the lifetime of
    the store. Pass `table` to bind an existing Table object.
    """

    def __init__(self, table_name: str = DYNAMODB_TABLE, table: Any = None):
        self.table_name = table_name
        self._table = table

    def _get_table(self):
        """Lazy-initialized DynamoDB table with caching."""
        if self._table is None:
            self._table = boto3.resource("dynamodb").Table(self.table_name)
        return self._table

    def clear_table_cache(self) -> None:
        """Drops the cached table so the next call reconnects."""
        self._table = None

    async def _run(self, action: str, fn: Callable, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except (StoreError, InvalidArgumentError):
            raise
        except Exception as e:
            logger.error("Store operation failed: %s", action)
            raise StoreError(f"Failed to {action}: {e}") from e

    # --- Writes ---

    async def save(self, scan: ScanResult) -> ScanResult:
        """
        Persists a scan, replacing any record with the same id.

        Raises:
            StoreError: If the DynamoDB write fails.
        """
        await self._run(f"save scan {scan.id}", self._put, scan)
        return scan

    async def update(self, scan: ScanResult) -> ScanResult:
        """
        Replaces an existing scan.

        Raises:
            InvalidArgumentError: If no scan with this id exists.
            StoreError: If the DynamoDB write fails.
        """
        await self._run(f"update scan {scan.id}", self._put_existing, scan)
        return scan

    # --- Reads ---

    async def get_by_id(self, scan_id: str) -> ScanResult | None:
        return await self._run(f"retrieve scan {scan_id}", self._get, scan_id)

    async def get_all(self) -> list[ScanResult]:
        """All scans, newest first."""
        return _newest_first(await self._run("list scans", self._scan))

    async def get_recent(self, limit: int) -> list[ScanResult]:
        return (await self.get_all())[:max(limit, 0)]

    async def get_most_recent(self) -> ScanResult | None:
        recent = await self.get_recent(1)
        return recent[0] if recent else None

    async def get_by_analysis_type(self, analysis_type: AnalysisType) -> list[ScanResult]:
        condition = Attr("analysis_type").eq(analysis_type.value)
        return _newest_first(await self._run("query scans by type", self._scan, condition))

    async def get_by_disease_status(self, disease_detected: bool) -> list[ScanResult]:
        condition = Attr("disease_detected").eq(disease_detected)
        return _newest_first(await self._run("query scans by disease status", self._scan, condition))

    async def search_by_disease_name(self, term: str) -> list[ScanResult]:
        """Case-insensitive substring match on disease name, newest first."""
        needle = term.lower()
        scans = await self.get_all()
        return [s for s in scans if s.disease_name and needle in s.disease_name.lower()]

    async def get_in_date_range(self, start_ms: int, end_ms: int) -> list[ScanResult]:
        """Scans with start_ms <= timestamp <= end_ms, newest first."""
        condition = Attr("timestamp").between(start_ms, end_ms)
        return _newest_first(await self._run("query scans by date range", self._scan, condition))

    async def get_high_confidence_disease_scans(self, min_confidence: float) -> list[ScanResult]:
        """Diseased scans at or above min_confidence, most confident first."""
        condition = Attr("disease_detected").eq(True) & Attr("confidence_level").gte(
            Decimal(str(min_confidence))
        )
        scans = await self._run("query high-confidence scans", self._scan, condition)
        return sorted(scans, key=lambda s: s.confidence_level, reverse=True)

    async def get_paginated(self, limit: int, offset: int) -> list[ScanResult]:
        if limit < 0 or offset < 0:
            raise InvalidArgumentError(f"limit and offset must be non-negative, got {limit}/{offset}")
        return (await self.get_all())[offset:offset + limit]

    # --- Aggregates ---

    async def count(self) -> int:
        return len(await self._run("count scans", self._scan))

    async def count_by_type(self, analysis_type: AnalysisType) -> int:
        return len(await self.get_by_analysis_type(analysis_type))

    async def disease_detected_count(self) -> int:
        return len(await self.get_by_disease_status(True))

    async def healthy_count(self) -> int:
        return len(await self.get_by_disease_status(False))

    async def total_image_size(self) -> int:
        scans = await self._run("sum image sizes", self._scan)
        return sum(s.metadata.image_size for s in scans)

    async def average_confidence(self) -> float | None:
        """Mean confidence over all scans; None when there are none."""
        scans = await self._run("average confidence", self._scan)
        if not scans:
            return None
        return sum(s.confidence_level for s in scans) / len(scans)

    # --- Retention ---

    async def delete_by_id(self, scan_id: str) -> bool:
        """Removes one scan. False when it did not exist."""
        return await self._run(f"delete scan {scan_id}", self._delete, scan_id)

    async def delete_all(self) -> list[ScanResult]:
        """Removes every scan. Returns what was removed."""
        scans = await self._run("list scans", self._scan)
        await self._run("delete all scans", self._batch_delete, scans)
        return scans

    async def delete_older_than(self, cutoff_ms: int) -> list[ScanResult]:
        """Removes scans with timestamp < cutoff_ms. Returns what was removed."""
        condition = Attr("timestamp").lt(cutoff_ms)
        scans = await self._run("query old scans", self._scan, condition)
        await self._run("delete old scans", self._batch_delete, scans)
        return scans

    async def keep_most_recent(self, keep: int) -> list[ScanResult]:
        """Retains only the `keep` newest scans. Returns what was removed."""
        if keep < 0:
            raise InvalidArgumentError(f"keep count must be non-negative, got {keep}")
        scans = await self.get_all()
        doomed = scans[keep:]
        await self._run("trim scans", self._batch_delete, doomed)
        return doomed

    # --- DynamoDB calls (blocking, run in a worker thread) ---

    def _put(self, scan: ScanResult) -> None:
        self._get_table().put_item(Item=_to_dynamodb(scan.model_dump(mode="json")))

    def _put_existing(self, scan: ScanResult) -> None:
        try:
            self._get_table().put_item(
                Item=_to_dynamodb(scan.model_dump(mode="json")),
                ConditionExpression=Attr("id").exists(),
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                raise InvalidArgumentError(f"Scan with ID {scan.id} not found") from e
            raise

    def _get(self, scan_id: str) -> ScanResult | None:
        response = self._get_table().get_item(Key={"id": scan_id})
        if "Item" not in response:
            return None
        return ScanResult.model_validate(_from_dynamodb(response["Item"]))

    def _scan(self, condition=None) -> list[ScanResult]:
        table = self._get_table()
        kwargs: dict[str, Any] = {}
        if condition is not None:
            kwargs["FilterExpression"] = condition

        items: list[dict] = []
        while True:
            response = table.scan(**kwargs)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            kwargs["ExclusiveStartKey"] = last_key

        return [ScanResult.model_validate(_from_dynamodb(item)) for item in items]

    def _delete(self, scan_id: str) -> bool:
        response = self._get_table().delete_item(Key={"id": scan_id}, ReturnValues="ALL_OLD")
        return "Attributes" in response

    def _batch_delete(self, scans: list[ScanResult]) -> None:
        if not scans:
            return
        with self._get_table().batch_writer() as batch:
            for scan in scans:
                batch.delete_item(Key={"id": scan.id})
