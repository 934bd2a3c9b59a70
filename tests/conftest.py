import copy
import io
import json
import sys
from decimal import Decimal
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from botocore.exceptions import ClientError
from PIL import Image

# Add repository root to Python path
root_dir = Path(__file__).parent.parent
sys.path.insert(0, str(root_dir))

from cropscan.content import InMemorySource  # noqa: E402
from cropscan.image_storage import LocalImageStorage  # noqa: E402
from cropscan.models import (  # noqa: E402
    AnalysisOutcome,
    AnalysisType,
    ScanMetadata,
    ScanResult,
)
from cropscan.repository import ScanRepository  # noqa: E402
from cropscan.store import DynamoScanStore  # noqa: E402
from cropscan.validator import ImageValidator  # noqa: E402


# ============================================================================
# IMAGE HELPERS
# ============================================================================

def make_image_bytes(width: int, height: int, fmt: str = "JPEG", mode: str = "RGB", color=0) -> bytes:
    """Encode a solid image of the given geometry."""
    img = Image.new(mode, (width, height), color=color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def pad_to(data: bytes, size: int) -> bytes:
    """Append trailing bytes so the payload is exactly `size` long."""
    assert len(data) <= size
    return data + b"\x00" * (size - len(data))


def make_scan(
    timestamp: int,
    analysis_type: AnalysisType = AnalysisType.FRUIT,
    disease_name: str | None = None,
    confidence: float = 0.9,
    image_size: int = 2048,
    image_path: str | None = None,
    scan_id: str | None = None,
) -> ScanResult:
    return ScanResult(
        id=scan_id or f"scan-{timestamp}",
        image_path=image_path or f"/images/{timestamp}.jpg",
        analysis_type=analysis_type,
        disease_detected=disease_name is not None,
        disease_name=disease_name,
        confidence_level=confidence,
        recommendations=["Inspect weekly"],
        timestamp=timestamp,
        metadata=ScanMetadata(
            image_size=image_size,
            image_format="JPEG",
            analysis_time_ms=120,
            api_version="v-test",
        ),
    )


def seed(table, scans) -> None:
    """Write scans straight into a fake table."""
    for scan in scans:
        table.put_item(Item=json.loads(json.dumps(scan.model_dump(mode="json")), parse_float=Decimal))


# ============================================================================
# FAKE DYNAMODB TABLE
# ============================================================================

def _evaluate(condition, item: dict) -> bool:
    expr = condition.get_expression()
    operator = expr["operator"]
    values = expr["values"]

    if operator == "AND":
        return _evaluate(values[0], item) and _evaluate(values[1], item)
    if operator == "OR":
        return _evaluate(values[0], item) or _evaluate(values[1], item)

    name = values[0].name
    if operator == "attribute_exists":
        return name in item
    if operator == "attribute_not_exists":
        return name not in item
    if name not in item:
        return False

    actual = item[name]
    if operator == "=":
        return actual == values[1]
    if operator == "<":
        return actual < values[1]
    if operator == "<=":
        return actual <= values[1]
    if operator == ">":
        return actual > values[1]
    if operator == ">=":
        return actual >= values[1]
    if operator == "BETWEEN":
        return values[1] <= actual <= values[2]
    raise NotImplementedError(operator)


class _FakeBatchWriter:
    def __init__(self, table):
        self._table = table

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def delete_item(self, Key):
        self._table._maybe_fail("batch_writer")
        self._table.items.pop(Key["id"], None)


class FakeTable:
    """
    In-memory stand-in for a DynamoDB Table resource.

    Scans are paginated (page_size items per call) so LastEvaluatedKey
    handling is exercised. Set `failures[method] = exc` to make a call raise.
    """

    def __init__(self, page_size: int = 2):
        self.items: dict[str, dict] = {}
        self.page_size = page_size
        self.failures: dict[str, Exception] = {}
        self.scan_calls = 0

    def _maybe_fail(self, method: str):
        if method in self.failures:
            raise self.failures[method]

    def put_item(self, Item, ConditionExpression=None):
        self._maybe_fail("put_item")
        if ConditionExpression is not None:
            existing = self.items.get(Item["id"], {})
            if not _evaluate(ConditionExpression, existing):
                raise ClientError(
                    {"Error": {"Code": "ConditionalCheckFailedException", "Message": "condition failed"}},
                    "PutItem",
                )
        self.items[Item["id"]] = copy.deepcopy(Item)
        return {}

    def get_item(self, Key):
        self._maybe_fail("get_item")
        item = self.items.get(Key["id"])
        return {"Item": copy.deepcopy(item)} if item is not None else {}

    def delete_item(self, Key, ReturnValues="NONE"):
        self._maybe_fail("delete_item")
        old = self.items.pop(Key["id"], None)
        return {"Attributes": old} if old is not None and ReturnValues == "ALL_OLD" else {}

    def scan(self, FilterExpression=None, ExclusiveStartKey=None):
        self._maybe_fail("scan")
        self.scan_calls += 1
        ordered = list(self.items.values())
        start = 0
        if ExclusiveStartKey is not None:
            ids = [i["id"] for i in ordered]
            start = ids.index(ExclusiveStartKey["id"]) + 1

        page = ordered[start:start + self.page_size]
        response = {
            "Items": [
                copy.deepcopy(i) for i in page
                if FilterExpression is None or _evaluate(FilterExpression, i)
            ]
        }
        if start + self.page_size < len(ordered):
            response["LastEvaluatedKey"] = {"id": page[-1]["id"]}
        return response

    def batch_writer(self):
        self._maybe_fail("batch_writer")
        return _FakeBatchWriter(self)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def fake_table():
    return FakeTable()


@pytest.fixture
def store(fake_table):
    return DynamoScanStore(table=fake_table)


@pytest.fixture
def source():
    return InMemorySource()


@pytest.fixture
def validator(source):
    return ImageValidator(source)


@pytest.fixture
def image_storage(tmp_path):
    return LocalImageStorage(tmp_path / "images")


@pytest.fixture
def healthy_outcome():
    return AnalysisOutcome(
        disease_detected=False,
        disease_name=None,
        confidence_level=0.93,
        recommendations=["Continue regular care."],
        api_version="gemini-1.5-flash",
    )


@pytest.fixture
def diseased_outcome():
    return AnalysisOutcome(
        disease_detected=True,
        disease_name="Anthracnose",
        confidence_level=0.86,
        recommendations=["Remove infected fruit.", "Apply copper fungicide."],
        api_version="gemini-1.5-flash",
    )


@pytest.fixture
def analysis_service(healthy_outcome):
    service = AsyncMock()
    service.analyze.return_value = healthy_outcome
    return service


@pytest.fixture
def repository(validator, analysis_service, image_storage, store):
    return ScanRepository(validator, analysis_service, image_storage, store)


@pytest.fixture
def valid_jpeg():
    return make_image_bytes(512, 512, "JPEG")


@pytest.fixture
def valid_png():
    return make_image_bytes(512, 512, "PNG")
