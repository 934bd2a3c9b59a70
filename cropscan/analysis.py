"""
Remote analysis - HTTP client for the disease analysis service.

Sends a validated image to the analysis API and parses its verdict.
Transport failures are raised as tagged network errors, unusable
answers as AnalysisError, so the repository can classify them.
"""

import asyncio
import base64
import hashlib
import json
import logging
import re
import socket
import threading
import time
from collections import OrderedDict
from typing import Callable, Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError

from cropscan.config import (
    ANALYSIS_API_URL,
    ANALYSIS_API_KEY,
    ANALYSIS_TIMEOUT_SECONDS,
    API_VERSION,
    ANALYSIS_CACHE_SIZE,
    ANALYSIS_CACHE_TTL_SECONDS,
)
from cropscan.models import (
    AnalysisOutcome,
    AnalysisType,
    AnalysisError,
    ConnectionTimeoutError,
    HostUnresolvedError,
    NetworkIOError,
)
from cropscan.preprocessing import ImagePreprocessor

logger = logging.getLogger("cropscan.analysis")

_FENCED_JSON = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)```")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class AnalysisService(Protocol):
    async def analyze(
        self,
        image_bytes: bytes,
        mime_type: str,
        analysis_type: AnalysisType,
    ) -> AnalysisOutcome:
        ...


# --- Response parsing ---

def extract_json(text: str) -> str:
    """
    Pulls the JSON object out of a model answer.

    Prefers a fenced ```json block, falls back to the outermost {...}.

    Raises:
        AnalysisError: If the text holds no JSON object.
    """
    fenced = _FENCED_JSON.search(text)
    if fenced:
        return fenced.group(1).strip()

    obj = _JSON_OBJECT.search(text)
    if obj:
        return obj.group(0)

    raise AnalysisError("Analysis response contains no JSON object")


def parse_analysis_response(text: str, default_api_version: str = API_VERSION) -> AnalysisOutcome:
    """
    Parses the service body into an AnalysisOutcome.

    The body may be the JSON object itself or model text wrapping it.

    Raises:
        AnalysisError: If the payload is missing, malformed, or out of bounds.
    """
    try:
        payload = json.loads(extract_json(text))
    except json.JSONDecodeError as e:
        raise AnalysisError(f"Analysis response is not valid JSON: {e.msg}") from e

    if not isinstance(payload, dict):
        raise AnalysisError("Analysis response must be a JSON object")

    payload.setdefault("apiVersion", default_api_version)

    try:
        return AnalysisOutcome.model_validate(payload)
    except PydanticValidationError as e:
        raise AnalysisError(f"Analysis response failed schema check: {e.error_count()} error(s)") from e


def _is_name_resolution_failure(exc: BaseException) -> bool:
    seen = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, socket.gaierror):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


# --- HTTP client ---

class RemoteAnalysisService:
    """
    Posts images to the analysis API.

    Request body: {"image": <base64>, "mimeType": ..., "analysisType": ...}
    Response body: {diseaseDetected, diseaseName?, confidenceLevel,
    recommendations[], apiVersion?, analysisType?}, optionally wrapped in
    model text. Timeouts are enforced here, not by callers.
    """

    def __init__(
        self,
        url: str = ANALYSIS_API_URL,
        api_key: str | None = ANALYSIS_API_KEY,
        timeout: float = ANALYSIS_TIMEOUT_SECONDS,
        api_version: str = API_VERSION,
        transport: httpx.AsyncBaseTransport | None = None,
        preprocessor: ImagePreprocessor | None = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.api_version = api_version
        self.preprocessor = preprocessor or ImagePreprocessor()
        self._transport = transport

    async def analyze(
        self,
        image_bytes: bytes,
        mime_type: str,
        analysis_type: AnalysisType,
    ) -> AnalysisOutcome:
        """
        Raises:
            HostUnresolvedError: DNS lookup for the service failed.
            ConnectionTimeoutError: Connect or read timed out.
            NetworkIOError: Any other transport failure.
            AnalysisError: Error status, unusable payload, or an image
                that cannot be prepared for upload.
        """
        upload = await asyncio.to_thread(self.preprocessor.prepare, image_bytes, mime_type)
        body = {
            "image": base64.b64encode(upload).decode("ascii"),
            "mimeType": mime_type,
            "analysisType": analysis_type.value,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        logger.debug("Calling analysis service: type=%s bytes=%d", analysis_type.value, len(upload))

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(self.url, json=body, headers=headers)
            except httpx.TimeoutException as e:
                logger.error("Analysis service timed out: %s", type(e).__name__)
                raise ConnectionTimeoutError(f"Analysis service timed out after {self.timeout}s") from e
            except httpx.ConnectError as e:
                if _is_name_resolution_failure(e):
                    logger.error("Analysis host could not be resolved")
                    raise HostUnresolvedError(f"Cannot resolve analysis host for {self.url}") from e
                logger.error("Analysis service connection failed: %s", e)
                raise NetworkIOError(f"Cannot connect to analysis service: {e}") from e
            except httpx.TransportError as e:
                logger.error("Analysis transport error: %s", type(e).__name__)
                raise NetworkIOError(f"Analysis request failed: {e}") from e

        if response.status_code >= 400:
            logger.error("Analysis service returned error status: %s", response.status_code)
            raise AnalysisError(f"Analysis service returned status {response.status_code}")

        return parse_analysis_response(response.text, self.api_version)


# --- Caching ---

class AnalysisCache:
    """
    LRU cache of outcomes keyed by image hash and analysis type.

    Identical images return identical verdicts for the TTL. Thread-safe.
    """

    def __init__(
        self,
        max_size: int = ANALYSIS_CACHE_SIZE,
        ttl_seconds: float = ANALYSIS_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, tuple[AnalysisOutcome, float]] = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def key_for(image_bytes: bytes, analysis_type: AnalysisType) -> str:
        return f"{analysis_type.value}:{hashlib.sha256(image_bytes).hexdigest()}"

    def get(self, key: str) -> AnalysisOutcome | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            outcome, stored_at = entry
            if self._clock() - stored_at > self.ttl_seconds:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return outcome

    def put(self, key: str, outcome: AnalysisOutcome) -> None:
        with self._lock:
            self._entries[key] = (outcome, self._clock())
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {"size": len(self._entries), "max_size": self.max_size}


class CachingAnalysisService:
    """Wraps any AnalysisService with an AnalysisCache. Failures are never cached."""

    def __init__(self, inner: AnalysisService, cache: AnalysisCache | None = None):
        self.inner = inner
        self.cache = cache or AnalysisCache()
        self.hits = 0
        self.total = 0

    async def analyze(
        self,
        image_bytes: bytes,
        mime_type: str,
        analysis_type: AnalysisType,
    ) -> AnalysisOutcome:
        self.total += 1
        key = AnalysisCache.key_for(image_bytes, analysis_type)

        cached = self.cache.get(key)
        if cached is not None:
            self.hits += 1
            logger.debug("Analysis cache hit (%d/%d)", self.hits, self.total)
            return cached

        outcome = await self.inner.analyze(image_bytes, mime_type, analysis_type)
        self.cache.put(key, outcome)
        return outcome
