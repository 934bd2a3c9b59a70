"""
Content sources - the only way the pipeline reaches input image bytes.

A source answers three questions about a reference: how many bytes,
which declared MIME type, and a readable stream. Missing content raises
FileNotFoundError, denied access raises PermissionError.
"""

import io
import mimetypes
import threading
from pathlib import Path
from typing import BinaryIO, Protocol


class ContentSource(Protocol):
    def size(self, ref: str) -> int:
        ...

    def mime_type(self, ref: str) -> str | None:
        ...

    def open(self, ref: str) -> BinaryIO:
        ...


class LocalFileSource:
    """Images on the local filesystem, MIME type guessed from the file name."""

    def __init__(self, root: str | Path | None = None, mime_overrides: dict[str, str] | None = None):
        self._root = Path(root) if root is not None else None
        self._mime_overrides = {k.lower(): v for k, v in (mime_overrides or {}).items()}

    def _resolve(self, ref: str) -> Path:
        path = Path(ref)
        if self._root is not None and not path.is_absolute():
            path = self._root / path
        return path

    def size(self, ref: str) -> int:
        return self._resolve(ref).stat().st_size

    def mime_type(self, ref: str) -> str | None:
        path = self._resolve(ref)
        override = self._mime_overrides.get(path.suffix.lower())
        if override:
            return override
        mime, _ = mimetypes.guess_type(path.name)
        return mime

    def open(self, ref: str) -> BinaryIO:
        path = self._resolve(ref)
        if path.is_dir():
            raise FileNotFoundError(f"Not a file: {path}")
        return path.open("rb")


class InMemorySource:
    """Uploaded images held as bytes, keyed by an opaque reference."""

    def __init__(self):
        self._items: dict[str, tuple[bytes, str | None]] = {}
        self._lock = threading.Lock()

    def add(self, ref: str, data: bytes, mime_type: str | None) -> str:
        with self._lock:
            self._items[ref] = (bytes(data), mime_type)
        return ref

    def remove(self, ref: str) -> None:
        with self._lock:
            self._items.pop(ref, None)

    def _get(self, ref: str) -> tuple[bytes, str | None]:
        with self._lock:
            try:
                return self._items[ref]
            except KeyError:
                raise FileNotFoundError(f"No content for reference: {ref}") from None

    def size(self, ref: str) -> int:
        return len(self._get(ref)[0])

    def mime_type(self, ref: str) -> str | None:
        return self._get(ref)[1]

    def open(self, ref: str) -> BinaryIO:
        return io.BytesIO(self._get(ref)[0])


def read_all(source: ContentSource, ref: str) -> bytes:
    with source.open(ref) as stream:
        return stream.read()
