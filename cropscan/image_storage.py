"""
Image storage - durable local copies of analyzed images.

Files live under <base_dir>/originals/<uuid>.<ext>. OS failures are
raised as tagged storage errors.
"""

import asyncio
import logging
import uuid
from pathlib import Path

from cropscan.config import IMAGE_STORAGE_DIR
from cropscan.models import (
    ImageNotFoundError,
    ImageStorageError,
    StorageAccessDeniedError,
)

logger = logging.getLogger("cropscan.image_storage")

ORIGINALS_DIR = "originals"


def _storage_error(action: str, target: Path | str, e: OSError) -> ImageStorageError:
    if isinstance(e, FileNotFoundError):
        return ImageNotFoundError(f"Image not found while trying to {action}: {target}")
    if isinstance(e, PermissionError):
        return StorageAccessDeniedError(f"Access denied while trying to {action}: {target}")
    return ImageStorageError(f"Failed to {action} {target}: {e}")


class LocalImageStorage:
    """Filesystem-backed image store. Paths returned are absolute."""

    def __init__(self, base_dir: str | Path = IMAGE_STORAGE_DIR):
        self.base_dir = Path(base_dir)

    @property
    def originals_dir(self) -> Path:
        return self.base_dir / ORIGINALS_DIR

    # --- Public API ---

    async def store(self, image_bytes: bytes, extension: str = "jpg") -> str:
        """
        Writes image bytes to a new file.

        Raises:
            ImageStorageError: If the write fails (subclass for missing
                directory or denied access).
        """
        return await asyncio.to_thread(self._store, image_bytes, extension)

    async def delete(self, path: str) -> bool:
        """Removes a stored image. False when it was already gone."""
        return await asyncio.to_thread(self._delete, path)

    async def read(self, path: str) -> bytes:
        return await asyncio.to_thread(self._read, path)

    async def list_paths(self) -> set[str]:
        return await asyncio.to_thread(self._list_paths)

    async def clear(self) -> int:
        """Deletes every stored image. Returns how many were removed."""
        paths = await self.list_paths()
        removed = 0
        for path in paths:
            if await self.delete(path):
                removed += 1
        return removed

    async def usage(self) -> tuple[int, int]:
        """(file count, total bytes) of stored images."""
        return await asyncio.to_thread(self._usage)

    # --- Internal ---

    def _store(self, image_bytes: bytes, extension: str) -> str:
        target = self.originals_dir / f"{uuid.uuid4()}.{extension.lstrip('.').lower()}"
        try:
            self.originals_dir.mkdir(parents=True, exist_ok=True)
            target.write_bytes(image_bytes)
        except OSError as e:
            raise _storage_error("store image", target, e) from e

        logger.debug("Stored image %s (%d bytes)", target.name, len(image_bytes))
        return str(target.resolve())

    def _delete(self, path: str) -> bool:
        try:
            Path(path).unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise _storage_error("delete image", path, e) from e
        return True

    def _read(self, path: str) -> bytes:
        try:
            return Path(path).read_bytes()
        except OSError as e:
            raise _storage_error("read image", path, e) from e

    def _list_paths(self) -> set[str]:
        if not self.originals_dir.exists():
            return set()
        try:
            return {str(p.resolve()) for p in self.originals_dir.iterdir() if p.is_file()}
        except OSError as e:
            raise _storage_error("list images in", self.originals_dir, e) from e

    def _usage(self) -> tuple[int, int]:
        paths = self._list_paths()
        total = 0
        for path in paths:
            try:
                total += Path(path).stat().st_size
            except FileNotFoundError:
                continue
        return len(paths), total
