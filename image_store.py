"""
image_store.py — raw image bytes by opaque handle.

Upload handling (saving the file) lives outside this package; the analysis
pipeline only needs to read back what was stored.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path

logger = logging.getLogger(__name__)


class ImageNotFoundError(FileNotFoundError):
    """The handle does not resolve to a stored image."""


class ImageStore(ABC):

    @abstractmethod
    async def read(self, handle: str) -> bytes:
        """Return the raw bytes for handle. Raises ImageNotFoundError if absent."""
        ...


class LocalImageStore(ImageStore):
    """Images on the local filesystem. Relative handles resolve under base_dir."""

    def __init__(self, base_dir: str | Path = ".") -> None:
        self._base_dir = Path(base_dir)

    def resolve(self, handle: str) -> Path:
        path = Path(handle)
        return path if path.is_absolute() else self._base_dir / path

    async def read(self, handle: str) -> bytes:
        path = self.resolve(handle)
        if not path.is_file():
            raise ImageNotFoundError(f"Image file not found: {handle}")
        # Blocking file I/O stays off the event loop
        data = await asyncio.to_thread(path.read_bytes)
        logger.debug("Read %d bytes from %s", len(data), path)
        return data
