"""
Blob storage for uploaded audio notes.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from careflow.core.errors import UnrecoverableInputError

logger = logging.getLogger(__name__)


def build_blob_path(patient_id: str, note_id: str, extension: str = "webm") -> str:
    """Opaque storage path for a note's audio."""
    return f"{patient_id}/{note_id}.{extension.lstrip('.') or 'webm'}"


class BaseBlobStore(ABC):
    """Read/write access to audio bytes by path."""

    @abstractmethod
    async def write(self, path: str, data: bytes) -> None:
        pass

    @abstractmethod
    async def read(self, path: str) -> bytes:
        """Return the stored bytes; missing or unreadable blobs raise UnrecoverableInputError."""
        pass


class LocalBlobStore(BaseBlobStore):
    """Blob store on the local filesystem."""

    def __init__(self, base_path: str):
        self.base_path = Path(base_path).resolve()

    def _resolve(self, path: str) -> Path:
        target = (self.base_path / path).resolve()
        if self.base_path not in target.parents:
            raise ValueError(f"Blob path escapes storage root: {path}")
        return target

    async def write(self, path: str, data: bytes) -> None:
        target = self._resolve(path)

        def _write():
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.info(f"Stored {len(data)} bytes at {path}")

    async def read(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            data = await asyncio.to_thread(target.read_bytes)
        except OSError as e:
            raise UnrecoverableInputError(f"Audio at {path} could not be read: {e}") from e

        if not data:
            raise UnrecoverableInputError(f"Audio at {path} is empty")
        return data


def create_blob_store(storage_type: str, base_path: str) -> BaseBlobStore:
    if storage_type == "local":
        return LocalBlobStore(base_path)
    raise ValueError(f"Unsupported storage type: {storage_type}")
