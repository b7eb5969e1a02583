"""Blob storage backends for attachments."""
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """Abstract interface for storing attachment bytes by storage key."""

    @abstractmethod
    def put(self, storage_key: str, content: bytes) -> None:
        """Store ``content`` under ``storage_key`` (overwriting)."""

    @abstractmethod
    def path_for(self, storage_key: str) -> Optional[Path]:
        """Local path of a stored blob, or None if it does not exist."""

    @abstractmethod
    def delete(self, storage_key: str) -> bool:
        """Remove a blob. Returns False when it was already gone."""

    def exists(self, storage_key: str) -> bool:
        return self.path_for(storage_key) is not None


class LocalBlobStore(BlobStore):
    """Filesystem store: ``{root}/{room_id}/{uuid}{ext}``."""

    def __init__(self, root: str) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, storage_key: str) -> Path:
        path = (self._root / storage_key).resolve()
        if self._root not in path.parents:
            raise ValueError(f"Storage key escapes the blob root: {storage_key!r}")
        return path

    def put(self, storage_key: str, content: bytes) -> None:
        path = self._resolve(storage_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        logger.info("Saved blob: %s (%d bytes)", path, len(content))

    def path_for(self, storage_key: str) -> Optional[Path]:
        try:
            path = self._resolve(storage_key)
        except ValueError:
            return None
        return path if path.is_file() else None

    def delete(self, storage_key: str) -> bool:
        path = self.path_for(storage_key)
        if path is None:
            return False
        path.unlink()
        logger.info("Deleted blob: %s", path)
        return True
