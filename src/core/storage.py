"""
Storage Abstraction Layer

Provides a clean interface over the per-owner file layout used by the
pipeline:

    {STORAGE_ROOT}/{UPLOAD_SUBDIR}/{owner_id}/{prefix}_{image_id}.{ext}

where prefix is one of original, processed, optimized, thumbnail. The public
URL of a file is its path with STORAGE_ROOT stripped.
"""

import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from src.core.config import settings
from src.core.exceptions import PersistenceError, ValidationError

STAGE_PREFIXES = ("original", "processed", "optimized", "thumbnail")

_SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+$")


class IStorage(ABC):
    """Interface for storage operations"""

    @abstractmethod
    def path_for(self, owner_id: str, image_id: str, prefix: str, ext: str) -> Path:
        """Deterministic location of a stage file for an image."""

    @abstractmethod
    def write_original(self, owner_id: str, image_id: str, data: bytes, ext: str) -> Path:
        """Persist the uploaded bytes and return the written path."""

    @abstractmethod
    def public_url(self, path: Path) -> str:
        """Public-facing locator for a stored file."""

    @abstractmethod
    def resolve_url(self, url: str) -> Path:
        """Inverse of public_url()."""

    @abstractmethod
    def delete(self, path: Path) -> bool:
        """Delete a stored file. Returns False if it did not exist."""

    @abstractmethod
    def exists(self, path: Path) -> bool:
        """Check if a file exists in storage."""


class LocalStorage(IStorage):
    """Local filesystem storage."""

    def __init__(self, root: str = "./data/public", upload_subdir: str = "uploads/clothing"):
        self.root = Path(root).resolve()
        self.upload_root = self.root / upload_subdir
        self.upload_root.mkdir(parents=True, exist_ok=True)

    def owner_dir(self, owner_id: str) -> Path:
        if not _SAFE_SEGMENT.match(owner_id or ""):
            raise ValidationError(f"Invalid owner id: {owner_id!r}")
        return self.upload_root / owner_id

    def path_for(self, owner_id: str, image_id: str, prefix: str, ext: str) -> Path:
        if prefix not in STAGE_PREFIXES:
            raise ValueError(f"Unknown stage prefix: {prefix}")
        return self.owner_dir(owner_id) / f"{prefix}_{image_id}.{ext.lstrip('.').lower()}"

    def write_original(self, owner_id: str, image_id: str, data: bytes, ext: str) -> Path:
        path = self.path_for(owner_id, image_id, "original", ext)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
        except OSError as e:
            self.delete(path)
            raise PersistenceError(f"Failed to write original file: {e}", image_id=image_id)
        return path

    def public_url(self, path: Path) -> str:
        relative = Path(path).resolve().relative_to(self.root)
        return "/" + relative.as_posix()

    def resolve_url(self, url: str) -> Path:
        return self.root / url.lstrip("/")

    def delete(self, path: Path) -> bool:
        try:
            Path(path).unlink()
            return True
        except FileNotFoundError:
            return False

    def exists(self, path: Path) -> bool:
        return Path(path).is_file()


class StorageFactory:
    """Factory for creating the process-wide storage instance."""

    _instance: Optional[IStorage] = None

    @classmethod
    def get_storage(cls) -> IStorage:
        if cls._instance is None:
            cls._instance = LocalStorage(
                root=settings.STORAGE_ROOT,
                upload_subdir=settings.UPLOAD_SUBDIR
            )
        return cls._instance


# Convenience function for dependency injection
def get_storage() -> IStorage:
    """Get the storage instance - ready for FastAPI Depends()."""
    return StorageFactory.get_storage()
