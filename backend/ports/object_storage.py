"""ObjectStoragePort — abstract interface for durable artifact storage."""

from abc import ABC, abstractmethod


class ObjectStoragePort(ABC):
    @abstractmethod
    def put(self, path: str, data: bytes, content_type: str) -> str:
        """Store data at path (overwriting). Returns a durable reference. Raises StorageError."""

    @abstractmethod
    def get(self, path: str) -> bytes:
        """Return the bytes stored at path. Raises StorageError."""
