"""LocalFileObjectStorage — object storage backed by a local directory.

References are `{public_base_url}/{path}` when a base URL is configured,
otherwise `file://` URIs.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from domain.errors import StorageError
from ports.object_storage import ObjectStoragePort

logger = logging.getLogger(__name__)


class LocalFileObjectStorage(ObjectStoragePort):
    def __init__(self, root: str = "/data/conversation-audio", public_base_url: Optional[str] = None):
        self._root = Path(root).resolve()
        self._public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def _resolve(self, path: str) -> Path:
        target = (self._root / path.lstrip("/")).resolve()
        if self._root not in target.parents:
            raise StorageError(f"Path escapes storage root: {path}")
        return target

    def put(self, path: str, data: bytes, content_type: str) -> str:
        target = self._resolve(path)
        tmp = target.with_name(target.name + ".part")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            os.replace(tmp, target)
        except OSError as e:
            raise StorageError(f"Upload failed for {path}: {e}") from e
        logger.debug(f"Stored {len(data)} bytes ({content_type}) at {target}")

        if self._public_base_url:
            return f"{self._public_base_url}/{path.lstrip('/')}"
        return target.as_uri()

    def get(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except OSError as e:
            raise StorageError(f"Could not read {path}: {e}") from e
