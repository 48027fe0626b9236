"""
Local filesystem adapter for object storage.

Stores objects as files under a base directory. Retrieval URLs point at
the API's /storage route, which serves the same directory.
"""

import os
import logging
from pathlib import Path

from .base import ObjectStore
from ..exceptions import StorageError

logger = logging.getLogger("frame_worker")


class LocalObjectStore(ObjectStore):
    """Filesystem implementation of the object store"""

    def __init__(self, base_path: str, base_url: str = "http://localhost:3001"):
        self.base_path = Path(base_path).resolve()
        self.base_url = base_url.rstrip("/")

    def connect(self):
        """Ensure the storage directory exists"""
        self.base_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"Local storage rooted at {self.base_path}")

    def _file_path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path not in path.parents:
            raise StorageError(f"Storage key escapes base directory: {key}")
        return path

    def upload(self, key: str, data: bytes, content_type: str) -> str:
        path = self._file_path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(path.name + ".part")
            tmp_path.write_bytes(data)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f"Failed to upload {key}: {e}") from e
        return key

    def download(self, key: str) -> bytes:
        try:
            return self._file_path(key).read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to download {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._file_path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e

    def exists(self, key: str) -> bool:
        return self._file_path(key).is_file()

    def signed_url(self, key: str, expires_in: int) -> str:
        return f"{self.base_url}/storage/{key}"
