"""
Local filesystem storage provider for development.
Saves attendance images to a local directory instead of Azure Blob Storage.
"""
from typing import Optional, BinaryIO
from pathlib import Path
from urllib.parse import quote

import structlog

from ..config import settings
from .provider import StorageProvider

logger = structlog.get_logger(__name__)


class LocalStorageProvider(StorageProvider):
    """Local filesystem storage provider for development."""

    def __init__(self, base_dir: str = "var/storage"):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _get_path(self, key: str) -> Path:
        """Get the local filesystem path for a given key."""
        clean_key = key.replace("\\", "/").replace("..", "").lstrip("/")
        return self.base_dir / clean_key

    def get_download_url(self, key: str, expires_s: int) -> Optional[str]:
        if self._get_path(key).exists():
            return f"{settings.public_base_url}/files/local/{quote(key.lstrip('/'))}"
        return None

    def exists(self, key: str) -> bool:
        return self._get_path(key).exists()

    def copy_in(self, src_stream_or_url: str | BinaryIO, key: str) -> None:
        path = self._get_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        if isinstance(src_stream_or_url, str):
            logger.warning("local_storage_url_copy_unsupported", url=src_stream_or_url, key=key)
            return

        with open(path, "wb") as f:
            f.write(src_stream_or_url.read())

    def delete(self, key: str) -> None:
        path = self._get_path(key)
        if path.exists():
            path.unlink()
