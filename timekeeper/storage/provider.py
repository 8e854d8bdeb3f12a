from typing import BinaryIO, Optional


class StorageProvider:
    def get_download_url(self, key: str, expires_s: int) -> Optional[str]:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def copy_in(self, src_stream_or_url: str | BinaryIO, key: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


_provider: Optional[StorageProvider] = None


def get_storage_provider() -> StorageProvider:
    """Provider selected by STORAGE_PROVIDER, created on first use."""
    global _provider
    if _provider is None:
        from ..config import settings
        if settings.storage_provider == "blob":
            from .blob_provider import BlobStorageProvider
            _provider = BlobStorageProvider()
        else:
            from .local_provider import LocalStorageProvider
            _provider = LocalStorageProvider(settings.local_storage_dir)
    return _provider
