"""
Azure Blob storage for attendance selfies.
Reads are served through short-lived read-only SAS URLs.
"""
from datetime import datetime, timedelta
from typing import BinaryIO, Optional

import structlog
from azure.core.exceptions import ResourceNotFoundError
from azure.storage.blob import (
    BlobClient,
    BlobSasPermissions,
    BlobServiceClient,
    ContentSettings,
    generate_blob_sas,
)

from ..config import settings
from .provider import StorageProvider

logger = structlog.get_logger(__name__)

CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"


def content_type_for(key: str) -> str:
    dot = key.rfind(".")
    if dot == -1:
        return DEFAULT_CONTENT_TYPE
    return CONTENT_TYPES.get(key[dot:].lower(), DEFAULT_CONTENT_TYPE)


class BlobStorageProvider(StorageProvider):
    def __init__(self) -> None:
        if not settings.azure_blob_connection or not settings.azure_blob_container:
            raise RuntimeError("AZURE_BLOB_CONNECTION and AZURE_BLOB_CONTAINER must be set")
        self._service = BlobServiceClient.from_connection_string(settings.azure_blob_connection)
        self._container = settings.azure_blob_container

    def _blob(self, key: str) -> BlobClient:
        return self._service.get_blob_client(self._container, key.lstrip("/"))

    def get_download_url(self, key: str, expires_s: int) -> Optional[str]:
        blob = self._blob(key)
        sas = generate_blob_sas(
            account_name=self._service.account_name,
            container_name=self._container,
            blob_name=blob.blob_name,
            account_key=self._service.credential.account_key,
            permission=BlobSasPermissions(read=True),
            expiry=datetime.utcnow() + timedelta(seconds=expires_s),
        )
        return f"{blob.url}?{sas}"

    def exists(self, key: str) -> bool:
        return self._blob(key).exists()

    def copy_in(self, src_stream_or_url: str | BinaryIO, key: str) -> None:
        blob = self._blob(key)
        if isinstance(src_stream_or_url, str):
            blob.start_copy_from_url(src_stream_or_url)
            logger.info("blob_copy_started", key=blob.blob_name)
            return
        blob.upload_blob(
            src_stream_or_url,
            overwrite=True,
            content_settings=ContentSettings(content_type=content_type_for(key)),
        )
        logger.info("blob_uploaded", key=blob.blob_name)

    def delete(self, key: str) -> None:
        try:
            self._blob(key).delete_blob()
        except ResourceNotFoundError:
            logger.info("blob_already_deleted", key=key)
