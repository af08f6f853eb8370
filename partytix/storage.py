import logging

from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient, ContentSettings

from . import config

logger = logging.getLogger(__name__)


class BucketNotFound(Exception):
    """The target container does not exist yet."""


class BlobStore:
    def upload(self, container: str, path: str, data: bytes, content_type: str) -> str:
        """Store ``data`` and return its public URL."""
        raise NotImplementedError

    def create_container(self, container: str, public: bool = True) -> None:
        raise NotImplementedError


class AzureBlobStore(BlobStore):
    def __init__(self, connection_string: str, timeout: int | None = None):
        timeout = timeout or config.BLOB_TIMEOUT_SECONDS
        self.client = BlobServiceClient.from_connection_string(
            connection_string,
            connection_timeout=timeout,
            read_timeout=timeout,
        )

    def upload(self, container: str, path: str, data: bytes, content_type: str) -> str:
        blob_client = self.client.get_blob_client(container=container, blob=path)
        try:
            blob_client.upload_blob(
                data,
                overwrite=True,
                content_settings=ContentSettings(content_type=content_type),
            )
        except ResourceNotFoundError as e:
            raise BucketNotFound(container) from e
        return blob_client.url

    def create_container(self, container: str, public: bool = True) -> None:
        try:
            self.client.create_container(container, public_access="blob" if public else None)
            logger.info("blob container created name=%s", container)
        except ResourceExistsError:
            pass


def upload_with_container_fallback(store: BlobStore, container: str, path: str, data: bytes,
                                   content_type: str = "image/png") -> str:
    """Upload, creating the container (public read) and retrying once if it is missing."""
    try:
        return store.upload(container, path, data, content_type)
    except BucketNotFound:
        logger.warning("blob container missing, creating it name=%s", container)
        store.create_container(container, public=True)
        return store.upload(container, path, data, content_type)


def make_blob_store() -> BlobStore | None:
    if not config.AZURE_STORAGE_CONNECTION_STRING:
        logger.info("no blob store configured, QR images will be inline data URIs")
        return None
    return AzureBlobStore(config.AZURE_STORAGE_CONNECTION_STRING)
