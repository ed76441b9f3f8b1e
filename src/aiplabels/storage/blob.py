"""
Azure Blob Storage backend.

Clients are built from ``storage.connection_string`` or, when
``storage.use_managed_identity`` is set, from the account URL of the request
with a managed identity / Azure CLI credential chain.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from urllib.parse import unquote

from azure.core.exceptions import ResourceExistsError
from azure.storage.blob import BlobServiceClient

from aiplabels.exceptions import ConfigurationError, StorageError
from aiplabels.server.config import Settings
from aiplabels.storage.base import build_credential, iterate_blocking, run_blocking
from aiplabels.storage.locator import StorageLocator

logger = logging.getLogger(__name__)


class BlobStore:
    """Download and upload blobs for label operations."""

    service = "blob"

    def __init__(self, settings: Settings, credential=None):
        storage = settings.storage
        self._connection_string = storage.connection_string
        self._use_managed_identity = storage.use_managed_identity
        self._credential = credential
        self.max_size_bytes = storage.max_file_size_mb * 1024 * 1024
        self.chunk_size = storage.download_chunk_size
        self.timeout = settings.timeouts.storage_io
        self._clients: dict[str, BlobServiceClient] = {}

    # ── Client construction ─────────────────────────────────────────

    def _build_client(self, account_url: str | None) -> BlobServiceClient:
        if self._use_managed_identity:
            if not account_url:
                raise ConfigurationError("An account URL is required with managed identity")
            if self._credential is None:
                self._credential = build_credential()
            return BlobServiceClient(account_url=account_url, credential=self._credential)

        if self._connection_string:
            return BlobServiceClient.from_connection_string(
                self._connection_string,
                max_single_get_size=self.chunk_size,
                max_chunk_get_size=self.chunk_size,
            )

        raise ConfigurationError(
            "No storage credentials configured: set storage.connection_string "
            "or storage.use_managed_identity"
        )

    def _client(self, account_url: str | None) -> BlobServiceClient:
        key = (account_url or "") if self._use_managed_identity else ""
        client = self._clients.get(key)
        if client is None:
            client = self._build_client(account_url)
            self._clients[key] = client
        return client

    # ── Operations ──────────────────────────────────────────────────

    async def download(self, locator: StorageLocator) -> bytes:
        """Download the whole blob, refusing blobs above the size limit."""
        blob_client = self._client(locator.account_url).get_blob_client(locator.container, locator.name)
        downloader = await run_blocking(
            blob_client.download_blob, timeout=self.timeout, operation="download", url=locator.url
        )
        size = downloader.size or 0
        if size > self.max_size_bytes:
            raise StorageError(
                f"File too large for processing: {size} bytes (max: {self.max_size_bytes} bytes)",
                url=locator.url,
                operation="download",
            )
        content = await run_blocking(
            downloader.readall, timeout=self.timeout, operation="download", url=locator.url
        )
        logger.debug("Downloaded %d bytes from %s", len(content), locator.url)
        return content

    async def upload(
        self, container: str, name: str, data: bytes, account_url: str | None = None
    ) -> str:
        """Upload *data* to ``container/name``, overwriting; returns the decoded URL."""
        client = self._client(account_url)
        container_client = client.get_container_client(container)

        def _ensure_container() -> None:
            try:
                container_client.create_container()
                logger.info("Created container %s", container)
            except ResourceExistsError:
                pass

        await run_blocking(_ensure_container, timeout=self.timeout, operation="create_container")

        blob_client = container_client.get_blob_client(name)
        await run_blocking(
            lambda: blob_client.upload_blob(data, overwrite=True),
            timeout=self.timeout,
            operation="upload",
            url=blob_client.url,
        )
        url = unquote(blob_client.url)
        logger.info("Uploaded %d bytes to %s", len(data), url)
        return url

    async def open_stream(self, locator: StorageLocator) -> AsyncIterator[bytes]:
        """Yield the blob in chunks."""
        blob_client = self._client(locator.account_url).get_blob_client(locator.container, locator.name)
        downloader = await run_blocking(
            blob_client.download_blob, timeout=self.timeout, operation="download", url=locator.url
        )
        async for chunk in iterate_blocking(downloader.chunks(), self.timeout, locator.url):
            yield chunk

    async def close(self) -> None:
        for client in self._clients.values():
            await run_blocking(client.close, timeout=self.timeout, operation="close")
        self._clients.clear()
