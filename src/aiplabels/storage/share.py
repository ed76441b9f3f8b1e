"""
Azure File Share backend.

Same contract as ``BlobStore``; the "container" is the share name and the
name is a path inside the share. Parent directories are created on upload.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from urllib.parse import unquote

from azure.core.exceptions import ResourceExistsError
from azure.storage.fileshare import ShareServiceClient

from aiplabels.exceptions import ConfigurationError, StorageError
from aiplabels.server.config import Settings
from aiplabels.storage.base import build_credential, iterate_blocking, run_blocking
from aiplabels.storage.locator import StorageLocator

logger = logging.getLogger(__name__)


class FileShareStore:
    """Download and upload files on Azure file shares."""

    service = "file"

    def __init__(self, settings: Settings, credential=None):
        storage = settings.storage
        self._connection_string = storage.connection_string
        self._use_managed_identity = storage.use_managed_identity
        self._credential = credential
        self.max_size_bytes = storage.max_file_size_mb * 1024 * 1024
        self.timeout = settings.timeouts.storage_io
        self._clients: dict[str, ShareServiceClient] = {}

    def _build_client(self, account_url: str | None) -> ShareServiceClient:
        if self._use_managed_identity:
            if not account_url:
                raise ConfigurationError("An account URL is required with managed identity")
            if self._credential is None:
                self._credential = build_credential()
            # OAuth against file shares requires an explicit token intent
            return ShareServiceClient(
                account_url=account_url,
                credential=self._credential,
                token_intent="backup",
            )

        if self._connection_string:
            return ShareServiceClient.from_connection_string(self._connection_string)

        raise ConfigurationError(
            "No storage credentials configured: set storage.connection_string "
            "or storage.use_managed_identity"
        )

    def _client(self, account_url: str | None) -> ShareServiceClient:
        key = (account_url or "") if self._use_managed_identity else ""
        client = self._clients.get(key)
        if client is None:
            client = self._build_client(account_url)
            self._clients[key] = client
        return client

    def _file_client(self, locator: StorageLocator):
        share = self._client(locator.account_url).get_share_client(locator.container)
        return share.get_file_client(locator.name)

    async def download(self, locator: StorageLocator) -> bytes:
        file_client = self._file_client(locator)
        downloader = await run_blocking(
            file_client.download_file, timeout=self.timeout, operation="download", url=locator.url
        )
        size = downloader.size or 0
        if size > self.max_size_bytes:
            raise StorageError(
                f"File too large for processing: {size} bytes (max: {self.max_size_bytes} bytes)",
                url=locator.url,
                operation="download",
            )
        return await run_blocking(
            downloader.readall, timeout=self.timeout, operation="download", url=locator.url
        )

    async def upload(
        self, container: str, name: str, data: bytes, account_url: str | None = None
    ) -> str:
        """Upload *data* to ``share/name``, creating the share and directories."""
        share = self._client(account_url).get_share_client(container)

        def _prepare() -> None:
            try:
                share.create_share()
                logger.info("Created share %s", container)
            except ResourceExistsError:
                pass
            directory = ""
            for segment in name.split("/")[:-1]:
                directory = f"{directory}/{segment}" if directory else segment
                try:
                    share.create_directory(directory)
                except ResourceExistsError:
                    pass

        await run_blocking(_prepare, timeout=self.timeout, operation="create_share")

        file_client = share.get_file_client(name)
        await run_blocking(
            file_client.upload_file, data, timeout=self.timeout, operation="upload", url=file_client.url
        )
        url = unquote(file_client.url)
        logger.info("Uploaded %d bytes to %s", len(data), url)
        return url

    async def open_stream(self, locator: StorageLocator) -> AsyncIterator[bytes]:
        file_client = self._file_client(locator)
        downloader = await run_blocking(
            file_client.download_file, timeout=self.timeout, operation="download", url=locator.url
        )
        async for chunk in iterate_blocking(downloader.chunks(), self.timeout, locator.url):
            yield chunk

    async def close(self) -> None:
        for client in self._clients.values():
            await run_blocking(client.close, timeout=self.timeout, operation="close")
        self._clients.clear()
