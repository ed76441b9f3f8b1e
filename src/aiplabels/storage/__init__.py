"""
Storage access for label operations.

Provides:
- StorageLocator: parsed blob / file share URL
- BlobStore: Azure Blob Storage backend
- FileShareStore: Azure File Share backend
- StorageRouter: picks the backend for a locator
"""

from __future__ import annotations

from collections.abc import AsyncIterator

from aiplabels.exceptions import InvalidLocatorError
from aiplabels.server.config import Settings
from aiplabels.storage.base import StorageBackend, connection_string_account
from aiplabels.storage.blob import BlobStore
from aiplabels.storage.locator import StorageLocator
from aiplabels.storage.share import FileShareStore


class StorageRouter:
    """Dispatch storage calls to the backend matching the URL's service."""

    def __init__(self, settings: Settings, blob: StorageBackend | None = None, share: StorageBackend | None = None):
        self.settings = settings
        self._backends: dict[str, StorageBackend] = {
            "blob": blob if blob is not None else BlobStore(settings),
            "file": share if share is not None else FileShareStore(settings),
        }

    def parse(self, url: str) -> StorageLocator:
        """Parse a request URL and check it names a storage account we serve.

        With a connection string every call goes to that account, so a URL
        naming any other account is rejected.
        """
        storage = self.settings.storage
        locator = StorageLocator.parse(url, storage.endpoint_suffixes)
        if not storage.use_managed_identity and storage.connection_string:
            account = connection_string_account(storage.connection_string)
            if account and locator.account != account:
                raise InvalidLocatorError(
                    f"Storage account {locator.account} is not the configured account {account}",
                    url=url,
                    operation="parse",
                )
        return locator

    def for_locator(self, locator: StorageLocator) -> StorageBackend:
        try:
            return self._backends[locator.service]
        except KeyError:
            raise InvalidLocatorError(
                f"Unsupported storage service: {locator.service}", url=locator.url
            ) from None

    @property
    def blob(self) -> StorageBackend:
        return self._backends["blob"]

    async def download(self, locator: StorageLocator) -> bytes:
        return await self.for_locator(locator).download(locator)

    def open_stream(self, locator: StorageLocator) -> AsyncIterator[bytes]:
        return self.for_locator(locator).open_stream(locator)

    async def upload_to(self, locator: StorageLocator, container: str, data: bytes) -> str:
        """Upload *data* next to *locator*: same account and name, other container."""
        target = locator.with_container(container)
        return await self.for_locator(target).upload(
            target.container, target.name, data, account_url=target.account_url
        )

    async def close(self) -> None:
        for backend in self._backends.values():
            await backend.close()


__all__ = [
    "BlobStore",
    "FileShareStore",
    "StorageBackend",
    "StorageLocator",
    "StorageRouter",
]
