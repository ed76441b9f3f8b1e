"""
Shared plumbing for the storage backends.

Azure SDK clients are synchronous here; every call goes through
``run_blocking`` which moves it to a worker thread, bounds it with the
storage timeout and converts Azure errors into ``StorageError``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any, Callable, Protocol, TypeVar

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.identity import AzureCliCredential, ChainedTokenCredential, ManagedIdentityCredential

from aiplabels.exceptions import OperationTimeoutError, StorageError
from aiplabels.storage.locator import StorageLocator

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StorageBackend(Protocol):
    """Download, upload and stream content addressed by a locator."""

    async def download(self, locator: StorageLocator) -> bytes:
        ...

    async def upload(
        self, container: str, name: str, data: bytes, account_url: str | None = None
    ) -> str:
        ...

    def open_stream(self, locator: StorageLocator) -> AsyncIterator[bytes]:
        ...

    async def close(self) -> None:
        ...


def connection_string_account(connection_string: str) -> str | None:
    """Account name from an Azure storage connection string."""
    for part in connection_string.split(";"):
        key, _, value = part.partition("=")
        if key.strip().lower() == "accountname":
            return value.strip().lower() or None
    return None


def build_credential() -> ChainedTokenCredential:
    """Managed identity first, then the developer's ``az login``."""
    return ChainedTokenCredential(ManagedIdentityCredential(), AzureCliCredential())


async def run_blocking(
    func: Callable[..., T],
    *args: Any,
    timeout: float,
    operation: str,
    url: str | None = None,
) -> T:
    """Run a blocking storage call in a thread with a timeout."""
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise OperationTimeoutError(f"storage {operation}", timeout) from e
    except ResourceNotFoundError as e:
        raise StorageError("Storage resource not found", url=url, operation=operation) from e
    except (AzureError, OSError) as e:
        logger.warning("Storage %s failed for %s: %s", operation, url, e)
        raise StorageError(f"Storage {operation} failed: {e}", url=url, operation=operation) from e


async def iterate_blocking(
    chunks: Any,
    timeout: float,
    url: str | None = None,
) -> AsyncIterator[bytes]:
    """Pull chunks from a blocking iterator one worker-thread call at a time."""
    iterator = iter(chunks)
    while True:
        chunk = await run_blocking(next, iterator, None, timeout=timeout, operation="stream", url=url)
        if chunk is None:
            return
        yield chunk
