"""
Label service: storage in, one label operation, storage out.

Provides:
- List the caller's label tree
- Read the label of a stored file
- Apply or remove a label and write the result to the target container

A malformed storage URL, a consent challenge and a timeout are raised to
the HTTP layer. Download, upload and protection failures come back as an
unsuccessful ``OperationResult``.
"""

import logging
from typing import Optional

from aiplabels.auth.oauth import CallerIdentity
from aiplabels.exceptions import StorageError, describe_error
from aiplabels.protection import (
    ContentSource,
    Label,
    LabelOperations,
    OperationResult,
    ProtectionDescriptor,
)
from aiplabels.server.config import Settings
from aiplabels.storage import StorageLocator, StorageRouter

logger = logging.getLogger(__name__)


class LabelService:
    """
    Orchestrates storage and label operations for one request.

    Example:
        service = LabelService(operations, storage, settings)
        result = await service.set_label(caller, blob_url, label_id)
        result.target_url  # https://acct.blob.core.windows.net/target/a.docx
    """

    def __init__(
        self,
        operations: LabelOperations,
        storage: StorageRouter,
        settings: Settings,
    ):
        self.operations = operations
        self.storage = storage
        self.target_container = settings.storage.target_container

    async def list_labels(self, caller: CallerIdentity) -> list[Label]:
        return await self.operations.list_labels(caller)

    async def _load(self, locator: StorageLocator) -> ContentSource:
        data = await self.storage.download(locator)
        return ContentSource.from_bytes(data, locator.file_name)

    async def _store(self, locator: StorageLocator, result: OperationResult) -> OperationResult:
        """Upload a successful result's output to the target container."""
        if not result.success or result.output is None:
            return result
        try:
            result.target_url = await self.storage.upload_to(
                locator, self.target_container, result.output
            )
        except StorageError as e:
            return OperationResult.failed(f"Failed to upload result: {describe_error(e)}", e)
        return result

    async def get_label(self, caller: CallerIdentity, blob_url: str) -> OperationResult:
        locator = self.storage.parse(blob_url)
        try:
            source = await self._load(locator)
        except StorageError as e:
            return OperationResult.failed(describe_error(e), e)
        return await self.operations.get_label(caller, source)

    async def set_label(
        self,
        caller: CallerIdentity,
        blob_url: str,
        label_id: str,
        justification: Optional[str] = None,
        descriptor: Optional[ProtectionDescriptor] = None,
    ) -> OperationResult:
        locator = self.storage.parse(blob_url)
        try:
            source = await self._load(locator)
        except StorageError as e:
            return OperationResult.failed(f"Failed to apply label:{label_id}\n{describe_error(e)}", e)

        result = await self.operations.apply_label(
            caller, source, label_id, justification=justification, descriptor=descriptor
        )
        result = await self._store(locator, result)
        if result.success:
            logger.info("Label %s applied to %s -> %s", label_id, locator.url, result.target_url)
        return result

    async def remove_label(
        self,
        caller: CallerIdentity,
        blob_url: str,
        justification: Optional[str] = None,
    ) -> OperationResult:
        locator = self.storage.parse(blob_url)
        try:
            source = await self._load(locator)
        except StorageError as e:
            return OperationResult.failed(f"Failed to remove label:{describe_error(e)}", e)

        result = await self.operations.remove_label(caller, source, justification=justification)
        result = await self._store(locator, result)
        if result.success:
            logger.info("Label removed from %s -> %s", locator.url, result.target_url)
        return result

