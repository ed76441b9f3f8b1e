"""
Tests for the Azure storage backends.

The Azure SDK clients are replaced with MagicMock; only the calls the
backends make and the error mapping are checked.
"""

from unittest.mock import MagicMock, patch

import pytest
from azure.core.exceptions import HttpResponseError, ResourceExistsError, ResourceNotFoundError

from aiplabels.exceptions import ConfigurationError, OperationTimeoutError, StorageError
from aiplabels.storage.locator import StorageLocator

SOURCE = StorageLocator.parse("https://devstore.blob.core.windows.net/source/sample.xlsx")
SHARE_FILE = StorageLocator.parse("https://devstore.file.core.windows.net/reports/2024/q1.docx")


@pytest.fixture
def connected(settings):
    settings.storage.connection_string = "UseDevelopmentStorage=true"
    return settings


def downloader(data: bytes, size: int | None = None):
    d = MagicMock()
    d.size = len(data) if size is None else size
    d.readall.return_value = data
    d.chunks.return_value = iter([data[:4], data[4:]])
    return d


class TestRunBlocking:
    @pytest.mark.asyncio
    async def test_not_found(self):
        from aiplabels.storage.base import run_blocking

        def missing():
            raise ResourceNotFoundError("The specified blob does not exist.")

        with pytest.raises(StorageError, match="not found") as exc_info:
            await run_blocking(missing, timeout=1, operation="download", url=SOURCE.url)
        assert exc_info.value.url == SOURCE.url

    @pytest.mark.asyncio
    async def test_azure_error(self):
        from aiplabels.storage.base import run_blocking

        def forbidden():
            raise HttpResponseError("This request is not authorized")

        with pytest.raises(StorageError, match="not authorized"):
            await run_blocking(forbidden, timeout=1, operation="upload")

    @pytest.mark.asyncio
    async def test_timeout(self):
        import threading

        from aiplabels.storage.base import run_blocking

        release = threading.Event()
        try:
            with pytest.raises(OperationTimeoutError):
                await run_blocking(release.wait, 2, timeout=0.05, operation="download")
        finally:
            release.set()

    @pytest.mark.asyncio
    async def test_iterate_blocking(self):
        from aiplabels.storage.base import iterate_blocking

        chunks = [c async for c in iterate_blocking([b"ab", b"cd"], timeout=1)]
        assert chunks == [b"ab", b"cd"]


class TestBlobStore:
    @pytest.mark.asyncio
    async def test_download(self, connected):
        from aiplabels.storage.blob import BlobStore

        with patch("aiplabels.storage.blob.BlobServiceClient") as service_cls:
            service = service_cls.from_connection_string.return_value
            service.get_blob_client.return_value.download_blob.return_value = downloader(b"content")

            store = BlobStore(connected)
            assert await store.download(SOURCE) == b"content"

        service.get_blob_client.assert_called_with("source", "sample.xlsx")

    @pytest.mark.asyncio
    async def test_download_too_large(self, connected):
        from aiplabels.storage.blob import BlobStore

        connected.storage.max_file_size_mb = 1
        with patch("aiplabels.storage.blob.BlobServiceClient") as service_cls:
            service = service_cls.from_connection_string.return_value
            big = downloader(b"", size=2 * 1024 * 1024)
            service.get_blob_client.return_value.download_blob.return_value = big

            with pytest.raises(StorageError, match="too large"):
                await BlobStore(connected).download(SOURCE)
            big.readall.assert_not_called()

    @pytest.mark.asyncio
    async def test_download_missing_blob(self, connected):
        from aiplabels.storage.blob import BlobStore

        with patch("aiplabels.storage.blob.BlobServiceClient") as service_cls:
            service = service_cls.from_connection_string.return_value
            service.get_blob_client.return_value.download_blob.side_effect = ResourceNotFoundError("gone")

            with pytest.raises(StorageError):
                await BlobStore(connected).download(SOURCE)

    @pytest.mark.asyncio
    async def test_upload_creates_container_and_overwrites(self, connected):
        from aiplabels.storage.blob import BlobStore

        with patch("aiplabels.storage.blob.BlobServiceClient") as service_cls:
            container = service_cls.from_connection_string.return_value.get_container_client.return_value
            container.create_container.side_effect = ResourceExistsError("exists")
            blob_client = container.get_blob_client.return_value
            blob_client.url = "https://devstore.blob.core.windows.net/target/Quarterly%20Report.xlsx"

            url = await BlobStore(connected).upload("target", "Quarterly Report.xlsx", b"data")

        assert url == "https://devstore.blob.core.windows.net/target/Quarterly Report.xlsx"
        blob_client.upload_blob.assert_called_once_with(b"data", overwrite=True)

    @pytest.mark.asyncio
    async def test_open_stream(self, connected):
        from aiplabels.storage.blob import BlobStore

        with patch("aiplabels.storage.blob.BlobServiceClient") as service_cls:
            service = service_cls.from_connection_string.return_value
            service.get_blob_client.return_value.download_blob.return_value = downloader(b"abcdefgh")

            chunks = [c async for c in BlobStore(connected).open_stream(SOURCE)]

        assert b"".join(chunks) == b"abcdefgh"

    @pytest.mark.asyncio
    async def test_no_credentials(self, settings):
        from aiplabels.storage.blob import BlobStore

        with pytest.raises(ConfigurationError):
            await BlobStore(settings).download(SOURCE)

    @pytest.mark.asyncio
    async def test_managed_identity_client_per_account(self, settings):
        from aiplabels.storage.blob import BlobStore

        settings.storage.use_managed_identity = True
        credential = MagicMock()
        other = StorageLocator.parse("https://otherstore.blob.core.windows.net/source/a.txt")

        with patch("aiplabels.storage.blob.BlobServiceClient") as service_cls:
            service_cls.return_value.get_blob_client.return_value.download_blob.return_value = downloader(b"x")
            store = BlobStore(settings, credential=credential)
            await store.download(SOURCE)
            await store.download(SOURCE)
            await store.download(other)

        assert service_cls.call_count == 2
        service_cls.assert_any_call(account_url=SOURCE.account_url, credential=credential)
        service_cls.assert_any_call(account_url=other.account_url, credential=credential)

    @pytest.mark.asyncio
    async def test_managed_identity_requires_account_url(self, settings):
        from aiplabels.storage.blob import BlobStore

        settings.storage.use_managed_identity = True
        with pytest.raises(ConfigurationError):
            await BlobStore(settings, credential=MagicMock()).upload("target", "a.txt", b"x")

    @pytest.mark.asyncio
    async def test_close(self, connected):
        from aiplabels.storage.blob import BlobStore

        with patch("aiplabels.storage.blob.BlobServiceClient") as service_cls:
            service = service_cls.from_connection_string.return_value
            service.get_blob_client.return_value.download_blob.return_value = downloader(b"x")
            store = BlobStore(connected)
            await store.download(SOURCE)
            await store.close()

        service.close.assert_called_once()


class TestFileShareStore:
    @pytest.mark.asyncio
    async def test_download(self, connected):
        from aiplabels.storage.share import FileShareStore

        with patch("aiplabels.storage.share.ShareServiceClient") as service_cls:
            share = service_cls.from_connection_string.return_value.get_share_client.return_value
            share.get_file_client.return_value.download_file.return_value = downloader(b"report")

            assert await FileShareStore(connected).download(SHARE_FILE) == b"report"

        share.get_file_client.assert_called_with("2024/q1.docx")

    @pytest.mark.asyncio
    async def test_upload_creates_directories(self, connected):
        from aiplabels.storage.share import FileShareStore

        with patch("aiplabels.storage.share.ShareServiceClient") as service_cls:
            share = service_cls.from_connection_string.return_value.get_share_client.return_value
            share.create_share.side_effect = ResourceExistsError("exists")
            share.create_directory.side_effect = [ResourceExistsError("exists"), None]
            share.get_file_client.return_value.url = "https://devstore.file.core.windows.net/target/a/b/c.docx"

            url = await FileShareStore(connected).upload("target", "a/b/c.docx", b"doc")

        assert url.endswith("/target/a/b/c.docx")
        assert [c.args[0] for c in share.create_directory.call_args_list] == ["a", "a/b"]
        share.get_file_client.return_value.upload_file.assert_called_once_with(b"doc")


class TestStorageRouter:
    def test_dispatch_by_service(self, settings):
        from aiplabels.storage import StorageRouter

        blob, share = MagicMock(), MagicMock()
        router = StorageRouter(settings, blob=blob, share=share)

        assert router.for_locator(SOURCE) is blob
        assert router.for_locator(SHARE_FILE) is share
        assert router.blob is blob

    def test_parse_checks_connection_string_account(self, settings):
        from aiplabels.exceptions import InvalidLocatorError
        from aiplabels.storage import StorageRouter

        settings.storage.connection_string = (
            "DefaultEndpointsProtocol=https;AccountName=DevStore;AccountKey=abc;EndpointSuffix=core.windows.net"
        )
        router = StorageRouter(settings, blob=MagicMock(), share=MagicMock())

        assert router.parse("https://devstore.blob.core.windows.net/source/sample.xlsx") == SOURCE
        with pytest.raises(InvalidLocatorError, match="otherstore"):
            router.parse("https://otherstore.blob.core.windows.net/source/sample.xlsx")

    def test_parse_any_account_with_managed_identity(self, settings):
        from aiplabels.storage import StorageRouter

        settings.storage.connection_string = "AccountName=devstore;AccountKey=abc"
        settings.storage.use_managed_identity = True
        router = StorageRouter(settings, blob=MagicMock(), share=MagicMock())

        locator = router.parse("https://otherstore.blob.core.windows.net/source/sample.xlsx")
        assert locator.account == "otherstore"

    def test_parse_uses_configured_endpoints(self, settings):
        from aiplabels.exceptions import InvalidLocatorError
        from aiplabels.storage import StorageRouter

        settings.storage.endpoint_suffixes = ["storage.example.test"]
        router = StorageRouter(settings, blob=MagicMock(), share=MagicMock())

        assert router.parse("https://devstore.blob.storage.example.test/source/a.txt").account == "devstore"
        with pytest.raises(InvalidLocatorError):
            router.parse("https://devstore.blob.core.evil.example/source/a.txt")

    @pytest.mark.asyncio
    async def test_upload_to_same_account(self, settings, store):
        from aiplabels.storage import StorageRouter

        router = StorageRouter(settings, blob=store, share=store)
        url = await router.upload_to(SOURCE, "target", b"labeled")

        assert url == "https://devstore.blob.core.windows.net/target/sample.xlsx"
        assert store.objects[url] == b"labeled"

    @pytest.mark.asyncio
    async def test_open_stream(self, settings, store):
        from aiplabels.storage import StorageRouter

        router = StorageRouter(settings, blob=store, share=store)
        chunks = [c async for c in router.open_stream(SOURCE)]
        assert b"".join(chunks) == b"spreadsheet bytes"

    @pytest.mark.asyncio
    async def test_close_closes_backends(self, settings, store):
        from aiplabels.storage import StorageRouter

        router = StorageRouter(settings, blob=store, share=store)
        await router.close()
        assert store.closed

    def test_default_backends(self, settings):
        from aiplabels.storage import BlobStore, FileShareStore, StorageRouter

        router = StorageRouter(settings)
        assert isinstance(router.blob, BlobStore)
        assert isinstance(router.for_locator(SHARE_FILE), FileShareStore)
