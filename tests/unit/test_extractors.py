"""
Unit tests for archive retrieval from object storage
"""

import httpx
import pytest
from core.exceptions import ArchiveDownloadError, ResourceNotFoundError
from ingestion.extractors.archive_downloader import ArchiveDownloader, cleanup_scratch_file


IMPORT_ID = "0b7c6a1e-4a55-4f0e-9a53-0c1f3b2d9e11"
STORAGE_PATH = "user-1/export 2024.zip"


def make_downloader(tmp_path, handler, **kwargs) -> ArchiveDownloader:
    options = {
        "storage_url": "https://storage.test/",
        "service_key": "service-key",
        "bucket": "apple_health_uploads",
        "scratch_dir": str(tmp_path / "scratch"),
        "chunk_size": 4,
        "transport": httpx.MockTransport(handler),
    }
    options.update(kwargs)
    return ArchiveDownloader(**options)


class TestArchiveDownloader:
    """Test streaming downloads into scratch files"""

    def test_object_url(self, tmp_path):
        downloader = make_downloader(tmp_path, lambda request: httpx.Response(200))

        assert downloader.object_url(STORAGE_PATH) == (
            "https://storage.test/storage/v1/object/apple_health_uploads/user-1/export%202024.zip"
        )
        assert downloader.scratch_path(IMPORT_ID).name == f"{IMPORT_ID}.zip"

    @pytest.mark.asyncio
    async def test_download_success(self, tmp_path):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["apikey"] = request.headers.get("apikey")
            return httpx.Response(200, content=b"PK\x03\x04archive-bytes")

        downloader = make_downloader(tmp_path, handler)
        path = await downloader.download(STORAGE_PATH, IMPORT_ID)

        assert path == downloader.scratch_path(IMPORT_ID)
        assert path.read_bytes() == b"PK\x03\x04archive-bytes"
        assert seen["url"].endswith("/apple_health_uploads/user-1/export%202024.zip")
        assert seen["auth"] == "Bearer service-key"
        assert seen["apikey"] == "service-key"

    @pytest.mark.asyncio
    async def test_not_found(self, tmp_path):
        downloader = make_downloader(tmp_path, lambda request: httpx.Response(404, json={"error": "not_found"}))

        with pytest.raises(ResourceNotFoundError) as exc_info:
            await downloader.download(STORAGE_PATH, IMPORT_ID)

        assert exc_info.value.context["status_code"] == 404
        assert not downloader.scratch_path(IMPORT_ID).exists()

    @pytest.mark.asyncio
    async def test_server_error(self, tmp_path):
        downloader = make_downloader(tmp_path, lambda request: httpx.Response(503, text="unavailable"))

        with pytest.raises(ArchiveDownloadError) as exc_info:
            await downloader.download(STORAGE_PATH, IMPORT_ID)

        assert not isinstance(exc_info.value, ResourceNotFoundError)
        assert exc_info.value.context["status_code"] == 503
        assert exc_info.value.context["response_body"] == "unavailable"
        assert not downloader.scratch_path(IMPORT_ID).exists()

    @pytest.mark.asyncio
    async def test_network_error(self, tmp_path):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        downloader = make_downloader(tmp_path, handler)

        with pytest.raises(ArchiveDownloadError) as exc_info:
            await downloader.download(STORAGE_PATH, IMPORT_ID)

        assert isinstance(exc_info.value.original_exception, httpx.ConnectError)
        assert not downloader.scratch_path(IMPORT_ID).exists()

    @pytest.mark.asyncio
    async def test_storage_url_not_configured(self, tmp_path):
        downloader = make_downloader(tmp_path, lambda request: httpx.Response(200), storage_url="")

        with pytest.raises(ArchiveDownloadError):
            await downloader.download(STORAGE_PATH, IMPORT_ID)


class TestCleanupScratchFile:

    def test_removes_file(self, tmp_path):
        path = tmp_path / "a.zip"
        path.write_bytes(b"x")

        cleanup_scratch_file(path)

        assert not path.exists()

    def test_missing_file_and_none_are_ignored(self, tmp_path):
        cleanup_scratch_file(tmp_path / "missing.zip")
        cleanup_scratch_file(None)

    def test_os_error_is_logged_not_raised(self, tmp_path, caplog):
        directory = tmp_path / "not-a-file"
        directory.mkdir()

        cleanup_scratch_file(directory)

        assert directory.exists()
        assert "Could not remove scratch file" in caplog.text
