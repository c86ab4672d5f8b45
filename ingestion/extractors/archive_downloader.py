"""
Archive retrieval from object storage.

Export archives are too large to hold in memory, so the object is streamed
chunk by chunk into a private scratch file named after the import. A failed
transfer never leaves a partial file behind.
"""

from pathlib import Path
from typing import Optional, Union
from urllib.parse import quote
import logging
import os

import httpx

from core.config import settings
from core.exceptions import ArchiveDownloadError, ResourceNotFoundError

logger = logging.getLogger(__name__)


class ArchiveDownloader:
    """
    Streams uploaded archives from the storage REST endpoint.

    Attributes:
        storage_url: Base URL of the storage service
        service_key: Service credential sent as bearer token and apikey
        bucket: Bucket holding the uploads
        scratch_dir: Directory for local copies
        chunk_size: Bytes per streamed chunk
        timeout: Transfer timeout in seconds
    """

    def __init__(
        self,
        storage_url: Optional[str] = None,
        service_key: Optional[str] = None,
        bucket: Optional[str] = None,
        scratch_dir: Optional[str] = None,
        chunk_size: Optional[int] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.storage_url = (storage_url if storage_url is not None else settings.STORAGE_URL).rstrip("/")
        self.service_key = service_key if service_key is not None else settings.STORAGE_SERVICE_KEY
        self.bucket = bucket or settings.STORAGE_BUCKET
        self.scratch_dir = Path(scratch_dir or settings.SCRATCH_DIR)
        self.chunk_size = chunk_size or settings.DOWNLOAD_CHUNK_SIZE
        self.timeout = timeout or settings.DOWNLOAD_TIMEOUT_SECONDS
        self.transport = transport

    def object_url(self, storage_path: str) -> str:
        return f"{self.storage_url}/storage/v1/object/{self.bucket}/{quote(storage_path.lstrip('/'), safe='/')}"

    def scratch_path(self, import_id) -> Path:
        return self.scratch_dir / f"{import_id}.zip"

    def _headers(self) -> dict:
        headers = {}
        if self.service_key:
            headers["Authorization"] = f"Bearer {self.service_key}"
            headers["apikey"] = self.service_key
        return headers

    async def download(self, storage_path: str, import_id) -> Path:
        """
        Stream one archive to {scratch_dir}/{import_id}.zip.

        Returns:
            Path of the local copy

        Raises:
            ResourceNotFoundError: storage answered 404
            ArchiveDownloadError: any other transfer failure
        """
        context = {"storage_path": storage_path, "import_id": str(import_id)}

        if not self.storage_url:
            raise ArchiveDownloadError("STORAGE_URL is not configured", context=context)

        url = self.object_url(storage_path)
        target = self.scratch_path(import_id)
        self.scratch_dir.mkdir(parents=True, exist_ok=True)

        logger.info(f"Downloading {storage_path} to {target}")
        written = 0

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                async with client.stream("GET", url, headers=self._headers()) as response:
                    if response.status_code == 404:
                        raise ResourceNotFoundError(
                            f"Archive not found in storage: {storage_path}",
                            context={**context, "status_code": 404}
                        )

                    if response.status_code >= 400:
                        body = (await response.aread())[:500].decode("utf-8", errors="replace")
                        raise ArchiveDownloadError(
                            f"Storage returned HTTP {response.status_code} for {storage_path}",
                            context={**context, "status_code": response.status_code, "response_body": body}
                        )

                    with open(target, "wb") as fh:
                        async for chunk in response.aiter_bytes(self.chunk_size):
                            fh.write(chunk)
                            written += len(chunk)

        except ArchiveDownloadError:
            self._discard(target)
            raise

        except (httpx.HTTPError, OSError) as e:
            self._discard(target)
            raise ArchiveDownloadError(
                f"Archive transfer failed: {e}",
                context={**context, "bytes_written": written},
                original_exception=e
            )

        logger.info(f"Downloaded {written / (1024 * 1024):.1f} MB for import {import_id}")
        return target

    @staticmethod
    def _discard(path: Path) -> None:
        if path.exists():
            cleanup_scratch_file(path)


def cleanup_scratch_file(path: Union[str, Path, None]) -> None:
    """
    Remove a local archive copy. Never raises: failures are logged only.
    """
    if not path:
        return
    try:
        os.remove(path)
        logger.debug(f"Removed scratch file {path}")
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove scratch file {path}: {e}")
