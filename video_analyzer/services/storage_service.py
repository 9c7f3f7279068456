"""Object storage: Azure Blob in production, a local directory for dev/tests."""

import os
import asyncio
import logging
from abc import ABC, abstractmethod
from functools import partial
from typing import Optional, Tuple

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.storage.blob import BlobServiceClient, ContentSettings

from video_analyzer.core import timeouts
from video_analyzer.core.exceptions import BlobNotFoundError, StorageError

logger = logging.getLogger("storage_service")

ByteRange = Tuple[int, int]  # inclusive (start, end)


def source_key(user_id: str, upload_id: str) -> str:
    return f"uploads/{user_id}/{upload_id}/source.mp4"


def audio_key(user_id: str, upload_id: str) -> str:
    return f"uploads/{user_id}/{upload_id}/audio.mp3"


def report_key(user_id: str, upload_id: str) -> str:
    return f"uploads/{user_id}/{upload_id}/report.xlsx"


def frames_prefix(user_id: str, upload_id: str) -> str:
    return f"uploads/{user_id}/{upload_id}/frames/"


def _write_at(path: str, offset: int, data: bytes):
    with open(path, "r+b") as f:
        f.seek(offset)
        return f.write(data)


class ObjectStorage(ABC):
    @abstractmethod
    async def get(self, key: str, byte_range: Optional[ByteRange] = None) -> bytes:
        ...

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream"):
        ...

    @abstractmethod
    async def delete(self, key: str):
        """Raises BlobNotFoundError when the object is already gone."""

    @abstractmethod
    async def head(self, key: str) -> int:
        """Object size in bytes."""

    async def put_file(self, key: str, path: str, content_type: str = "application/octet-stream"):
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, _read_file, path)
        await self.put(key, data, content_type)

    async def delete_quietly(self, key: str) -> bool:
        """Delete for cleanup paths: 404 counts as success, other errors are logged."""
        try:
            await self.delete(key)
            logger.info("[STORAGE] Deleted %s", key)
            return True
        except BlobNotFoundError:
            logger.info("[STORAGE] Already gone: %s", key)
            return True
        except StorageError as e:
            logger.warning("[STORAGE] Failed to delete %s: %s", key, e)
            return False

    async def download_file(
        self,
        key: str,
        dest_path: str,
        chunk_size: int = 10 * 1024 * 1024,
        concurrency: int = 4,
        max_retries: int = 3,
    ) -> int:
        """
        Download with concurrent ranged reads merged into one local file.
        Each range retries on its own; the bytes written must add up to head().
        """
        size = await self.head(key)
        ranges = [
            (start, min(start + chunk_size, size) - 1)
            for start in range(0, size, chunk_size)
        ]
        logger.info(
            "[STORAGE] Downloading %s (%.1f MB) in %d ranges, concurrency=%d",
            key, size / 1024 / 1024, len(ranges), concurrency,
        )

        os.makedirs(os.path.dirname(os.path.abspath(dest_path)), exist_ok=True)
        with open(dest_path, "wb") as f:
            f.truncate(size)

        loop = asyncio.get_running_loop()
        sem = asyncio.Semaphore(concurrency)

        async def fetch(byte_range: ByteRange):
            start, end = byte_range
            expected = end - start + 1
            async with sem:
                for attempt in range(max_retries):
                    try:
                        data = await asyncio.wait_for(
                            self.get(key, byte_range), timeout=timeouts.STORAGE_RANGE
                        )
                        if len(data) != expected:
                            raise StorageError(
                                f"Short read for {key} [{start}-{end}]: {len(data)}/{expected} bytes"
                            )
                        break
                    except BlobNotFoundError:
                        raise
                    except (StorageError, asyncio.TimeoutError, OSError) as e:
                        if attempt == max_retries - 1:
                            raise StorageError(
                                f"Range {start}-{end} of {key} failed after {max_retries} attempts: {e}"
                            ) from e
                        delay = 2 ** attempt
                        logger.warning(
                            "[STORAGE] Range %d-%d failed (%s), retry in %ds", start, end, e, delay
                        )
                        await asyncio.sleep(delay)
            return await loop.run_in_executor(None, _write_at, dest_path, start, data)

        written = sum(await asyncio.gather(*(fetch(r) for r in ranges)))
        if written != size:
            raise StorageError(f"Size mismatch for {key}: expected {size}, wrote {written}")

        logger.info("[STORAGE] Download complete: %s -> %s", key, dest_path)
        return size


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


class AzureBlobStorage(ObjectStorage):
    """Azure Blob container. The SDK client is sync, so calls go through the default executor."""

    def __init__(self, connection_string: str = "", container: str = "videos", account_name: str = ""):
        self.container = container
        if connection_string:
            service_client = BlobServiceClient.from_connection_string(connection_string)
        elif account_name:
            service_client = BlobServiceClient(
                account_url=f"https://{account_name}.blob.core.windows.net",
                credential=DefaultAzureCredential(),
            )
        else:
            raise ValueError("Missing AZURE_STORAGE_CONNECTION_STRING or AZURE_STORAGE_ACCOUNT_NAME")
        self._container_client = service_client.get_container_client(container)

    async def _call(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, *args, **kwargs))
        except ResourceNotFoundError as e:
            raise BlobNotFoundError(str(e)) from e
        except AzureError as e:
            raise StorageError(str(e)) from e

    async def get(self, key, byte_range=None):
        blob = self._container_client.get_blob_client(key)
        if byte_range is None:
            downloader = await self._call(blob.download_blob)
        else:
            start, end = byte_range
            downloader = await self._call(blob.download_blob, offset=start, length=end - start + 1)
        return await self._call(downloader.readall)

    async def put(self, key, data, content_type="application/octet-stream"):
        blob = self._container_client.get_blob_client(key)
        await self._call(
            blob.upload_blob,
            data,
            overwrite=True,
            content_settings=ContentSettings(content_type=content_type),
        )

    async def delete(self, key):
        blob = self._container_client.get_blob_client(key)
        await self._call(blob.delete_blob)

    async def head(self, key):
        blob = self._container_client.get_blob_client(key)
        props = await self._call(blob.get_blob_properties)
        return props.size


class LocalObjectStorage(ObjectStorage):
    """Keys map to files under a root directory."""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        os.makedirs(self.root, exist_ok=True)

    def _path(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root, key))
        if not path.startswith(self.root + os.sep):
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    async def get(self, key, byte_range=None):
        path = self._path(key)
        if not os.path.exists(path):
            raise BlobNotFoundError(key)
        with open(path, "rb") as f:
            if byte_range is None:
                return f.read()
            start, end = byte_range
            f.seek(start)
            return f.read(end - start + 1)

    async def put(self, key, data, content_type="application/octet-stream"):
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)

    async def delete(self, key):
        path = self._path(key)
        if not os.path.exists(path):
            raise BlobNotFoundError(key)
        os.remove(path)

    async def head(self, key):
        path = self._path(key)
        if not os.path.exists(path):
            raise BlobNotFoundError(key)
        return os.path.getsize(path)
