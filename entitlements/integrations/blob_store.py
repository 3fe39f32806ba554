"""
S3-compatible blob store holding the downloadable product files.

Each product's ``master_file_path`` names a folder inside the downloads
bucket; the files directly inside it are what a token grants.
"""
import time
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Sequence

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from entitlements.config import Settings
from entitlements.core.exceptions import FileNotAvailable, RemoteServiceUnavailable
from entitlements.integrations.resilience import CircuitBreaker, run_blocking
from entitlements.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SERVICE = "blob_store"
CHUNK_SIZE = 64 * 1024

_blob_retry = retry(
    retry=retry_if_exception_type(RemoteServiceUnavailable),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    reraise=True,
)


@dataclass(frozen=True)
class BlobFile:
    """A file under a product folder."""

    name: str
    key: str
    size: int


class BlobStream:
    """Readable object body; must be closed once consumed or abandoned."""

    def __init__(self, body: Any, content_length: Optional[int], content_type: Optional[str]):
        self._body = body
        self.content_length = content_length
        self.content_type = content_type or "application/octet-stream"

    def iter_chunks(self, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        return self._body.iter_chunks(chunk_size)

    def close(self) -> None:
        self._body.close()


def folder_prefix(master_file_path: str, bucket: str) -> str:
    """
    Object key prefix for a product folder.

    Catalog paths are sometimes written with the bucket name in front
    (``downloads/CAT001``); keys inside the bucket never carry it.
    """
    path = master_file_path.strip().strip("/")
    if path.startswith(f"{bucket}/"):
        path = path[len(bucket) + 1:]
    return f"{path}/" if path else ""


class S3BlobStore:
    """Blob store collaborator backed by S3 (or any S3-compatible endpoint)."""

    def __init__(
        self,
        settings: Settings,
        client: Any = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.bucket = settings.blob_bucket
        self.timeout = settings.blob_timeout_seconds
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            SERVICE, ignored_exceptions=(FileNotAvailable,)
        )
        self._client = client or boto3.client(
            "s3",
            region_name=settings.blob_region,
            endpoint_url=settings.blob_endpoint_url,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            config=Config(
                connect_timeout=settings.blob_timeout_seconds,
                read_timeout=settings.blob_timeout_seconds,
                retries={"max_attempts": 2},
            ),
        )

    async def _call(self, operation: str, func: Any, **params: Any) -> Any:
        start_time = time.time()

        async def _invoke() -> Any:
            try:
                return await run_blocking(SERVICE, func, timeout=self.timeout, **params)
            except ClientError as e:
                code = e.response.get("Error", {}).get("Code")
                if code in ("NoSuchKey", "404", "NotFound"):
                    raise FileNotAvailable(f"Object not found: {params.get('Key')}")
                logger.error("blob_store_error", operation=operation, error_code=code, error=str(e))
                raise RemoteServiceUnavailable(SERVICE, str(e), e)
            except BotoCoreError as e:
                logger.error("blob_store_error", operation=operation, error=str(e))
                raise RemoteServiceUnavailable(SERVICE, str(e), e)

        try:
            result = await self.circuit_breaker.call(_invoke)
        except (RemoteServiceUnavailable, FileNotAvailable):
            metrics.record_remote_call(SERVICE, operation, "error", time.time() - start_time)
            raise

        metrics.record_remote_call(SERVICE, operation, "success", time.time() - start_time)
        return result

    def _list_objects(self, prefix: str) -> List[dict]:
        paginator = self._client.get_paginator("list_objects_v2")
        objects: List[dict] = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            objects.extend(page.get("Contents", []))
        return objects

    @_blob_retry
    async def list_files(
        self, master_file_path: str, extensions: Sequence[str]
    ) -> List[BlobFile]:
        """
        List downloadable files directly inside a product folder.

        Args:
            master_file_path: Product folder as recorded in the catalog
            extensions: Lowercase extensions to keep, e.g. ``[".wav", ".zip"]``

        Returns:
            List[BlobFile]: Matching files sorted by name
        """
        prefix = folder_prefix(master_file_path, self.bucket)
        objects = await self._call("list_files", self._list_objects, prefix=prefix)

        files = []
        for obj in objects:
            name = obj["Key"][len(prefix):]
            if not name or "/" in name:
                continue
            if not name.lower().endswith(tuple(extensions)):
                continue
            files.append(BlobFile(name=name, key=obj["Key"], size=int(obj.get("Size", 0))))

        files.sort(key=lambda f: f.name)
        logger.debug("blob_files_listed", prefix=prefix, count=len(files))
        return files

    @_blob_retry
    async def open_stream(self, key: str) -> BlobStream:
        """
        Open an object for streaming.

        Raises:
            FileNotAvailable: If the object does not exist
            RemoteServiceUnavailable: If the store cannot be reached
        """
        response = await self._call(
            "open_stream", self._client.get_object, Bucket=self.bucket, Key=key
        )
        return BlobStream(
            response["Body"],
            content_length=response.get("ContentLength"),
            content_type=response.get("ContentType"),
        )

    async def ping(self) -> None:
        """Check that the bucket is reachable."""
        await self._call("head_bucket", self._client.head_bucket, Bucket=self.bucket)
