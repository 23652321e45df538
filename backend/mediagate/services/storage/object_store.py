"""
Durable object store — MinIO / S3 behind a small async contract.

The minio client is synchronous; every call runs in a worker thread so the
event loop keeps serving other items. Network-level failures surface as
TransientError so the shared retry policy can repeat them.
"""
from __future__ import annotations

import asyncio
import io
import logging
from typing import Optional

from mediagate.core.config import get_settings
from mediagate.core.errors import TransientError

logger = logging.getLogger(__name__)


class ObjectStore:
    """Contract every durable store implements."""

    bucket: str

    async def put(self, key: str, data: bytes, content_type: str) -> bool:
        raise NotImplementedError

    async def exists(self, key: str) -> bool:
        raise NotImplementedError

    async def size(self, key: str) -> Optional[int]:
        raise NotImplementedError

    async def get(self, key: str) -> bytes:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    def uri_for(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    def key_from_uri(self, uri: str) -> str:
        prefix = f"s3://{self.bucket}/"
        if not uri.startswith(prefix):
            raise ValueError(f"URI {uri} is not in bucket {self.bucket}")
        return uri[len(prefix):]


class MinioObjectStore(ObjectStore):
    """MinIO / S3 implementation. The client is created lazily."""

    def __init__(self, endpoint: Optional[str] = None, bucket: Optional[str] = None):
        settings = get_settings()
        self.endpoint = endpoint or settings.minio_endpoint
        self.bucket = bucket or settings.minio_bucket
        self._client = None
        self._bucket_checked = False

    def _get_client(self):
        if self._client is None:
            from minio import Minio

            settings = get_settings()
            self._client = Minio(
                self.endpoint,
                access_key=settings.minio_access_key,
                secret_key=settings.minio_secret_key,
                secure=settings.minio_secure,
            )
        return self._client

    def _ensure_bucket(self) -> None:
        if self._bucket_checked:
            return
        client = self._get_client()
        if not client.bucket_exists(self.bucket):
            client.make_bucket(self.bucket)
            logger.info(f"Created bucket {self.bucket}")
        self._bucket_checked = True

    async def _run(self, fn, *args, **kwargs):
        from minio.error import S3Error
        from urllib3.exceptions import HTTPError

        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except S3Error:
            raise
        except (HTTPError, OSError) as e:
            raise TransientError(f"Object store unreachable: {e}") from e

    # ── Operations ───────────────────────────────────────────────────────

    async def put(self, key: str, data: bytes, content_type: str) -> bool:
        def _put():
            self._ensure_bucket()
            self._get_client().put_object(
                self.bucket, key, io.BytesIO(data), length=len(data),
                content_type=content_type,
            )
            return True

        return await self._run(_put)

    async def _stat(self, key: str):
        from minio.error import S3Error

        try:
            return await self._run(self._get_client().stat_object, self.bucket, key)
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchBucket", "NoSuchObject"):
                return None
            raise

    async def exists(self, key: str) -> bool:
        return await self._stat(key) is not None

    async def size(self, key: str) -> Optional[int]:
        stat = await self._stat(key)
        return stat.size if stat is not None else None

    async def get(self, key: str) -> bytes:
        def _get():
            response = self._get_client().get_object(self.bucket, key)
            try:
                return response.read()
            finally:
                response.close()
                response.release_conn()

        return await self._run(_get)

    async def delete(self, key: str) -> None:
        await self._run(self._get_client().remove_object, self.bucket, key)


_store: Optional[ObjectStore] = None


def get_object_store() -> ObjectStore:
    global _store
    if _store is None:
        _store = MinioObjectStore()
    return _store
