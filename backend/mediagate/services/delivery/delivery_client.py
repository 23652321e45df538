"""
Delivery network client — Bunny Stream for video, Bunny Storage for stills.

Video assets:
    POST   {api}/library/{lib}/videos          → guid
    PUT    {api}/library/{lib}/videos/{guid}   raw bytes
    GET    {api}/library/{lib}/videos/{guid}   status 4 = finished, 5/6 = error
    DELETE {api}/library/{lib}/videos/{guid}
    thumbnail  https://{cdn}/{guid}/thumbnail.jpg
    playback   https://{cdn}/{guid}/playlist.m3u8

Image assets live at ``{storage}/{zone}/images/<name>`` and are ready once
the object shows up in the directory listing. Their asset id carries the
``storage:`` prefix.
"""
from __future__ import annotations

import enum
import logging
from typing import Optional

import httpx

from mediagate.core.config import Settings, get_settings
from mediagate.core.errors import PublishError, TransientError

logger = logging.getLogger(__name__)

STORAGE_PREFIX = "storage:"

# Bunny Stream video status codes
_STREAM_CREATED = {0}
_STREAM_READY = {4}
_STREAM_ERROR = {5, 6}


class DeliveryStatus(str, enum.Enum):
    CREATED = "created"  # asset exists, no bytes received yet
    READY = "ready"
    PROCESSING = "processing"
    ERROR = "error"


class DeliveryClient:
    """Contract the publication router needs from the delivery network."""

    async def create_asset(self, title: str, is_video: bool = True, name: str = "") -> str:
        raise NotImplementedError

    async def upload(self, asset_id: str, data: bytes) -> None:
        raise NotImplementedError

    async def poll_status(self, asset_id: str) -> DeliveryStatus:
        raise NotImplementedError

    def thumbnail_url(self, asset_id: str) -> str:
        raise NotImplementedError

    def playback_url(self, asset_id: str) -> str:
        raise NotImplementedError

    async def delete_asset(self, asset_id: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


def _raise_for_status(response: httpx.Response, operation: str) -> None:
    if response.status_code == 429 or response.status_code >= 500:
        raise TransientError(f"{operation}: HTTP {response.status_code}")
    if response.status_code >= 400:
        raise PublishError(f"{operation}: HTTP {response.status_code} {response.text[:200]}")


class BunnyDeliveryClient(DeliveryClient):
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._client: Optional[httpx.AsyncClient] = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.external_call_timeout_seconds),
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ── HTTP plumbing ────────────────────────────────────────────────────

    def _video_url(self, guid: str = "") -> str:
        base = f"{self.settings.bunny_api_base}/library/{self.settings.bunny_library_id}/videos"
        return f"{base}/{guid}" if guid else base

    def _storage_url(self, path: str) -> str:
        s = self.settings
        return f"{s.bunny_storage_endpoint}/{s.bunny_storage_zone}/{path}"

    async def _request(self, operation: str, method: str, url: str, *,
                       storage: bool = False, **kwargs) -> httpx.Response:
        key = self.settings.bunny_storage_api_key if storage else self.settings.bunny_api_key
        headers = {"AccessKey": key, "accept": "application/json"}
        headers.update(kwargs.pop("headers", {}))
        try:
            response = await self._http().request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientError(f"{operation}: timeout") from e
        except httpx.TransportError as e:
            raise TransientError(f"{operation}: {type(e).__name__}: {e}") from e
        _raise_for_status(response, operation)
        return response

    # ── Contract ─────────────────────────────────────────────────────────

    async def create_asset(self, title: str, is_video: bool = True, name: str = "") -> str:
        if not is_video:
            return f"{STORAGE_PREFIX}images/{name or title}"
        response = await self._request(
            "bunny.create", "POST", self._video_url(), json={"title": title},
        )
        guid = response.json().get("guid")
        if not guid:
            raise PublishError("bunny.create: no guid in response")
        logger.info(f"Created Bunny video {guid} ({title})")
        return guid

    async def upload(self, asset_id: str, data: bytes) -> None:
        if asset_id.startswith(STORAGE_PREFIX):
            await self._request(
                "bunny.storage_put", "PUT", self._storage_url(asset_id[len(STORAGE_PREFIX):]),
                storage=True, content=data,
                headers={"Content-Type": "application/octet-stream"},
            )
            return
        await self._request(
            "bunny.upload", "PUT", self._video_url(asset_id), content=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        logger.info(f"Uploaded {len(data) / 1024 / 1024:.1f} MB to Bunny video {asset_id}")

    async def poll_status(self, asset_id: str) -> DeliveryStatus:
        if asset_id.startswith(STORAGE_PREFIX):
            return await self._storage_status(asset_id[len(STORAGE_PREFIX):])
        response = await self._request("bunny.status", "GET", self._video_url(asset_id))
        status = response.json().get("status")
        if status in _STREAM_CREATED:
            return DeliveryStatus.CREATED
        if status in _STREAM_READY:
            return DeliveryStatus.READY
        if status in _STREAM_ERROR:
            return DeliveryStatus.ERROR
        return DeliveryStatus.PROCESSING

    async def _storage_status(self, path: str) -> DeliveryStatus:
        directory, _, name = path.rpartition("/")
        response = await self._request(
            "bunny.storage_list", "GET", self._storage_url(f"{directory}/"), storage=True,
        )
        names = {entry.get("ObjectName") for entry in response.json()}
        return DeliveryStatus.READY if name in names else DeliveryStatus.CREATED

    def playback_url(self, asset_id: str) -> str:
        if asset_id.startswith(STORAGE_PREFIX):
            return f"https://{self.settings.bunny_storage_cdn_hostname}/{asset_id[len(STORAGE_PREFIX):]}"
        return f"https://{self.settings.bunny_cdn_hostname}/{asset_id}/playlist.m3u8"

    def thumbnail_url(self, asset_id: str) -> str:
        if asset_id.startswith(STORAGE_PREFIX):
            return self.playback_url(asset_id)
        return f"https://{self.settings.bunny_cdn_hostname}/{asset_id}/thumbnail.jpg"

    async def delete_asset(self, asset_id: str) -> None:
        if asset_id.startswith(STORAGE_PREFIX):
            url = self._storage_url(asset_id[len(STORAGE_PREFIX):])
            await self._request("bunny.storage_delete", "DELETE", url, storage=True)
        else:
            await self._request("bunny.delete", "DELETE", self._video_url(asset_id))
        logger.info(f"Deleted delivery asset {asset_id}")


_client: Optional[DeliveryClient] = None


def get_delivery_client() -> DeliveryClient:
    global _client
    if _client is None:
        _client = BunnyDeliveryClient()
    return _client


async def reset_delivery_client() -> None:
    """Close the shared client; its connection pool belongs to the current loop."""
    global _client
    if _client is not None:
        await _client.close()
        _client = None
