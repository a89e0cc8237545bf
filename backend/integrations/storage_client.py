"""
Clip Storage Client

Talks to the object storage that holds uploaded clips:
- Signed URL creation for playback and download
- Object removal when an operator deletes a clip

Storage API Information:
- Base URL: STORAGE_URL (+ /storage/v1)
- Authentication: service key in both `apikey` and `Authorization: Bearer`
- POST /object/sign/{bucket}/{path} {"expiresIn": seconds} -> {"signedURL": "/object/sign/..."}
- DELETE /object/{bucket} {"prefixes": [paths]}
"""

import logging
from typing import List, Optional
from urllib.parse import quote

import httpx

from config import get_settings
from errors import StorageError

logger = logging.getLogger(__name__)


class StorageClient:
    """Client for the clip object storage"""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        bucket: str = "clips",
        timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.bucket = bucket
        self.timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    @classmethod
    def from_settings(cls, http_client: Optional[httpx.AsyncClient] = None) -> Optional["StorageClient"]:
        """Build from settings; None when storage is not configured"""
        settings = get_settings()
        if not settings.storage_url or not settings.storage_api_key:
            logger.warning("Storage not configured; clip playback links unavailable")
            return None
        return cls(
            base_url=settings.storage_url,
            api_key=settings.storage_api_key,
            bucket=settings.storage_bucket,
            http_client=http_client,
        )

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._http_client

    @property
    def _headers(self):
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
        }

    @property
    def _api_root(self) -> str:
        return f"{self.base_url}/storage/v1"

    async def create_signed_url(self, path: str, expires_in: int = 3600) -> str:
        """
        Create a time-limited URL for a stored clip

        Args:
            path: Object path inside the bucket
            expires_in: Validity in seconds

        Returns:
            Absolute signed URL
        """
        url = f"{self._api_root}/object/sign/{self.bucket}/{quote(path)}"
        try:
            response = await self.http_client.post(url, json={"expiresIn": expires_in}, headers=self._headers)
        except httpx.HTTPError as e:
            raise StorageError(f"Failed to reach storage: {e}", path=path)

        if response.status_code >= 400:
            raise StorageError(
                f"Failed to generate signed URL: {response.status_code}",
                path=path,
                status_code=response.status_code,
            )

        body = response.json()
        signed = body.get("signedURL") or body.get("signedUrl")
        if not signed:
            raise StorageError("Failed to generate signed URL", path=path)

        logger.debug(f"Generated signed URL for {path} ({expires_in}s)")
        return signed if signed.startswith("http") else f"{self._api_root}{signed}"

    async def remove_objects(self, paths: List[str]) -> None:
        """Delete stored objects"""
        if not paths:
            return
        try:
            response = await self.http_client.request(
                "DELETE",
                f"{self._api_root}/object/{self.bucket}",
                json={"prefixes": paths},
                headers=self._headers,
            )
        except httpx.HTTPError as e:
            raise StorageError(f"Failed to reach storage: {e}", path=paths[0])

        if response.status_code >= 400:
            raise StorageError(
                f"Failed to delete from storage: {response.status_code}",
                path=paths[0],
                status_code=response.status_code,
            )
        logger.info(f"Removed {len(paths)} object(s) from {self.bucket}")

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
