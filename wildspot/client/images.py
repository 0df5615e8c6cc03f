import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from wildspot.core.exceptions import ImageServiceError

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[Optional[str]]]

DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=5.0)


class ImageServiceClient:
    """Async client for the image service HTTP surface.

    ``token_provider`` is awaited before every call; a ``None`` token sends
    the request without an ``Authorization`` header.
    """

    def __init__(
            self,
            base_url: str,
            token_provider: Optional[TokenProvider] = None,
            http_client: Optional[httpx.AsyncClient] = None,
            timeout: httpx.Timeout = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    def image_url(self, image_id: str) -> str:
        return f"{self.base_url}/images/{image_id}"

    async def upload(self, data: bytes, filename: str = "upload.jpg", content_type: str = "image/jpeg") -> str:
        """Store ``data`` and return its content id"""
        response = await self._request(
            "POST", "/images", files={"image": (filename, data, content_type)}
        )
        if response.status_code != httpx.codes.CREATED:
            raise self._error("Upload failed", response)
        return response.json()["id"]

    async def fetch(self, image_id: str) -> bytes:
        response = await self._request("GET", f"/images/{image_id}")
        if response.status_code != httpx.codes.OK:
            raise self._error("Fetch failed", response)
        return response.content

    async def delete(self, image_id: str) -> None:
        response = await self._request("DELETE", f"/images/{image_id}")
        if response.status_code != httpx.codes.NO_CONTENT:
            raise self._error("Delete failed", response)

    async def identify(self, image_id: str, country: Optional[str] = None) -> Dict[str, Any]:
        params = {"country": country} if country else None
        response = await self._request("GET", f"/images/{image_id}/identify", params=params)
        if response.status_code != httpx.codes.OK:
            raise self._error("Identify failed", response)
        try:
            return response.json()
        except ValueError as e:
            raise ImageServiceError("Identify returned invalid JSON", response.status_code) from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    async def __aenter__(self) -> "ImageServiceClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {}
        if self._token_provider is not None:
            token = await self._token_provider()
            if token:
                headers["Authorization"] = f"Bearer {token}"

        try:
            return await self.http_client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{method} {path} failed: {e}")
            raise ImageServiceError(f"Image service unreachable: {e}") from e

    @staticmethod
    def _error(action: str, response: httpx.Response) -> ImageServiceError:
        try:
            body = response.json()
            detail = body.get("message") or body.get("detail") or body.get("error")
        except ValueError:
            detail = response.text
        return ImageServiceError(f"{action} ({response.status_code}): {detail}", response.status_code)
