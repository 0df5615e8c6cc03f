import logging
from typing import Any, Dict, Optional

import httpx
from fastapi import status

from wildspot.config import Settings
from wildspot.core.exceptions import IdentificationError

logger = logging.getLogger(__name__)


class IdentificationService:
    """Client for the third-party species detection API"""

    def __init__(
            self,
            api_url: str,
            api_key: Optional[str],
            http_client: Optional[httpx.AsyncClient] = None,
            timeout: Optional[httpx.Timeout] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout or httpx.Timeout(30.0, connect=5.0))

    @classmethod
    def from_settings(cls, config: Settings) -> "IdentificationService":
        return cls(
            config.ANIMALDETECT_API_URL,
            config.ANIMALDETECT_API_KEY,
            timeout=httpx.Timeout(config.HTTP_READ_TIMEOUT, connect=config.HTTP_CONNECT_TIMEOUT),
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def identify(
            self,
            data: bytes,
            filename: str,
            mime: Optional[str] = None,
            country: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send the image to the detector and return its JSON verdict"""
        files = {"image": (filename, data, mime or "application/octet-stream")}
        form = {"country": country} if country else None

        try:
            response = await self.http_client.post(
                self.api_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                files=files,
                data=form,
            )
        except httpx.HTTPError as e:
            logger.error(f"Identification request failed: {e}")
            raise IdentificationError("Identification service unreachable") from e

        text = response.text
        if response.is_error:
            logger.warning(f"Identification upstream answered {response.status_code}")
            raise IdentificationError("Detect failed", status_code=response.status_code, details=text)

        try:
            return response.json()
        except ValueError:
            raise IdentificationError("Invalid response", status_code=status.HTTP_502_BAD_GATEWAY, details=text)

    async def aclose(self) -> None:
        await self.http_client.aclose()
