"""
External AI provider client.

Thin adapter over the Generative Language REST API. It forwards request
bodies the handlers have already built and maps failures onto
ProviderError with the upstream status.
"""

from typing import Any, Dict, Optional

import httpx

from shared.errors import ConfigurationError, ProviderError
from shared.logging import get_logger


class ProviderClient:
    """Client for the generateContent and predict endpoints."""

    def __init__(self, base_url: str, api_key: Optional[str], timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.logger = get_logger("gateway.provider_client")
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)

    async def stop(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _require_key(self) -> str:
        if not self.api_key:
            self.logger.error("Provider API key not configured")
            raise ConfigurationError()
        return self.api_key

    async def generate_content(self, model: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """POST ``models/{model}:generateContent``."""
        return await self._post(f"models/{model}:generateContent", model, body)

    async def generate_images(self, model: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """POST ``models/{model}:predict`` (Imagen)."""
        return await self._post(f"models/{model}:predict", model, body)

    async def _post(self, path: str, model: str, body: Dict[str, Any]) -> Dict[str, Any]:
        api_key = self._require_key()
        await self.start()

        try:
            response = await self._client.post(
                f"{self.base_url}/{path}",
                params={"key": api_key},
                json=body,
            )
        except httpx.TimeoutException as e:
            self.logger.error("Provider request timed out", model=model, error=str(e))
            raise ProviderError(
                "Provider request timed out",
                status_code=504,
                code=ProviderError.PROVIDER_TIMEOUT,
                details={"model": model},
            )
        except httpx.HTTPError as e:
            self.logger.error("Provider HTTP error", model=model, error=str(e))
            raise ProviderError(
                "Provider unavailable",
                status_code=503,
                code=ProviderError.PROVIDER_UNAVAILABLE,
                details={"model": model, "http_error": str(e)},
            )

        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {"raw_error": response.text}
            self.logger.error(
                "Provider API error",
                model=model,
                status_code=response.status_code,
                details=error_data,
            )
            raise ProviderError(
                "Provider API error",
                status_code=response.status_code,
                details={"model": model, "status": response.status_code, "upstream": error_data},
            )

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            self.logger.error("Provider returned an unreadable body", model=model, status_code=response.status_code)
            raise ProviderError(
                "Invalid provider response",
                status_code=502,
                details={"model": model, "raw_error": response.text[:500]},
            )
        return data
