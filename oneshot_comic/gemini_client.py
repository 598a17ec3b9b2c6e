"""
One-Shot Comic — Gemini REST transport.

Thin async wrapper around the generateContent endpoint. One attempt per
call: no retries, no polling. Transport, status and envelope failures
are all reported as UpstreamError.
"""

import logging
from typing import Iterator, Optional

import httpx

from oneshot_comic.config import ComicSettings
from oneshot_comic.errors import UpstreamError

logger = logging.getLogger(__name__)


class GeminiClient:
    """Shared HTTP client for the script and image gateways."""

    def __init__(
        self,
        settings: ComicSettings,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.request_timeout, connect=30.0),
                headers={"Content-Type": "application/json"},
            )
            self._owns_client = True
        return self._client

    async def close(self):
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()

    async def generate_content(self, model: str, payload: dict) -> dict:
        """
        POST a generateContent request and return the decoded response.

        Raises:
            UpstreamError: transport failure, non-success status, or non-JSON body
        """
        client = await self._get_client()
        url = f"{self.settings.api_base}/models/{model}:generateContent"

        try:
            response = await client.post(
                url,
                json=payload,
                params={"key": self.settings.api_key},
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Gemini request failed ({model}): {e}") from e

        if not response.is_success:
            raise UpstreamError(
                f"Gemini API error {response.status_code} ({model}): {response.text[:500]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError(f"Gemini returned a non-JSON body ({model})") from e

        if not isinstance(data, dict):
            raise UpstreamError(f"Gemini returned an unexpected body ({model})")
        return data


def iter_parts(response: dict) -> Iterator[dict]:
    """Yield the content parts of the first candidate."""
    candidates = response.get("candidates") or []
    if not candidates:
        return
    content = candidates[0].get("content") or {}
    for part in content.get("parts") or []:
        if isinstance(part, dict):
            yield part


def extract_text(response: dict) -> str:
    """Concatenate the text parts of the first candidate."""
    return "".join(part.get("text", "") for part in iter_parts(response)).strip()
