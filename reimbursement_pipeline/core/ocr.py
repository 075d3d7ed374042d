"""
Client for the OCR recognition service.

The service takes ``{"image": <data URL>}`` and answers with a JSON field map
(long or short keys). Anything else is an OCRError.
"""

import asyncio
import os
from typing import Dict, Optional

import httpx

from .parsers import extract_json_object
from .utils import OCR_TIMEOUT


class OCRError(RuntimeError):
    """The OCR call failed (HTTP error, transport error, timeout or bad payload)."""


class OCRClient:
    """Async OCR client. One short-lived connection per request."""

    def __init__(self, endpoint: str, api_key: Optional[str] = None,
                 timeout: float = OCR_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Args:
            endpoint: URL of the recognition endpoint (e.g. https://host/api/ocr)
            api_key: Optional bearer token
            timeout: Hard ceiling for one recognition, in seconds
            transport: Custom httpx transport (used by tests)
        """
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_env(cls, endpoint: Optional[str] = None, api_key: Optional[str] = None) -> "OCRClient":
        """Resolve settings from arguments, then OCR_ENDPOINT / OCR_API_KEY."""
        endpoint = endpoint or os.getenv("OCR_ENDPOINT")
        if not endpoint:
            raise ValueError("No OCR endpoint configured (use --endpoint or OCR_ENDPOINT)")
        return cls(endpoint, api_key=api_key or os.getenv("OCR_API_KEY"))

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, image: str) -> Dict:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(self.endpoint, json={"image": image}, headers=self._headers())

        if not response.is_success:
            raise OCRError(f"API Error: {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            # Some deployments return the model's raw text
            data = extract_json_object(response.text)
        if not isinstance(data, dict):
            raise OCRError("OCR response is not a JSON object")
        return data

    async def recognize(self, image: str) -> Dict:
        """Send a compressed image and return the raw field map."""
        try:
            return await asyncio.wait_for(self._post(image), self.timeout)
        except asyncio.TimeoutError:
            raise OCRError(f"OCR request timed out after {self.timeout:g}s")
        except httpx.HTTPError as e:
            raise OCRError(f"OCR request failed: {e}") from e
        except ValueError as e:
            raise OCRError(f"Invalid OCR response: {e}") from e
