"""
Async client for the AIPLabels API, used by the web client.

Provides a persistent async HTTP client with:
- Connection pooling via a single ``httpx.AsyncClient``
- A bearer token per call (each browser user has their own)
- Automatic retry with exponential backoff on transient failures

Example::

    async with LabelApiClient("http://localhost:8000") as api:
        labels = await api.list_labels(token)
        result = await api.get_label(token, blob_url)
        result["labelName"]
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
from httpx import HTTPStatusError, TransportError

from aiplabels.exceptions import ReauthenticationRequired

logger = logging.getLogger(__name__)

# HTTP status codes that are safe to retry
_RETRYABLE_STATUS_CODES = frozenset({502, 503, 504})


class LabelApiClient:
    """Async Python client for the AIPLabels API."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 180.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    # Connection lifecycle
    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self):
        await self._get_client()
        return self

    async def __aexit__(self, *args):
        await self.close()

    # Low-level request helpers
    async def _request(
        self,
        method: str,
        url: str,
        token: str,
        **kwargs,
    ) -> httpx.Response:
        """Make a request with automatic retry on transient failures."""
        client = await self._get_client()
        headers = {"Authorization": f"Bearer {token}"}
        retries = self.max_retries
        last_error: Exception | None = None

        for attempt in range(retries + 1):
            try:
                response = await client.request(method, url, headers=headers, **kwargs)
                response.raise_for_status()
                return response
            except TransportError as e:
                last_error = e
                if attempt < retries:
                    delay = self.retry_delay * 2 ** attempt
                    logger.warning(
                        "Transport error on %s %s (attempt %d/%d), retrying in %.1fs: %s",
                        method, url, attempt + 1, retries + 1, delay, e,
                    )
                    await asyncio.sleep(delay)
            except HTTPStatusError as e:
                if e.response.status_code in _RETRYABLE_STATUS_CODES and attempt < retries:
                    last_error = e
                    delay = self.retry_delay * 2 ** attempt
                    logger.warning(
                        "HTTP %d on %s %s (attempt %d/%d), retrying in %.1fs",
                        e.response.status_code, method, url,
                        attempt + 1, retries + 1, delay,
                    )
                    await asyncio.sleep(delay)
                else:
                    raise

        raise last_error  # type: ignore[misc]

    async def _envelope(self, url: str, token: str, payload: dict) -> dict[str, Any]:
        """
        POST a label operation and return its response envelope.

        The API answers request-level failures (bad URL, timeout) with the
        same envelope under a non-2xx status; those are returned as-is.

        Raises:
            ReauthenticationRequired: The API asked the user to sign in again.
            HTTPStatusError: Any other non-2xx answer without an envelope.
        """
        try:
            response = await self._request("POST", url, token, json=payload)
        except HTTPStatusError as e:
            if e.response.status_code == 401:
                raise ReauthenticationRequired(
                    "The API requires the user to sign in again",
                    details={"www_authenticate": e.response.headers.get("WWW-Authenticate", "")},
                ) from e
            try:
                body = e.response.json()
            except ValueError:
                raise e from None
            if isinstance(body, dict) and "isSuccess" in body:
                return body
            raise
        return response.json()

    # Labels
    async def list_labels(self, token: str, max_depth: int | None = None) -> list[dict]:
        params = {"maxDepth": max_depth} if max_depth is not None else None
        try:
            resp = await self._request("GET", "/labels", token, params=params)
        except HTTPStatusError as e:
            if e.response.status_code == 401:
                raise ReauthenticationRequired("The API requires the user to sign in again") from e
            raise
        return resp.json()

    async def set_label(
        self,
        token: str,
        blob_url: str,
        label_id: str,
        justification: str | None = None,
        user_rights: list[dict] | None = None,
    ) -> dict[str, Any]:
        """Apply ``label_id``; ``user_rights`` switches to ad-hoc protection."""
        payload: dict[str, Any] = {"blobUrl": blob_url, "labelId": label_id}
        if justification:
            payload["justificationMessage"] = justification
        if user_rights:
            payload["isCustom"] = True
            payload["userRightsList"] = user_rights
        return await self._envelope("/labels/set", token, payload)

    async def remove_label(
        self,
        token: str,
        blob_url: str,
        justification: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"blobUrl": blob_url}
        if justification:
            payload["justificationMessage"] = justification
        return await self._envelope("/labels/remove", token, payload)

    async def get_label(self, token: str, blob_url: str) -> dict[str, Any]:
        return await self._envelope("/labels/get", token, {"blobUrl": blob_url})
