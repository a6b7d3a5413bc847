"""
HTTPS client for the SolarEdge monitoring API ``currentPowerFlow`` resource.

Issues exactly one GET per call to
``{base_url}/site/{site_id}/currentPowerFlow.json?api_key=...`` and returns
the decoded JSON document. Failures are classified into a FetchError:

- TRANSPORT: connection errors, timeouts, protocol errors.
- HTTP_STATUS: any non-2xx response (status code and body kept).
- EMPTY_BODY: a 2xx response with no usable JSON object in it.

There is no retry or backoff here: one attempt per cycle, retries are the
scheduler's business. The API key is only ever surfaced through
:func:`mask_api_key`.

CHANGELOG:
- 2026-10-16: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from powerflow.src.config import DEFAULT_BASE_URL
from powerflow.src.errors import FetchError, FetchErrorKind

logger = logging.getLogger(__name__)

RESOURCE = "currentPowerFlow"

_BODY_EXCERPT_CHARS = 200


def mask_api_key(api_key: str | None) -> str:
    """Return the non-secret prefix of an API key for diagnostics."""
    if not api_key:
        return "not set"
    return f"{api_key[:4]}..."


class SolarEdgeClient:
    """Single-shot monitoring API client for one site.

    Args:
        site_id: Monitoring site identifier (validated non-empty by caller).
        api_key: Monitoring API key (validated non-empty by caller).
        base_url: API base URL. Must start with ``https://``.
        timeout_s: Request timeout in seconds.

    Raises:
        ValueError: If *base_url* does not start with ``https://``.

    Usage::

        client = SolarEdgeClient(site_id="123456", api_key="ABCD...")
        document = await client.fetch_power_flow()
    """

    def __init__(
        self,
        *,
        site_id: str,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = 10.0,
    ) -> None:
        if not base_url.lower().startswith("https://"):
            raise ValueError(f"Monitoring API base URL must use HTTPS (got: '{base_url}')")
        self._site_id = site_id
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s

    @property
    def url(self) -> str:
        """Resource URL without the API key."""
        return f"{self._base_url}/site/{self._site_id}/{RESOURCE}.json"

    async def fetch_power_flow(self) -> dict[str, Any]:
        """Fetch the current power-flow document for the site.

        Returns:
            The decoded JSON object.

        Raises:
            FetchError: On transport failure, non-2xx status, or empty body.
        """
        logger.info(
            "Requesting %s (api_key=%s)", self.url, mask_api_key(self._api_key)
        )
        try:
            async with httpx.AsyncClient(verify=True, timeout=self._timeout_s) as client:
                response = await client.get(self.url, params={"api_key": self._api_key})
        except httpx.TransportError as exc:
            raise FetchError(
                FetchErrorKind.TRANSPORT, detail=type(exc).__name__
            ) from exc

        body = response.text or ""
        if not 200 <= response.status_code < 300:
            raise FetchError(
                FetchErrorKind.HTTP_STATUS,
                status_code=response.status_code,
                raw_body=body,
                detail=body[:_BODY_EXCERPT_CHARS],
            )

        if not body.strip():
            raise FetchError(
                FetchErrorKind.EMPTY_BODY, status_code=response.status_code, raw_body=body
            )

        try:
            content = response.json()
        except ValueError as exc:
            raise FetchError(
                FetchErrorKind.EMPTY_BODY,
                status_code=response.status_code,
                raw_body=body,
                detail="body is not JSON",
            ) from exc

        if not content or not isinstance(content, dict):
            raise FetchError(
                FetchErrorKind.EMPTY_BODY,
                status_code=response.status_code,
                raw_body=body,
                detail="no JSON object in body",
            )

        logger.debug("Power flow response: %s", body)
        return content
