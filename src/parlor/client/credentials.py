"""Relay credential acquisition for call setup.

One bounded-timeout request per call attempt, no retries and no caching. A
failed or malformed response yields zero issued servers; the fallback STUN
list is always appended, so credential trouble never blocks a call.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any

import httpx

from parlor.core.settings import settings
from parlor.services.errors import CredentialFetchFailed

from .media import IceServer

logger = logging.getLogger(__name__)

HTTP_OK = 200


def fallback_servers(urls: Iterable[str] | None = None) -> list[IceServer]:
    """Return the locally known STUN servers."""
    return [IceServer(urls=[url]) for url in (urls if urls is not None else settings.ice_fallback_urls)]


def _parse_server(entry: Any) -> IceServer | None:
    if not isinstance(entry, dict):
        return None
    urls = entry.get("urls", entry.get("url"))
    if isinstance(urls, str):
        urls = [urls]
    if not isinstance(urls, list) or not urls or not all(isinstance(u, str) for u in urls):
        return None
    username = entry.get("username")
    credential = entry.get("credential")
    return IceServer(
        urls=list(urls),
        username=username if isinstance(username, str) else None,
        credential=credential if isinstance(credential, str) else None,
    )


def parse_ice_servers(payload: Any) -> list[IceServer]:
    """Extract relay server descriptors from an issuer response.

    Accepts a bare list of descriptors or an object carrying ``iceServers``
    (a list or a single descriptor), optionally nested under ``v``. Anything
    else is treated as zero results; malformed entries are skipped.
    """
    if isinstance(payload, dict):
        if isinstance(payload.get("v"), dict):
            payload = payload["v"]
        payload = payload.get("iceServers")
        if isinstance(payload, dict):
            payload = [payload]
    if not isinstance(payload, list):
        return []
    servers = [_parse_server(entry) for entry in payload]
    return [server for server in servers if server is not None]


class CredentialFetcher:
    """Fetches relay credentials from the external issuer."""

    def __init__(
        self,
        url: str | None = None,
        *,
        timeout: float | None = None,
        format_flag: str | None = None,
        fallback_urls: Sequence[str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url if url is not None else settings.ice_credentials_url
        self.timeout = timeout if timeout is not None else settings.ice_credentials_timeout_seconds
        self.format_flag = format_flag or settings.ice_credentials_format
        self.fallback_urls = list(fallback_urls) if fallback_urls is not None else None
        self._transport = transport

    async def _request(self) -> list[IceServer]:
        if not self.url:
            raise CredentialFetchFailed("No credential issuer configured")
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            ) as client:
                response = await client.post(self.url, json={"format": self.format_flag})
        except httpx.HTTPError as exc:
            raise CredentialFetchFailed(f"Credential request failed: {exc}") from exc

        if response.status_code != HTTP_OK:
            raise CredentialFetchFailed(f"Credential issuer responded with {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise CredentialFetchFailed("Credential issuer returned invalid JSON") from exc
        return parse_ice_servers(payload)

    async def fetch(self) -> list[IceServer]:
        """Return issued servers followed by the fallback list. Never raises."""
        try:
            issued = await self._request()
        except CredentialFetchFailed as exc:
            logger.info("Using fallback relay servers: %s", exc)
            issued = []
        return issued + fallback_servers(self.fallback_urls)
