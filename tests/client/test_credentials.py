"""Tests for relay credential fetching."""

import json

import httpx
import pytest

from parlor.client.credentials import CredentialFetcher, fallback_servers, parse_ice_servers
from parlor.client.media import IceServer
from parlor.core.settings import DEFAULT_FALLBACK_ICE_URLS

ISSUER = "https://turn.example.test/credentials"
FALLBACK = ["stun:fallback.example.test:3478"]


def _fetcher(handler, **kwargs) -> CredentialFetcher:
    return CredentialFetcher(
        ISSUER,
        timeout=1.0,
        fallback_urls=FALLBACK,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_default_fallback_is_public_stun():
    servers = fallback_servers()
    assert [s.urls for s in servers] == [[url] for url in DEFAULT_FALLBACK_ICE_URLS]
    assert len(servers) == 5


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ([{"urls": "turn:a", "username": "u", "credential": "p"}], [IceServer(["turn:a"], "u", "p")]),
        ({"iceServers": [{"urls": ["turn:a", "turn:b"]}]}, [IceServer(["turn:a", "turn:b"])]),
        ({"iceServers": {"urls": "turn:a"}}, [IceServer(["turn:a"])]),
        ({"v": {"iceServers": [{"url": "turn:c"}]}}, [IceServer(["turn:c"])]),
        ({"iceServers": [{"urls": 5}, "junk", {"urls": "turn:ok"}]}, [IceServer(["turn:ok"])]),
        ({"status": "ok"}, []),
        ("nonsense", []),
        (None, []),
    ],
)
def test_parse_ice_servers(payload, expected):
    assert parse_ice_servers(payload) == expected


@pytest.mark.asyncio
async def test_fetch_posts_format_flag_and_appends_fallback():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"v": {"iceServers": {"urls": ["turn:relay"], "username": "u", "credential": "c"}}})

    servers = await _fetcher(handler, format_flag="urls").fetch()

    assert seen == {"method": "POST", "body": {"format": "urls"}}
    assert servers == [
        IceServer(["turn:relay"], "u", "c"),
        IceServer(["stun:fallback.example.test:3478"]),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": "boom"}),
        httpx.Response(200, content=b"<html>"),
        httpx.Response(200, json={"unexpected": True}),
    ],
)
async def test_fetch_falls_back_on_bad_responses(response):
    servers = await _fetcher(lambda request: response).fetch()
    assert servers == [IceServer(FALLBACK)]


@pytest.mark.asyncio
async def test_fetch_falls_back_on_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    servers = await _fetcher(handler).fetch()
    assert servers == [IceServer(FALLBACK)]


@pytest.mark.asyncio
async def test_fetch_without_issuer_uses_fallback_only():
    fetcher = CredentialFetcher("", fallback_urls=FALLBACK)
    assert await fetcher.fetch() == [IceServer(FALLBACK)]
