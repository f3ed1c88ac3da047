# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.

"""
Tests for SafeAsyncTransport and fetch_text.
"""

import socket
from collections.abc import AsyncGenerator, Generator
from contextlib import asynccontextmanager
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from wirus_auth.exceptions import OversizedResponseError, SecurityError
from wirus_auth.transport import SafeAsyncTransport, fetch_text


@pytest.fixture
def mock_getaddrinfo() -> Generator[MagicMock, None, None]:
    with patch("socket.getaddrinfo") as mock:
        yield mock


@pytest.mark.asyncio
@pytest.mark.parametrize("address", ["192.168.1.1", "10.0.0.5", "127.0.0.1", "169.254.169.254"])
async def test_blocks_private_resolution(mock_getaddrinfo: MagicMock, address: str) -> None:
    mock_getaddrinfo.return_value = [(socket.AF_INET, socket.SOCK_STREAM, 6, "", (address, 443))]

    transport = SafeAsyncTransport()
    request = httpx.Request("GET", "https://keys.internal.example/key.pem")

    with pytest.raises(SecurityError, match="No valid public IP"):
        await transport.handle_async_request(request)


@pytest.mark.asyncio
async def test_blocks_ipv6_loopback(mock_getaddrinfo: MagicMock) -> None:
    mock_getaddrinfo.return_value = [(socket.AF_INET6, socket.SOCK_STREAM, 6, "", ("::1", 443, 0, 0))]

    with pytest.raises(SecurityError):
        await SafeAsyncTransport().handle_async_request(httpx.Request("GET", "https://keys.example/key.pem"))


@pytest.mark.asyncio
async def test_blocks_private_ip_literal() -> None:
    with pytest.raises(SecurityError, match="is blocked"):
        await SafeAsyncTransport().handle_async_request(httpx.Request("GET", "https://127.0.0.1/key.pem"))


@pytest.mark.asyncio
async def test_public_ip_literal_is_sent_without_resolution(mock_getaddrinfo: MagicMock) -> None:
    with patch("httpx.AsyncHTTPTransport.handle_async_request", new_callable=AsyncMock) as mock_super:
        mock_super.return_value = httpx.Response(200)

        request = httpx.Request("GET", "https://8.8.8.8/key.pem")
        response = await SafeAsyncTransport().handle_async_request(request)

    assert response.status_code == 200
    assert request.url.host == "8.8.8.8"
    mock_getaddrinfo.assert_not_called()


@pytest.mark.asyncio
async def test_dns_failure(mock_getaddrinfo: MagicMock) -> None:
    mock_getaddrinfo.side_effect = socket.gaierror("Name or service not known")

    with pytest.raises(SecurityError, match="DNS resolution failed"):
        await SafeAsyncTransport().handle_async_request(httpx.Request("GET", "https://nowhere.example/key.pem"))


@pytest.mark.asyncio
async def test_pins_first_public_address(mock_getaddrinfo: MagicMock) -> None:
    mock_getaddrinfo.return_value = [
        (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("10.0.0.1", 443)),
        (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("8.8.8.8", 443)),
    ]

    transport = SafeAsyncTransport()
    with patch("httpx.AsyncHTTPTransport.handle_async_request", new_callable=AsyncMock) as mock_super:
        mock_super.return_value = httpx.Response(200)

        request = httpx.Request("GET", "https://keys.platform.example/key.pem")
        await transport.handle_async_request(request)

        assert request.url.host == "8.8.8.8"
        assert request.headers["host"] == "keys.platform.example"
        assert request.extensions["sni_hostname"] == "keys.platform.example"


@pytest.mark.asyncio
async def test_fetch_text() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="KEY")))
    assert await fetch_text(client, "https://keys.example/key.pem", max_bytes=100) == (200, "KEY")


@pytest.mark.asyncio
async def test_fetch_text_returns_non_200() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503, text="down")))
    assert await fetch_text(client, "https://keys.example/key.pem", max_bytes=100) == (503, "down")


@pytest.mark.asyncio
async def test_fetch_text_content_length_limit() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="x" * 2048)))

    with pytest.raises(OversizedResponseError, match="exceeds 1024 bytes"):
        await fetch_text(client, "https://keys.example/key.pem", max_bytes=1024)


@pytest.mark.asyncio
async def test_fetch_text_streamed_limit() -> None:
    client = httpx.AsyncClient()

    async def endless() -> AsyncGenerator[bytes, None]:
        while True:
            yield b"a" * 1024

    mock_response = MagicMock()
    mock_response.headers = {}
    mock_response.aiter_bytes = endless

    @asynccontextmanager
    async def mock_stream(*args: Any, **kwargs: Any) -> AsyncGenerator[MagicMock, None]:
        _ = args
        _ = kwargs
        yield mock_response

    with (
        patch.object(client, "stream", side_effect=mock_stream),
        pytest.raises(OversizedResponseError),
    ):
        await fetch_text(client, "https://keys.example/key.pem", max_bytes=5000)
