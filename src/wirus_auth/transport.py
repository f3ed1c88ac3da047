# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.

"""
Outbound HTTP helpers. Platform public keys live at URLs chosen by the platforms,
so fetches go through a transport that refuses internal addresses.
"""

import ipaddress
import socket
from typing import Any

import anyio
import httpx

from wirus_auth.exceptions import OversizedResponseError, SecurityError
from wirus_auth.utils.logger import logger


def _validate_ip(ip_obj: Any, hostname: str) -> None:
    if ip_obj.is_private or ip_obj.is_loopback or ip_obj.is_link_local or ip_obj.is_reserved or ip_obj.is_multicast:
        logger.warning(f"Security violation: Blocked access to {hostname} ({ip_obj})")
        raise SecurityError(f"Access to {hostname} ({ip_obj}) is blocked")


class SafeAsyncTransport(httpx.AsyncHTTPTransport):
    """
    An HTTP transport that pins DNS to prevent SSRF/DNS rebinding.

    The hostname is resolved once, the first public address is chosen and the request is sent
    to that address, keeping the original Host header and SNI for TLS verification.
    """

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        hostname = request.url.host

        try:
            ip_obj = ipaddress.ip_address(hostname)
        except ValueError:
            ip_obj = None

        if ip_obj is not None:
            _validate_ip(ip_obj, hostname)
            return await super().handle_async_request(request)

        try:
            addr_infos = await anyio.to_thread.run_sync(socket.getaddrinfo, hostname, None, 0, socket.SOCK_STREAM)
        except socket.gaierror as e:
            logger.error(f"DNS resolution failed for {hostname}: {e}")
            raise SecurityError(f"DNS resolution failed for {hostname}") from e

        target_ip: str | None = None
        for _, _, _, _, sockaddr in addr_infos:
            try:
                _validate_ip(ipaddress.ip_address(sockaddr[0]), hostname)
            except (SecurityError, ValueError):
                continue
            target_ip = sockaddr[0]
            break

        if not target_ip:
            raise SecurityError(f"Security violation: No valid public IP found for {hostname}")

        request.extensions["sni_hostname"] = hostname
        if "Host" not in request.headers:
            request.headers["Host"] = request.url.netloc.decode("ascii")
        request.url = request.url.copy_with(host=target_ip)

        logger.debug(f"DNS Pinned: {hostname} -> {target_ip}")
        return await super().handle_async_request(request)


async def fetch_text(client: httpx.AsyncClient, url: str, max_bytes: int) -> tuple[int, str]:
    """
    GETs a URL and returns the status code and body text.

    The body is streamed and the read aborted once it exceeds max_bytes.

    Raises:
        OversizedResponseError: If the body is larger than max_bytes.
        httpx.HTTPError: On transport failures.
    """
    async with client.stream("GET", url) as response:
        content_length = response.headers.get("Content-Length")
        if content_length and content_length.isdigit() and int(content_length) > max_bytes:
            raise OversizedResponseError(f"Response from {url} exceeds {max_bytes} bytes.")

        body = bytearray()
        async for chunk in response.aiter_bytes():
            body.extend(chunk)
            if len(body) > max_bytes:
                raise OversizedResponseError(f"Response from {url} exceeds {max_bytes} bytes.")

        return response.status_code, body.decode(response.encoding or "utf-8")
