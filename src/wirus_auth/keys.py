# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.

"""
PlatformKeyResolver component for obtaining the public keys of platforms.
"""

import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from wirus_auth.exceptions import KeyFetchError, OversizedResponseError, SecurityError
from wirus_auth.models import Platform
from wirus_auth.transport import fetch_text
from wirus_auth.utils.logger import logger

tracer = trace.get_tracer(__name__)

KEY_URL_PREFIX = "https://"


class PlatformKeyResolver:
    """
    Resolves the PEM public key a platform signs its tokens with.

    A stored key that is an https URL is fetched on every call. There is no cache and no retry,
    and a stalled fetch is only bounded by the client's timeout.

    Attributes:
        client (httpx.AsyncClient): The HTTP client used for fetching.
        max_bytes (int): Maximum accepted size of a fetched key.
    """

    def __init__(self, client: httpx.AsyncClient, max_bytes: int = 64 * 1024) -> None:
        self.client = client
        self.max_bytes = max_bytes

    async def resolve(self, platform: Platform) -> str:
        """
        Returns the platform's PEM public key.

        Args:
            platform: The platform whose key is needed.

        Returns:
            str: The PEM encoded key.

        Raises:
            KeyFetchError: If the platform has no key, or the key URL cannot be fetched or answers non-200.
        """
        key = (platform.public_key or "").strip()
        if not key:
            raise KeyFetchError(f"Platform '{platform.id}' has no public key.")

        if not key.startswith(KEY_URL_PREFIX):
            return key

        with tracer.start_as_current_span("fetch_platform_key") as span:
            span.set_attribute("platform.id", platform.id)
            try:
                status_code, body = await fetch_text(self.client, key, self.max_bytes)
            except (httpx.HTTPError, OversizedResponseError, SecurityError) as e:
                logger.error(f"Fetching public key of platform {platform.id} failed: {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise KeyFetchError(f"Public key endpoint '{key}' could not be fetched: {e}") from e

            if status_code != 200:
                msg = f"Public key endpoint '{key}' responded with status code {status_code}."
                logger.warning(msg)
                span.set_status(Status(StatusCode.ERROR, msg))
                raise KeyFetchError(msg)

            span.set_status(Status(StatusCode.OK))
            return body
