# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.

import hashlib
import hmac

from pydantic import SecretStr


def anonymize(value: str | None, salt: SecretStr) -> str:
    """
    Anonymizes a user id or subject for logs and span attributes (HMAC-SHA256 with the configured salt).
    """
    if value is None:
        return "anonymous"
    return hmac.new(
        salt.get_secret_value().encode("utf-8"),
        value.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
