"""
HTTP header utilities for secure_fetch.

Key, IV and ciphertext travel as standard Base64 (RFC 4648 §4, with padding).
Header lookups are case-insensitive because transports do not agree on casing.
"""

import base64
import binascii
from collections.abc import Mapping
from typing import Any

from secure_fetch.exceptions import DecryptionError

__all__ = [
    "b64_decode",
    "b64_encode",
    "get_header",
    "header_names",
]


def b64_encode(data: bytes) -> str:
    """
    Encode bytes to a standard Base64 string.

    Args:
        data: Raw bytes to encode

    Returns:
        Base64 string (with padding)
    """
    return base64.b64encode(data).decode("ascii")


def b64_decode(s: str) -> bytes:
    """
    Strictly decode a standard Base64 string.

    Args:
        s: Base64 string (surrounding whitespace ignored)

    Returns:
        Decoded bytes

    Raises:
        DecryptionError: If the input is not valid Base64
    """
    try:
        return base64.b64decode(s.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError("Malformed Base64 input") from e


def get_header(headers: Mapping[str, Any] | None, name: str) -> str | None:
    """Get header value, handling case-insensitive lookups.

    Empty values are treated as absent.
    """
    if not headers:
        return None
    # Try exact match first (faster, and covers CIMultiDict)
    value = headers.get(name)
    if value is None:
        name_lower = name.lower()
        for key in headers:
            if str(key).lower() == name_lower:
                value = headers[key]
                break
    if value is None:
        return None
    value = str(value)
    return value or None


def header_names(headers: Mapping[str, Any] | None) -> list[str]:
    """List observed header names (deduplicated, original casing)."""
    if not headers:
        return []
    return list(dict.fromkeys(str(key) for key in headers))
