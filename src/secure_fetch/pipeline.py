"""
Per-exchange interception: decide, seal, open.

Transport-agnostic. A transport adapter hands in plain request/response
objects and gets back transformed ones (see middleware/aiohttp.py).

Request path:
- POST/PUT/PATCH with a structured body: seal body, attach wrapped key/IV,
  Content-Type text/plain
- GET: attach wrapped key/IV only, so the reply can be sealed
- everything else: unchanged

Response path:
- 2xx with raw key/IV headers: open body, replace with the structure
- 4xx/5xx: raise HTTPResponseError, decrypted and flattened when possible,
  otherwise the original error untouched
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey

from secure_fetch._logging import get_logger
from secure_fetch.config import SecurityConfig
from secure_fetch.constants import (
    BODY_METHODS,
    ENCRYPTED_CONTENT_TYPE,
    HEADER_CONTENT_TYPE,
    HEADER_ONLY_METHODS,
)
from secure_fetch.envelope import create_session_headers, open_payload, seal_payload
from secure_fetch.exceptions import DecryptionError, HTTPResponseError
from secure_fetch.headers import get_header
from secure_fetch.lifecycle import KeyLifecycleManager
from secure_fetch.patterns import matches

__all__ = [
    "IncomingResponse",
    "InterceptionPipeline",
    "OutgoingRequest",
    "SecureResponse",
]

_logger = get_logger(__name__)


@dataclass(frozen=True)
class OutgoingRequest:
    """Request as the application issued it (or as transformed)."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    """Structured body (dict/list), raw str/bytes, or None."""

    encrypted: bool = False
    """Body was replaced by ciphertext."""

    session_keyed: bool = False
    """Header-only key/IV material was attached."""


@dataclass(frozen=True)
class IncomingResponse:
    """Response as received from the transport."""

    status: int
    reason: str | None
    url: str
    headers: Mapping[str, str]
    body: str | None


@dataclass(frozen=True)
class SecureResponse:
    """Response handed back to the application."""

    status: int
    reason: str | None
    url: str
    headers: Mapping[str, str]
    text: str | None
    """Body exactly as received (ciphertext when decrypted)."""

    data: Any = None
    """Opened structure when ``decrypted`` is True."""

    decrypted: bool = False

    @property
    def ok(self) -> bool:
        return self.status < 400

    def json(self) -> Any:
        """Opened structure, or the plaintext body parsed as JSON."""
        if self.decrypted:
            return self.data
        if not self.text:
            return None
        return json.loads(self.text)


def _with_headers(headers: Mapping[str, str], updates: Mapping[str, str]) -> dict[str, str]:
    """Merge headers, replacing existing entries regardless of case."""
    lowered = {name.lower() for name in updates}
    merged = {name: value for name, value in headers.items() if name.lower() not in lowered}
    merged.update(updates)
    return merged


class InterceptionPipeline:
    """
    Wires pattern matching, key readiness and the envelope codec together.

    Example:
        pipeline = InterceptionPipeline(config, manager)
        prepared = await pipeline.prepare_request(OutgoingRequest("POST", url, body=data))
        # ... send prepared via the transport ...
        result = pipeline.process_response(prepared, IncomingResponse(...))
    """

    def __init__(self, config: SecurityConfig, manager: KeyLifecycleManager) -> None:
        self.config = config
        self.manager = manager

    def should_intercept(self, url: str) -> bool:
        """Encryption applies to this URL (never the key endpoint itself)."""
        if not self.config.enable_encryption:
            return False
        if self.config.public_key_endpoint and url == self.config.public_key_endpoint:
            return False
        return matches(url, self.config.encrypt_endpoints, self.config.skip_endpoints)

    async def _active_key(self) -> RSAPublicKey:
        # Waits for the one lifecycle run; re-raises its failure
        await self.manager.initialize()
        return self.manager.require_public_key()

    async def prepare_request(self, request: OutgoingRequest) -> OutgoingRequest:
        """
        Transform an outgoing request.

        Returns:
            The sealed/keyed request, or the input unchanged

        Raises:
            KeyLifecycleError: If the key lifecycle failed
            EncryptionNotReadyError: If no key is active
            EncryptionError: If the body cannot be serialized
        """
        if not self.should_intercept(request.url):
            return request

        method = request.method.upper()
        config = self.config

        if method in HEADER_ONLY_METHODS:
            session = create_session_headers(await self._active_key())
            _logger.debug("Generated encrypted headers: method=%s url=%s", method, request.url)
            return replace(
                request,
                headers=_with_headers(request.headers, session.headers(config.aes_key_header, config.iv_header)),
                session_keyed=True,
            )

        if method not in BODY_METHODS or not isinstance(request.body, (dict, list)):
            return request

        _logger.debug("Encrypting %s request: url=%s", method, request.url)
        envelope = seal_payload(request.body, await self._active_key(), padding_range=config.padding_range)
        headers = _with_headers(
            request.headers,
            {
                HEADER_CONTENT_TYPE: ENCRYPTED_CONTENT_TYPE,
                **envelope.headers(config.aes_key_header, config.iv_header),
            },
        )
        return replace(request, headers=headers, body=envelope.data, encrypted=True)

    def _open(self, request: OutgoingRequest, response: IncomingResponse) -> Any | None:
        """Opened payload, None if not encrypted. Raises DecryptionError."""
        if not self.should_intercept(request.url):
            return None
        key_b64 = get_header(response.headers, self.config.aes_key_header)
        iv_b64 = get_header(response.headers, self.config.iv_header)
        if not key_b64 or not iv_b64 or not response.body:
            if response.body:
                _logger.debug("Missing encryption headers: url=%s", response.url)
            return None
        return open_payload(response.body, key_b64, iv_b64)

    def process_response(self, request: OutgoingRequest, response: IncomingResponse) -> SecureResponse:
        """
        Transform an incoming response.

        Returns:
            SecureResponse (opened when the exchange was encrypted)

        Raises:
            HTTPResponseError: For 4xx/5xx statuses
        """
        if response.status >= 400:
            raise self._error(request, response)

        plain = SecureResponse(response.status, response.reason, response.url, response.headers, response.body)
        try:
            payload = self._open(request, response)
        except DecryptionError as e:
            _logger.warning("Response decryption failed, passing body through: url=%s error=%s", response.url, e)
            return plain

        if payload is None:
            return plain
        _logger.debug("Response decrypted successfully: url=%s", response.url)
        return replace(plain, data=payload, decrypted=True)

    def _error(self, request: OutgoingRequest, response: IncomingResponse) -> HTTPResponseError:
        original = HTTPResponseError(
            response.status, response.reason, response.url, response.headers, response.body
        )
        try:
            payload = self._open(request, response)
        except DecryptionError as e:
            _logger.warning("Failed to decrypt error response: url=%s error=%s", response.url, e)
            return original

        if payload is None:
            _logger.debug("Error response not encrypted: status=%d url=%s", response.status, response.url)
            return original

        _logger.debug("Error response decrypted: status=%d url=%s", response.status, response.url)
        return HTTPResponseError(
            response.status,
            response.reason,
            response.url,
            response.headers,
            response.body,
            payload,
            decrypted=True,
        )
