"""
Hybrid RSA-OAEP / AES-256-GCM envelope codec.

Request (client -> server):
    body:            base64(AES-GCM(key, iv, json || "||" || padding))
    X-Request-Context: base64(RSA-OAEP(public_key, key))
    X-Client-Ref:      base64(RSA-OAEP(public_key, iv))

Response (server -> client):
    body:            base64(AES-GCM(key, iv, json || "||" || padding))
    X-Request-Context: base64(key)   # raw, relies on TLS
    X-Client-Ref:      base64(iv)    # raw, relies on TLS

Header-only exchanges (bodyless GET) send just the wrapped key/IV so the
server can seal its reply with them.

The envelope object uses short wire tokens (d/k/s). They only obscure field
meaning and are not a security control.
"""

import json
import secrets
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from secure_fetch._logging import get_logger
from secure_fetch.constants import (
    AES_GCM_IV_SIZE,
    AES_GCM_TAG_SIZE,
    AES_KEY_SIZE,
    ENVELOPE_FIELD_DATA,
    ENVELOPE_FIELD_IV,
    ENVELOPE_FIELD_KEY,
    PADDING_MAX_BYTES,
    PADDING_MIN_BYTES,
    PADDING_SEPARATOR,
)
from secure_fetch.exceptions import DecryptionError, EncryptionError
from secure_fetch.headers import b64_decode, b64_encode

__all__ = [
    "EncryptionEnvelope",
    "SealedResponse",
    "SessionHeaders",
    "create_session_headers",
    "open_payload",
    "open_request",
    "seal_payload",
    "seal_response",
    "unwrap_session_material",
]

_logger = get_logger(__name__)

_DEFAULT_PADDING_RANGE = (PADDING_MIN_BYTES, PADDING_MAX_BYTES)


def _oaep() -> padding.OAEP:
    """RSA-OAEP with SHA-256 for both the digest and MGF1."""
    return padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None)


# =============================================================================
# WIRE TYPES
# =============================================================================


@dataclass(frozen=True)
class EncryptionEnvelope:
    """Sealed request body plus its wrapped session material (all Base64)."""

    data: str
    """AES-GCM ciphertext of payload || separator || padding."""

    wrapped_key: str
    """RSA-OAEP wrapped raw AES key."""

    wrapped_iv: str
    """RSA-OAEP wrapped raw 12-byte IV."""

    def to_wire(self) -> dict[str, str]:
        """Envelope with the short wire field names."""
        return {
            ENVELOPE_FIELD_DATA: self.data,
            ENVELOPE_FIELD_KEY: self.wrapped_key,
            ENVELOPE_FIELD_IV: self.wrapped_iv,
        }

    @classmethod
    def from_wire(cls, wire: dict[str, Any]) -> "EncryptionEnvelope":
        """
        Parse an envelope from its wire form.

        Raises:
            DecryptionError: If a field is missing or not a string
        """
        values = [wire.get(name) for name in (ENVELOPE_FIELD_DATA, ENVELOPE_FIELD_KEY, ENVELOPE_FIELD_IV)]
        if not all(isinstance(v, str) and v for v in values):
            raise DecryptionError("Malformed envelope: missing or invalid fields")
        return cls(data=values[0], wrapped_key=values[1], wrapped_iv=values[2])

    def headers(self, aes_key_header: str, iv_header: str) -> dict[str, str]:
        """Headers carrying the wrapped key and IV."""
        return {aes_key_header: self.wrapped_key, iv_header: self.wrapped_iv}


@dataclass(frozen=True)
class SessionHeaders:
    """Wrapped key/IV for a header-only exchange (no body sealed)."""

    wrapped_key: str
    wrapped_iv: str

    def headers(self, aes_key_header: str, iv_header: str) -> dict[str, str]:
        return {aes_key_header: self.wrapped_key, iv_header: self.wrapped_iv}


@dataclass(frozen=True)
class SealedResponse:
    """Peer-side sealed reply: body plus raw Base64 key/IV headers."""

    body: str
    key: str
    iv: str

    def headers(self, aes_key_header: str, iv_header: str) -> dict[str, str]:
        return {aes_key_header: self.key, iv_header: self.iv}


# =============================================================================
# INTERNAL HELPERS
# =============================================================================


def _generate_session_material() -> tuple[bytes, bytes]:
    """Fresh AES-256 key and 12-byte IV. Never reused across plaintexts."""
    return AESGCM.generate_key(bit_length=AES_KEY_SIZE * 8), secrets.token_bytes(AES_GCM_IV_SIZE)


def _random_padding(padding_range: tuple[int, int]) -> str:
    """Base64 text of a uniformly sized run of random bytes."""
    low, high = padding_range
    length = low + secrets.randbelow(high - low + 1)
    return b64_encode(secrets.token_bytes(length))


def _serialize(payload: Any) -> str:
    # "|" only occurs inside JSON strings; escaping it keeps the separator unique
    try:
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).replace("|", "\\u007c")
    except (TypeError, ValueError) as e:
        raise EncryptionError(f"Payload is not JSON serializable: {e}") from e


def _seal_text(payload: Any, key: bytes, iv: bytes, padding_range: tuple[int, int]) -> str:
    padded = f"{_serialize(payload)}{PADDING_SEPARATOR}{_random_padding(padding_range)}"
    ciphertext = AESGCM(key).encrypt(iv, padded.encode("utf-8"), None)
    return b64_encode(ciphertext)


def _open_text(body: str, key: bytes, iv: bytes) -> Any:
    if len(key) != AES_KEY_SIZE:
        raise DecryptionError(f"Invalid AES key length: {len(key)} bytes (expected {AES_KEY_SIZE})")
    if len(iv) != AES_GCM_IV_SIZE:
        raise DecryptionError(f"Invalid IV length: {len(iv)} bytes (expected {AES_GCM_IV_SIZE})")

    ciphertext = b64_decode(_unquote(body))
    if len(ciphertext) < AES_GCM_TAG_SIZE:
        raise DecryptionError(f"Ciphertext too short: {len(ciphertext)} bytes (minimum {AES_GCM_TAG_SIZE})")

    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext, None)
    except InvalidTag as e:
        raise DecryptionError("Authentication failed (wrong key/IV or tampered ciphertext)") from e

    try:
        text = plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted body is not valid UTF-8") from e

    data, sep, _padding = text.partition(PADDING_SEPARATOR)
    if not sep:
        raise DecryptionError("Malformed plaintext: padding separator not found")

    try:
        return json.loads(data)
    except json.JSONDecodeError as e:
        raise DecryptionError("Decrypted payload is not valid JSON") from e


def _unquote(body: str) -> str:
    """Accept a ciphertext that was delivered as a JSON string literal."""
    stripped = body.strip()
    if len(stripped) >= 2 and stripped[0] == stripped[-1] == '"':
        try:
            value = json.loads(stripped)
        except json.JSONDecodeError as e:
            raise DecryptionError("Malformed quoted ciphertext") from e
        if isinstance(value, str):
            return value
    return stripped


def _wrap(public_key: RSAPublicKey, data: bytes) -> str:
    return b64_encode(public_key.encrypt(data, _oaep()))


def _unwrap(private_key: RSAPrivateKey, wrapped: str) -> bytes:
    try:
        return private_key.decrypt(b64_decode(wrapped), _oaep())
    except ValueError as e:
        raise DecryptionError("RSA-OAEP unwrap failed") from e


# =============================================================================
# CLIENT SIDE
# =============================================================================


def seal_payload(
    payload: Any,
    public_key: RSAPublicKey | None,
    *,
    padding_range: tuple[int, int] = _DEFAULT_PADDING_RANGE,
) -> EncryptionEnvelope:
    """
    Seal a structured payload for a request body.

    Generates a fresh key/IV, encrypts the padded JSON with AES-GCM, and
    wraps the key and IV independently under RSA-OAEP.

    Args:
        payload: JSON-serializable structure
        public_key: Active RSA public key
        padding_range: Inclusive byte range for the random padding

    Returns:
        EncryptionEnvelope with Base64 fields

    Raises:
        EncryptionError: If no key is active or payload is not serializable
    """
    if public_key is None:
        raise EncryptionError("No active public key")

    key, iv = _generate_session_material()
    envelope = EncryptionEnvelope(
        data=_seal_text(payload, key, iv, padding_range),
        wrapped_key=_wrap(public_key, key),
        wrapped_iv=_wrap(public_key, iv),
    )
    _logger.debug("Payload sealed: ciphertext_size=%d", len(envelope.data))
    return envelope


def create_session_headers(public_key: RSAPublicKey | None) -> SessionHeaders:
    """
    Generate wrapped key/IV for a bodyless request.

    The server unwraps them and seals its reply with the same material.

    Raises:
        EncryptionError: If no key is active
    """
    if public_key is None:
        raise EncryptionError("No active public key")

    key, iv = _generate_session_material()
    return SessionHeaders(wrapped_key=_wrap(public_key, key), wrapped_iv=_wrap(public_key, iv))


def open_payload(body: str | bytes | None, key_b64: str | None, iv_b64: str | None) -> Any | None:
    """
    Open an encrypted response body with raw key/IV from response headers.

    Args:
        body: Base64 ciphertext (text or bytes)
        key_b64: Raw AES key, Base64
        iv_b64: Raw IV, Base64

    Returns:
        The structured payload, or None if the exchange was not encrypted
        (a header is missing or the body is empty)

    Raises:
        DecryptionError: On malformed input or authentication failure
    """
    if isinstance(body, bytes):
        try:
            body = body.decode("ascii")
        except UnicodeDecodeError as e:
            raise DecryptionError("Ciphertext body is not ASCII") from e
    if not key_b64 or not iv_b64 or not body or not body.strip():
        return None

    payload = _open_text(body, b64_decode(key_b64), b64_decode(iv_b64))
    _logger.debug("Response opened: ciphertext_size=%d", len(body))
    return payload


# =============================================================================
# SERVER SIDE (peer)
# =============================================================================


def unwrap_session_material(
    wrapped_key: str,
    wrapped_iv: str,
    private_key: RSAPrivateKey,
) -> tuple[bytes, bytes]:
    """
    Recover the raw key and IV a client wrapped with the public key.

    Returns:
        Tuple of (key, iv)

    Raises:
        DecryptionError: If unwrap fails or sizes are wrong
    """
    key = _unwrap(private_key, wrapped_key)
    iv = _unwrap(private_key, wrapped_iv)
    if len(key) != AES_KEY_SIZE or len(iv) != AES_GCM_IV_SIZE:
        raise DecryptionError("Unwrapped session material has unexpected size")
    return key, iv


def open_request(body: str, wrapped_key: str, wrapped_iv: str, private_key: RSAPrivateKey) -> Any:
    """
    Open a sealed request body with the server's private key.

    Raises:
        DecryptionError: On unwrap, authentication or format failure
    """
    key, iv = unwrap_session_material(wrapped_key, wrapped_iv, private_key)
    return _open_text(body, key, iv)


def seal_response(
    payload: Any,
    *,
    key: bytes | None = None,
    iv: bytes | None = None,
    padding_range: tuple[int, int] = _DEFAULT_PADDING_RANGE,
) -> SealedResponse:
    """
    Seal a reply body for a client.

    Pass the key/IV recovered from a header-only request to answer it;
    otherwise fresh material is generated. Never pass material that already
    sealed another plaintext (e.g. the request body).

    Returns:
        SealedResponse with body and raw Base64 key/IV for the headers
    """
    if key is None or iv is None:
        key, iv = _generate_session_material()
    return SealedResponse(body=_seal_text(payload, key, iv, padding_range), key=b64_encode(key), iv=b64_encode(iv))
