"""
Exception hierarchy for secure_fetch.

All library errors inherit from SecureFetchError for easy catching.
Key lifecycle failures block startup; decryption failures never do.
"""

from collections.abc import Iterator, Mapping
from typing import Any


class SecureFetchError(Exception):
    """Base exception for all secure_fetch errors."""


class ConfigurationError(SecureFetchError):
    """Invalid or incomplete configuration.

    Raised synchronously when the config object is built, e.g. encryption is
    enabled but neither a public key nor a key endpoint is configured.
    """


# =============================================================================
# KEY LIFECYCLE
# =============================================================================


class KeyLifecycleError(SecureFetchError):
    """Base for errors that leave the key lifecycle in the FAILED state."""


class KeyFetchError(KeyLifecycleError):
    """Fetching the public key from the key endpoint failed.

    Possible causes:
    - Network or DNS failure
    - Timeout
    - Non-2xx status from the key endpoint
    """

    def __init__(self, message: str, attempts: int = 1) -> None:
        self.attempts = attempts
        super().__init__(message)


class KeyHeaderMissingError(KeyLifecycleError):
    """Key endpoint answered but the configured header was not present.

    Almost always a CORS exposure problem. Not retried.
    """

    def __init__(self, header_name: str, available_headers: list[str]) -> None:
        self.header_name = header_name
        self.available_headers = available_headers
        super().__init__(
            f"{header_name} header not found (available: {', '.join(available_headers) or 'none'}). "
            "Set Access-Control-Expose-Headers on the key endpoint"
        )


class KeyTrustError(KeyLifecycleError):
    """Public key could not be trusted.

    Raised when the computed hash differs from the pinned hash, when no pin is
    configured, or when the PEM is not a usable RSA public key.
    """

    def __init__(self, message: str, computed_hash: str | None = None, *, pinned: bool = True) -> None:
        self.computed_hash = computed_hash
        self.pinned = pinned
        super().__init__(message)


class EncryptionNotReadyError(SecureFetchError):
    """A request needed encryption but the key lifecycle is not READY."""


# =============================================================================
# CODEC
# =============================================================================


class CryptoError(SecureFetchError):
    """Base exception for envelope encryption/decryption errors."""


class EncryptionError(CryptoError):
    """Failed to seal a payload (no active key, unserializable payload)."""


class DecryptionError(CryptoError):
    """Failed to open an encrypted body.

    Possible causes:
    - Malformed Base64 in body or headers
    - Wrong key or IV
    - Tampered ciphertext (authentication tag mismatch)
    - Missing padding separator
    - Decrypted text is not valid JSON
    """


# =============================================================================
# HTTP
# =============================================================================


class HTTPResponseError(SecureFetchError):
    """Error response (4xx/5xx) from an intercepted exchange.

    Two variants share this type:
    - decrypted: ``payload`` holds the opened error body and its top-level
      fields are exposed directly (``err["errors"]``)
    - original: ``payload`` is None and ``body`` is the untouched error body
    """

    def __init__(
        self,
        status: int,
        reason: str | None,
        url: str,
        headers: Mapping[str, str],
        body: str | None,
        payload: Any = None,
        *,
        decrypted: bool = False,
    ) -> None:
        self.status = status
        self.reason = reason
        self.url = url
        self.headers = headers
        self.body = body
        self.payload = payload
        self.decrypted = decrypted
        # Flattened view of a decrypted object body
        self.fields: dict[str, Any] = dict(payload) if decrypted and isinstance(payload, Mapping) else {}
        super().__init__(f"{status} {reason or ''}".strip() + f" for {url}")

    def __getitem__(self, name: str) -> Any:
        return self.fields[name]

    def __contains__(self, name: object) -> bool:
        return name in self.fields

    def __iter__(self) -> Iterator[str]:
        return iter(self.fields)

    def get(self, name: str, default: Any = None) -> Any:
        """Return a decrypted top-level field, or ``default``."""
        return self.fields.get(name, default)
