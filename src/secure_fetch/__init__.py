"""
Transparent hybrid RSA/AES encryption for HTTP clients.

Request bodies are sealed with a fresh AES-256-GCM key per exchange, the key
and IV wrapped with the server's pinned RSA-OAEP public key. Sealed responses
(including error responses) are opened with the key/IV the server returns in
headers. Application code sends and receives plain structures.

Usage (Client - aiohttp):
    from secure_fetch import SecurityConfig
    from secure_fetch.middleware.aiohttp import SecureClientSession

    config = SecurityConfig(
        public_key_endpoint="https://api.example.com/crypto/init",
        expected_public_key_hash=pinned_hash,
        skip_endpoints=["/public/*"],
    )
    async with SecureClientSession(config, base_url="https://api.example.com") as session:
        response = await session.post("/orders", json=order)
        print(response.json())
"""

from secure_fetch.cache import KeyCache, MemoryKeyCache
from secure_fetch.config import SecurityConfig
from secure_fetch.constants import (
    DEFAULT_AES_KEY_HEADER,
    DEFAULT_IV_HEADER,
    DEFAULT_PUBLIC_KEY_HEADER,
)
from secure_fetch.exceptions import (
    ConfigurationError,
    CryptoError,
    DecryptionError,
    EncryptionError,
    EncryptionNotReadyError,
    HTTPResponseError,
    KeyFetchError,
    KeyHeaderMissingError,
    KeyLifecycleError,
    KeyTrustError,
    SecureFetchError,
)
from secure_fetch.lifecycle import KeyLifecycleManager, KeySource, KeyState, LifecycleResult
from secure_fetch.patterns import matches
from secure_fetch.pipeline import InterceptionPipeline, SecureResponse

__all__ = [
    # Constants
    "DEFAULT_AES_KEY_HEADER",
    "DEFAULT_IV_HEADER",
    "DEFAULT_PUBLIC_KEY_HEADER",
    # Core
    "InterceptionPipeline",
    "KeyCache",
    "KeyLifecycleManager",
    "KeySource",
    "KeyState",
    "LifecycleResult",
    "MemoryKeyCache",
    "SecureResponse",
    "SecurityConfig",
    "matches",
    # Exceptions
    "ConfigurationError",
    "CryptoError",
    "DecryptionError",
    "EncryptionError",
    "EncryptionNotReadyError",
    "HTTPResponseError",
    "KeyFetchError",
    "KeyHeaderMissingError",
    "KeyLifecycleError",
    "KeyTrustError",
    "SecureFetchError",
]

__version__ = "0.1.0"
