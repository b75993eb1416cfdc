"""
Protocol constants for secure_fetch.

Wire names, sizes and defaults shared by the client and any peer that speaks
the same hybrid RSA-OAEP / AES-GCM envelope.
"""

from typing import Final

# =============================================================================
# HEADERS
# =============================================================================

DEFAULT_PUBLIC_KEY_HEADER: Final[str] = "X-Client-Init"
"""Header carrying the PEM public key on the key-fetch response."""

DEFAULT_AES_KEY_HEADER: Final[str] = "X-Request-Context"
"""Request: RSA-wrapped AES key. Response: raw AES key."""

DEFAULT_IV_HEADER: Final[str] = "X-Client-Ref"
"""Request: RSA-wrapped IV. Response: raw IV."""

HEADER_CONTENT_TYPE: Final[str] = "Content-Type"
ENCRYPTED_CONTENT_TYPE: Final[str] = "text/plain"

# =============================================================================
# ENVELOPE
# =============================================================================

# Short field tokens used on the wire (obfuscation only, not a secret)
ENVELOPE_FIELD_DATA: Final[str] = "d"
ENVELOPE_FIELD_KEY: Final[str] = "k"
ENVELOPE_FIELD_IV: Final[str] = "s"

PADDING_SEPARATOR: Final[str] = "||"
PADDING_MIN_BYTES: Final[int] = 16
PADDING_MAX_BYTES: Final[int] = 256

# =============================================================================
# PRIMITIVES
# =============================================================================

AES_KEY_SIZE: Final[int] = 32  # AES-256
AES_GCM_IV_SIZE: Final[int] = 12
AES_GCM_TAG_SIZE: Final[int] = 16

PEM_HEADER: Final[str] = "-----BEGIN PUBLIC KEY-----"
PEM_FOOTER: Final[str] = "-----END PUBLIC KEY-----"

# =============================================================================
# KEY LIFECYCLE
# =============================================================================

DEFAULT_FETCH_RETRIES: Final[int] = 3
BACKOFF_BASE_SECONDS: Final[float] = 1.0

KEY_CACHE_STORAGE_KEY: Final[str] = "secure_fetch_public_key_pem"
"""Fixed identifier of the cached PEM entry in the session store."""

HASH_LOG_PREFIX_CHARS: Final[int] = 16

# =============================================================================
# PATTERNS
# =============================================================================

WILDCARD_PATTERN: Final[str] = "*"
GLOB_SUFFIX: Final[str] = "/*"
PLACEHOLDER_TOKEN: Final[str] = "{ignore}"
PLACEHOLDER_REGEX: Final[str] = "[^/]+"

DEFAULT_ENCRYPT_ENDPOINTS: Final[tuple[str, ...]] = (WILDCARD_PATTERN,)

# =============================================================================
# HTTP
# =============================================================================

BODY_METHODS: Final[frozenset[str]] = frozenset({"POST", "PUT", "PATCH"})
HEADER_ONLY_METHODS: Final[frozenset[str]] = frozenset({"GET"})
