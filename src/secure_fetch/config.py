"""
Configuration surface for secure_fetch.

Usage:
    config = SecurityConfig(
        public_key_endpoint="https://api.example.com/crypto/init",
        expected_public_key_hash="9f86d0...",
        encrypt_endpoints=["/insurance/*"],
        skip_endpoints=["/public/*"],
    )

    # Or directly from settings loaded elsewhere
    config = SecurityConfig.from_mapping(settings["secure_fetch"])
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, fields
from typing import Any

from secure_fetch.constants import (
    DEFAULT_AES_KEY_HEADER,
    DEFAULT_ENCRYPT_ENDPOINTS,
    DEFAULT_FETCH_RETRIES,
    DEFAULT_IV_HEADER,
    DEFAULT_PUBLIC_KEY_HEADER,
    PADDING_MAX_BYTES,
    PADDING_MIN_BYTES,
)
from secure_fetch.exceptions import ConfigurationError

__all__ = [
    "SecurityConfig",
]


def _as_patterns(name: str, value: Iterable[str]) -> tuple[str, ...]:
    if isinstance(value, (str, bytes)):
        raise ConfigurationError(f"{name} must be a list of patterns, not a single string")
    patterns = tuple(value)
    for pattern in patterns:
        if not isinstance(pattern, str):
            raise ConfigurationError(f"{name} entries must be strings, got {type(pattern).__name__}")
    return patterns


@dataclass(frozen=True)
class SecurityConfig:
    """Settings consumed by the key lifecycle, codec and pipeline."""

    enable_encryption: bool = True
    """Master switch. False bypasses key acquisition and all encryption."""

    public_key_endpoint: str | None = None
    """Full URL of the key endpoint (required unless public_key is set)."""

    public_key: str | None = None
    """PEM public key supplied directly. Skips cache and remote fetch."""

    expected_public_key_hash: str | None = None
    """Hex SHA-256 of the PEM text. Without it the key is never trusted."""

    encrypt_endpoints: tuple[str, ...] = DEFAULT_ENCRYPT_ENDPOINTS
    """Include-patterns: '*', 'prefix/*', substring or '{ignore}' templates."""

    skip_endpoints: tuple[str, ...] = ()
    """Skip-patterns. Always win over include-patterns."""

    public_key_header: str = DEFAULT_PUBLIC_KEY_HEADER
    aes_key_header: str = DEFAULT_AES_KEY_HEADER
    iv_header: str = DEFAULT_IV_HEADER

    debug_logging: bool = False

    public_key_fetch_retries: int = DEFAULT_FETCH_RETRIES
    """Total fetch attempts before giving up (exponential backoff between)."""

    padding_min_bytes: int = PADDING_MIN_BYTES
    padding_max_bytes: int = PADDING_MAX_BYTES

    def __post_init__(self) -> None:
        object.__setattr__(self, "encrypt_endpoints", _as_patterns("encrypt_endpoints", self.encrypt_endpoints))
        object.__setattr__(self, "skip_endpoints", _as_patterns("skip_endpoints", self.skip_endpoints))
        self.validate()

    def validate(self) -> None:
        """
        Check the configuration for consistency.

        Raises:
            ConfigurationError: On any inconsistent or missing setting
        """
        if self.enable_encryption and not self.public_key and not self.public_key_endpoint:
            raise ConfigurationError("public_key_endpoint or public_key required")

        if self.public_key_fetch_retries < 1:
            raise ConfigurationError(f"public_key_fetch_retries must be >= 1, got {self.public_key_fetch_retries}")

        if self.padding_min_bytes < 0 or self.padding_max_bytes < self.padding_min_bytes:
            raise ConfigurationError(
                f"Invalid padding range: {self.padding_min_bytes}..{self.padding_max_bytes}"
            )

        for name in ("public_key_header", "aes_key_header", "iv_header"):
            if not getattr(self, name):
                raise ConfigurationError(f"{name} must not be empty")

        if self.aes_key_header.lower() == self.iv_header.lower():
            raise ConfigurationError("aes_key_header and iv_header must differ")

    @property
    def padding_range(self) -> tuple[int, int]:
        return (self.padding_min_bytes, self.padding_max_bytes)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SecurityConfig":
        """
        Build a config from a plain mapping (e.g. parsed JSON or TOML).

        Args:
            data: Keys named after the dataclass fields

        Returns:
            Validated SecurityConfig

        Raises:
            ConfigurationError: On unknown keys or invalid values
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**dict(data))
