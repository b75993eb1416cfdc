"""
Public key lifecycle: acquire, pin-check, import, cache.

State machine:

    UNINITIALIZED -> DISABLED                                   (switch off)
    UNINITIALIZED -> USING_DIRECT_KEY -> VALIDATING -> READY | FAILED
    UNINITIALIZED -> CHECKING_CACHE -> VALIDATING -> READY
                                    \\-> (miss or stale) FETCHING -> VALIDATING -> READY | FAILED

Startup awaits ``initialize()`` once; the driver runs exactly once per
manager and every later call returns (or re-raises) the memoized outcome.
The imported key is written once on READY and read-only afterwards.

Usage:
    manager = KeyLifecycleManager(config, MemoryKeyCache(), fetcher=fetch_headers)
    await manager.initialize()      # raises KeyLifecycleError on FAILED
    public_key = manager.require_public_key()
"""

import asyncio
import hashlib
import hmac
import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
from cryptography.hazmat.primitives.serialization import load_der_public_key

from secure_fetch._logging import get_logger
from secure_fetch.cache import FailSoftCache, KeyCache
from secure_fetch.config import SecurityConfig
from secure_fetch.constants import (
    BACKOFF_BASE_SECONDS,
    HASH_LOG_PREFIX_CHARS,
    KEY_CACHE_STORAGE_KEY,
    PEM_FOOTER,
    PEM_HEADER,
)
from secure_fetch.exceptions import (
    ConfigurationError,
    DecryptionError,
    EncryptionNotReadyError,
    KeyFetchError,
    KeyHeaderMissingError,
    KeyLifecycleError,
    KeyTrustError,
)
from secure_fetch.headers import b64_decode, get_header, header_names

__all__ = [
    "KeyFetcher",
    "KeyLifecycleManager",
    "KeySource",
    "KeyState",
    "LifecycleResult",
    "backoff_delay",
    "compute_key_hash",
    "import_public_key",
    "verify_key_hash",
]

_logger = get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")

KeyFetcher = Callable[[str], Awaitable[Mapping[str, str]]]
"""
Async callback performing the key GET.

Args:
    url: Key endpoint URL

Returns:
    Response headers of a 2xx response

Raises:
    KeyFetchError: On transport failure or non-2xx status (any exception is retried)
"""


class KeyState(Enum):
    """Lifecycle states."""

    UNINITIALIZED = "uninitialized"
    DISABLED = "disabled"
    USING_DIRECT_KEY = "using_direct_key"
    CHECKING_CACHE = "checking_cache"
    FETCHING = "fetching"
    VALIDATING = "validating"
    READY = "ready"
    FAILED = "failed"


class KeySource(Enum):
    """Where the PEM came from."""

    CONFIG = "config"
    CACHE = "cache"
    REMOTE = "remote"


@dataclass(frozen=True)
class LifecycleResult:
    """Terminal outcome of one lifecycle run."""

    state: KeyState
    source: KeySource | None = None
    key_hash: str | None = None
    error: KeyLifecycleError | None = None

    @property
    def ok(self) -> bool:
        """True for READY and DISABLED."""
        return self.state in (KeyState.READY, KeyState.DISABLED)


# =============================================================================
# HASH PINNING / IMPORT
# =============================================================================


def compute_key_hash(pem: str) -> str:
    """Lower-case hex SHA-256 of the PEM text exactly as received."""
    return hashlib.sha256(pem.encode("utf-8")).hexdigest()


def verify_key_hash(pem: str, expected_hash: str | None) -> bool:
    """
    Compare the PEM's SHA-256 against the pinned hash.

    Hex comparison is case-insensitive. A missing pin never verifies; the
    computed hash is logged so it can be configured.

    Args:
        pem: PEM text
        expected_hash: Pinned hex digest, or None

    Returns:
        True only if a pin is configured and matches
    """
    computed = compute_key_hash(pem)
    _logger.debug("Public key hash: %s", computed)

    if not expected_hash or not expected_hash.strip():
        _logger.warning("Public key pinning not configured! Use hash: %s", computed)
        return False

    expected = expected_hash.strip().lower()
    if not hmac.compare_digest(computed, expected):
        _logger.error(
            "Hash mismatch! Expected: %s..., Got: %s...",
            expected[:HASH_LOG_PREFIX_CHARS],
            computed[:HASH_LOG_PREFIX_CHARS],
        )
        return False

    _logger.debug("Public key hash verified")
    return True


def import_public_key(pem: str) -> RSAPublicKey:
    """
    Import an RSA public key from PEM (SPKI).

    Line breaks are optional: PEMs that travelled in an HTTP header usually
    arrive flattened onto one line.

    Raises:
        KeyTrustError: If the text is not an RSA SubjectPublicKeyInfo
    """
    body = _WHITESPACE.sub("", pem.replace(PEM_HEADER, "").replace(PEM_FOOTER, ""))
    try:
        der = b64_decode(body)
        key = load_der_public_key(der)
    except (DecryptionError, ValueError) as e:
        raise KeyTrustError(f"Public key could not be imported: {e}", compute_key_hash(pem)) from e

    if not isinstance(key, RSAPublicKey):
        raise KeyTrustError(
            f"Public key is not an RSA key: {type(key).__name__}", compute_key_hash(pem)
        )
    _logger.debug("Key imported: key_size=%d", key.key_size)
    return key


def _as_fetch_error(error: Exception) -> KeyFetchError:
    """Injected fetchers may raise anything; all of it counts as a transport failure."""
    if isinstance(error, KeyFetchError):
        return error
    wrapped = KeyFetchError(f"{type(error).__name__}: {error}")
    wrapped.__cause__ = error
    return wrapped


def backoff_delay(attempt: int, base: float = BACKOFF_BASE_SECONDS) -> float:
    """Delay after failed attempt N (1-based): base * 2^(N-1)."""
    return base * (2 ** (attempt - 1))


# =============================================================================
# MANAGER
# =============================================================================


class KeyLifecycleManager:
    """
    Owns the active public key and the lifecycle state.

    One instance per process/session, shared by every request. Pass it to
    the pipeline explicitly rather than reaching for a global.
    """

    def __init__(
        self,
        config: SecurityConfig,
        cache: KeyCache | None = None,
        *,
        fetcher: KeyFetcher | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the manager.

        Args:
            config: Validated SecurityConfig
            cache: Session-scoped PEM store (None disables caching)
            fetcher: Async key GET, required when the key is fetched remotely
            sleep: Backoff sleep (injectable for tests)

        Raises:
            ConfigurationError: If a remote fetch is configured without a fetcher
        """
        if config.enable_encryption and not config.public_key and fetcher is None:
            raise ConfigurationError("A key fetcher is required when public_key_endpoint is used")

        self.config = config
        self._cache = FailSoftCache(cache, KEY_CACHE_STORAGE_KEY)
        self._fetcher = fetcher
        self._sleep = sleep

        self._state = KeyState.UNINITIALIZED
        self._public_key: RSAPublicKey | None = None
        self._result: LifecycleResult | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> KeyState:
        return self._state

    @property
    def result(self) -> LifecycleResult | None:
        """Memoized outcome of ``initialize()``, None before it completes."""
        return self._result

    @property
    def public_key(self) -> RSAPublicKey | None:
        """Active key; None until READY."""
        return self._public_key

    @property
    def is_ready(self) -> bool:
        return self._state is KeyState.READY

    @property
    def is_disabled(self) -> bool:
        return self._state is KeyState.DISABLED

    def require_public_key(self) -> RSAPublicKey:
        """
        Return the active key or refuse.

        Raises:
            EncryptionNotReadyError: If the lifecycle has not reached READY
        """
        if self._state is not KeyState.READY or self._public_key is None:
            raise EncryptionNotReadyError(f"Public key not available (state={self._state.value})")
        return self._public_key

    async def initialize(self) -> LifecycleResult:
        """
        Run the lifecycle once and block until it is terminal.

        Concurrent and later callers share the first run's outcome.

        Returns:
            LifecycleResult in READY or DISABLED state

        Raises:
            KeyLifecycleError: If the lifecycle FAILED (same error every call)
        """
        async with self._lock:
            if self._result is None:
                try:
                    self._result = await self.run()
                except asyncio.CancelledError:
                    self._result = self._fail(KeyFetchError("Key lifecycle cancelled before completion"), None)
                    raise
                except Exception as e:  # noqa: BLE001
                    error = KeyLifecycleError(f"Key lifecycle aborted: {e}")
                    error.__cause__ = e
                    self._result = self._fail(error, None)
                if self._result.error is not None:
                    _logger.error("Initialization failed: %s", self._result.error)
                    _logger.error("Encrypted requests are blocked until this is resolved.")
                    _logger.error("To bypass encryption, set enable_encryption=False")

        if self._result.error is not None:
            raise self._result.error
        return self._result

    async def run(self) -> LifecycleResult:
        """
        Drive the state machine from UNINITIALIZED to a terminal state.

        Never raises for fetch, contract or trust errors; they are returned
        in ``LifecycleResult.error``.

        Raises:
            RuntimeError: If the manager has already left UNINITIALIZED
        """
        if self._state is not KeyState.UNINITIALIZED:
            raise RuntimeError(f"Key lifecycle already started (state={self._state.value})")

        if not self.config.enable_encryption:
            self._state = KeyState.DISABLED
            _logger.debug("Encryption disabled")
            return LifecycleResult(KeyState.DISABLED)

        if self.config.public_key:
            self._state = KeyState.USING_DIRECT_KEY
            _logger.debug("Using public key from config")
            try:
                return self._activate(self.config.public_key, KeySource.CONFIG)
            except KeyLifecycleError as e:
                return self._fail(e, KeySource.CONFIG)

        self._state = KeyState.CHECKING_CACHE
        cached_pem = self._cache.read()
        if cached_pem:
            _logger.debug("Using cached key")
            try:
                return self._activate(cached_pem, KeySource.CACHE)
            except KeyTrustError as e:
                _logger.warning("Cache invalid, fetching fresh key: %s", e)
                self._cache.clear()
        else:
            _logger.debug("Key cache miss, fetching public key from %s", self.config.public_key_endpoint)

        self._state = KeyState.FETCHING
        try:
            pem = await self._fetch_pem()
            return self._activate(pem, KeySource.REMOTE)
        except KeyLifecycleError as e:
            return self._fail(e, KeySource.REMOTE)

    def _activate(self, pem: str, source: KeySource) -> LifecycleResult:
        """VALIDATING -> READY, or raise KeyTrustError."""
        self._state = KeyState.VALIDATING
        key_hash = compute_key_hash(pem)
        pinned = bool(self.config.expected_public_key_hash and self.config.expected_public_key_hash.strip())

        if not verify_key_hash(pem, self.config.expected_public_key_hash):
            if pinned:
                message = "Public key hash mismatch - possible MITM attack"
            else:
                message = f"Public key pinning not configured (computed hash: {key_hash})"
            raise KeyTrustError(message, key_hash, pinned=pinned)

        public_key = import_public_key(pem)

        self._public_key = public_key
        if source is KeySource.REMOTE:
            self._cache.write(pem)
        self._state = KeyState.READY
        _logger.debug("Initialized - encryption ready: source=%s", source.value)
        return LifecycleResult(KeyState.READY, source=source, key_hash=key_hash)

    def _fail(self, error: KeyLifecycleError, source: KeySource | None) -> LifecycleResult:
        self._state = KeyState.FAILED
        key_hash = error.computed_hash if isinstance(error, KeyTrustError) else None
        return LifecycleResult(KeyState.FAILED, source=source, key_hash=key_hash, error=error)

    async def _fetch_pem(self) -> str:
        """
        GET the key endpoint with retry and exponential backoff.

        Any exception from the fetcher counts as a transport failure and is
        retried; a response without the key header fails immediately.
        """
        endpoint = self.config.public_key_endpoint
        if self._fetcher is None or not endpoint:
            raise ConfigurationError("Remote key fetch needs public_key_endpoint and a fetcher")
        header_name = self.config.public_key_header
        retries = self.config.public_key_fetch_retries

        last_error: KeyFetchError | None = None
        for attempt in range(1, retries + 1):
            try:
                headers = await self._fetcher(endpoint)
            except Exception as e:  # noqa: BLE001
                last_error = _as_fetch_error(e)
                if attempt < retries:
                    delay = backoff_delay(attempt)
                    _logger.warning(
                        "Key fetch failed, retry %d/%d in %.1fs: %s", attempt, retries - 1, delay, e
                    )
                    await self._sleep(delay)
                continue

            pem = get_header(headers, header_name)
            if not pem:
                available = header_names(headers)
                _logger.error("%s header missing. Available: %s", header_name, ", ".join(available))
                raise KeyHeaderMissingError(header_name, available)

            _logger.debug("Public key received from %s: attempt=%d", header_name, attempt)
            return pem

        raise KeyFetchError(
            f"Failed to fetch public key after {retries} attempts: {last_error}", attempts=retries
        ) from last_error
