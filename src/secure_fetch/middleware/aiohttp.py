"""
aiohttp client session with transparent hybrid encryption.

Provides a drop-in wrapper around aiohttp.ClientSession that automatically:
- Acquires, pins and caches the server public key before any request
- Encrypts request bodies for matching endpoints
- Decrypts response and error bodies sealed by the server

Usage:
    config = SecurityConfig(
        public_key_endpoint="https://api.example.com/crypto/init",
        expected_public_key_hash=PINNED_HASH,
    )
    async with SecureClientSession(config, base_url="https://api.example.com") as session:
        response = await session.post("/insurance/quote", json=data)
        print(response.json())
"""

import asyncio
import types
from http import HTTPStatus
from typing import Any
from urllib.parse import urljoin

import aiohttp
from multidict import CIMultiDict
from typing_extensions import Self

from secure_fetch._logging import enable_debug_logging, get_logger
from secure_fetch.cache import KeyCache, MemoryKeyCache
from secure_fetch.config import SecurityConfig
from secure_fetch.exceptions import KeyFetchError
from secure_fetch.lifecycle import KeyLifecycleManager
from secure_fetch.pipeline import IncomingResponse, InterceptionPipeline, OutgoingRequest, SecureResponse

__all__ = [
    "AiohttpKeyFetcher",
    "SecureClientSession",
]

_logger = get_logger(__name__)


class AiohttpKeyFetcher:
    """Key endpoint GET over an aiohttp session.

    Transport errors, timeouts and non-2xx statuses raise KeyFetchError so
    the lifecycle manager retries them.
    """

    def __init__(self, session: aiohttp.ClientSession) -> None:
        self._session = session

    async def __call__(self, url: str) -> CIMultiDict[str]:
        try:
            async with self._session.get(url) as resp:
                if not HTTPStatus.OK <= resp.status < HTTPStatus.MULTIPLE_CHOICES:
                    raise KeyFetchError(f"Key endpoint returned {resp.status}")
                await resp.read()
                return CIMultiDict(resp.headers)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            _logger.debug("Key fetch transport error: url=%s error=%s", url, e)
            raise KeyFetchError(f"Failed to fetch key: {e}") from e


class SecureClientSession:
    """
    aiohttp-compatible client session with transparent envelope encryption.

    Features:
    - Blocks on entry until the key lifecycle is READY (or DISABLED)
    - Session-scoped PEM cache shared across sessions when passed in
    - Request sealing and response/error opening via InterceptionPipeline
    """

    def __init__(
        self,
        config: SecurityConfig,
        base_url: str | None = None,
        *,
        cache: KeyCache | None = None,
        manager: KeyLifecycleManager | None = None,
        **aiohttp_kwargs: Any,
    ) -> None:
        """
        Initialize encryption-enabled client session.

        Args:
            config: SecurityConfig
            base_url: Base URL for relative request URLs
            cache: PEM cache store (defaults to a fresh in-memory store)
            manager: Pre-built lifecycle manager (shared across sessions)
            **aiohttp_kwargs: Additional arguments passed to aiohttp.ClientSession
        """
        self.config = config
        self.base_url = base_url.rstrip("/") if base_url else None
        self.cache = cache if cache is not None else MemoryKeyCache()

        self._session: aiohttp.ClientSession | None = None
        self._aiohttp_kwargs = aiohttp_kwargs
        self._manager = manager
        self._pipeline: InterceptionPipeline | None = None

    @property
    def manager(self) -> KeyLifecycleManager:
        if self._manager is None:
            raise RuntimeError("Session not initialized. Use 'async with' context manager.")
        return self._manager

    async def __aenter__(self) -> Self:
        """Open the transport and block until the key lifecycle is terminal."""
        if self.config.debug_logging:
            enable_debug_logging()

        self._session = aiohttp.ClientSession(**self._aiohttp_kwargs)
        try:
            if self._manager is None:
                self._manager = KeyLifecycleManager(
                    self.config, self.cache, fetcher=AiohttpKeyFetcher(self._session)
                )
            self._pipeline = InterceptionPipeline(self.config, self._manager)
            await self._manager.initialize()
        except BaseException:
            await self._session.close()
            self._session = None
            raise
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        """Async context manager exit."""
        if self._session:
            await self._session.close()
            self._session = None

    def _resolve(self, url: str) -> str:
        if self.base_url and not url.startswith(("http://", "https://")):
            return urljoin(self.base_url + "/", url.lstrip("/"))
        return url

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        data: str | bytes | None = None,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> SecureResponse:
        """
        Make an HTTP request through the interception pipeline.

        Args:
            method: HTTP method
            url: URL (relative to base_url or absolute)
            json: Structured body (sealed when the endpoint matches)
            data: Raw body (never sealed)
            headers: Extra request headers
            **kwargs: Additional arguments passed to aiohttp

        Returns:
            SecureResponse (opened when the server sealed it)

        Raises:
            HTTPResponseError: For 4xx/5xx responses
        """
        if not self._session or not self._pipeline:
            raise RuntimeError("Session not initialized. Use 'async with' context manager.")

        outgoing = OutgoingRequest(
            method=method.upper(),
            url=self._resolve(url),
            headers=dict(headers or {}),
            body=json if json is not None else data,
        )
        prepared = await self._pipeline.prepare_request(outgoing)

        # Ciphertext is sent as text; passthrough bodies keep the kwarg they came in on
        if prepared.encrypted:
            kwargs["data"] = prepared.body
        elif json is not None:
            kwargs["json"] = prepared.body
        elif data is not None:
            kwargs["data"] = prepared.body

        async with self._session.request(prepared.method, prepared.url, headers=prepared.headers, **kwargs) as resp:
            body = await resp.text()
            incoming = IncomingResponse(
                status=resp.status,
                reason=resp.reason,
                url=str(resp.url),
                headers=CIMultiDict(resp.headers),
                body=body,
            )

        _logger.debug(
            "Exchange complete: method=%s url=%s status=%d encrypted=%s",
            prepared.method,
            prepared.url,
            incoming.status,
            prepared.encrypted or prepared.session_keyed,
        )
        return self._pipeline.process_response(prepared, incoming)

    # Convenience methods
    async def get(self, url: str, **kwargs: Any) -> SecureResponse:
        """GET request."""
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, *, json: Any = None, data: str | bytes | None = None, **kwargs: Any) -> SecureResponse:
        """POST request."""
        return await self.request("POST", url, json=json, data=data, **kwargs)

    async def put(self, url: str, *, json: Any = None, data: str | bytes | None = None, **kwargs: Any) -> SecureResponse:
        """PUT request."""
        return await self.request("PUT", url, json=json, data=data, **kwargs)

    async def patch(self, url: str, *, json: Any = None, data: str | bytes | None = None, **kwargs: Any) -> SecureResponse:
        """PATCH request."""
        return await self.request("PATCH", url, json=json, data=data, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> SecureResponse:
        """DELETE request."""
        return await self.request("DELETE", url, **kwargs)
