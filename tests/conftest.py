"""Shared test fixtures for secure_fetch tests."""

import hashlib
import json
import logging
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from secure_fetch.config import SecurityConfig
from secure_fetch.constants import DEFAULT_AES_KEY_HEADER, DEFAULT_IV_HEADER, DEFAULT_PUBLIC_KEY_HEADER
from secure_fetch.envelope import open_request, seal_response, unwrap_session_material
from secure_fetch.exceptions import DecryptionError, KeyFetchError

# Enable secure_fetch debug logging during tests
logging.getLogger("secure_fetch").setLevel(logging.DEBUG)


# === Key Fixtures ===


@pytest.fixture(scope="session")
def rsa_private_key() -> RSAPrivateKey:
    """Server RSA-2048 key pair for testing.

    Session-scoped: key generation is slow, one pair serves all tests.
    """
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def public_pem(rsa_private_key: RSAPrivateKey) -> str:
    """PEM (SPKI) text of the server public key, with line breaks."""
    return (
        rsa_private_key.public_key()
        .public_bytes(serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)
        .decode("ascii")
    )


@pytest.fixture(scope="session")
def pem_hash(public_pem: str) -> str:
    """Pinned hash for public_pem."""
    return hashlib.sha256(public_pem.encode("utf-8")).hexdigest()


@pytest.fixture(scope="session")
def header_pem(public_pem: str) -> str:
    """PEM flattened onto one line, as it travels in an HTTP header."""
    return "".join(public_pem.splitlines())


@pytest.fixture(scope="session")
def header_pem_hash(header_pem: str) -> str:
    """Pinned hash for header_pem."""
    return hashlib.sha256(header_pem.encode("utf-8")).hexdigest()


@pytest.fixture(scope="session")
def other_pem() -> str:
    """A different, valid RSA public key (hash never matches the pin)."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode("ascii")


@pytest.fixture(scope="session")
def ec_pem() -> str:
    """A non-RSA public key PEM."""
    key = ec.generate_private_key(ec.SECP256R1())
    return key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode("ascii")


# === Config Fixtures ===


KEY_ENDPOINT = "https://api.example.com/crypto/init"


@pytest.fixture
def config_factory(public_pem: str, pem_hash: str) -> Callable[..., SecurityConfig]:
    """Factory for configs; defaults to a directly supplied, pinned key.

    Usage:
        def test_something(config_factory):
            config = config_factory(skip_endpoints=["/public/*"])
    """

    def _make(**overrides: Any) -> SecurityConfig:
        values: dict[str, Any] = {"public_key": public_pem, "expected_public_key_hash": pem_hash}
        values.update(overrides)
        return SecurityConfig(**values)

    return _make


@pytest.fixture
def remote_config_factory(header_pem_hash: str) -> Callable[..., SecurityConfig]:
    """Factory for configs that fetch the key from KEY_ENDPOINT."""

    def _make(**overrides: Any) -> SecurityConfig:
        values: dict[str, Any] = {
            "public_key_endpoint": KEY_ENDPOINT,
            "expected_public_key_hash": header_pem_hash,
        }
        values.update(overrides)
        return SecurityConfig(**values)

    return _make


# === Lifecycle Test Doubles ===


@dataclass
class ScriptedFetcher:
    """Key fetcher replaying a script of outcomes.

    Each entry is either a header mapping (returned) or an exception (raised).
    The last entry repeats once the script is exhausted.
    """

    outcomes: list[Mapping[str, str] | BaseException]
    calls: list[str] = field(default_factory=list)

    async def __call__(self, url: str) -> Mapping[str, str]:
        self.calls.append(url)
        outcome = self.outcomes[min(len(self.calls), len(self.outcomes)) - 1]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@dataclass
class RecordingSleep:
    """Backoff sleep that records delays instead of waiting."""

    delays: list[float] = field(default_factory=list)

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fetcher_factory() -> Callable[..., ScriptedFetcher]:
    """Factory for ScriptedFetcher.

    Usage:
        fetcher = fetcher_factory({"X-Client-Init": pem})
        fetcher = fetcher_factory(KeyFetchError("down"), {"X-Client-Init": pem})
    """

    def _make(*outcomes: Mapping[str, str] | BaseException) -> ScriptedFetcher:
        return ScriptedFetcher(list(outcomes))

    return _make


@pytest.fixture
def transport_error() -> KeyFetchError:
    return KeyFetchError("connection refused")


class FailingStore:
    """KeyCache whose every operation raises."""

    def get(self, key: str) -> str | None:
        raise OSError("storage unavailable")

    def set(self, key: str, value: str) -> None:
        raise OSError("storage unavailable")

    def remove(self, key: str) -> None:
        raise OSError("storage unavailable")


@pytest.fixture
def failing_store() -> FailingStore:
    return FailingStore()


# === Peer Server Fixtures ===


SEALED_ERROR = {"errors": ["amount must be positive"], "code": "E_VALIDATION"}


@dataclass
class PeerServer:
    """In-process aiohttp server speaking the envelope protocol."""

    server: TestServer
    private_key: RSAPrivateKey
    header_pem: str
    header_pem_hash: str
    requests: list[dict[str, Any]] = field(default_factory=list)
    key_fetches: int = 0
    key_failures_remaining: int = 0

    def url(self, path: str) -> str:
        return str(self.server.make_url(path))

    @property
    def base_url(self) -> str:
        return self.url("/")

    @property
    def last_request(self) -> dict[str, Any]:
        return self.requests[-1]


def _build_peer_app(peer: PeerServer) -> web.Application:
    """Routes mirroring what a backend speaking this protocol does."""

    async def record(request: web.Request) -> str:
        body = await request.text()
        peer.requests.append(
            {"method": request.method, "path": request.path, "headers": dict(request.headers), "body": body}
        )
        return body

    def sealed(payload: Any, status: int = 200, **material: bytes) -> web.Response:
        reply = seal_response(payload, **material)
        return web.Response(
            text=reply.body,
            status=status,
            headers=reply.headers(DEFAULT_AES_KEY_HEADER, DEFAULT_IV_HEADER),
        )

    async def key_endpoint(_request: web.Request) -> web.Response:
        peer.key_fetches += 1
        if peer.key_failures_remaining > 0:
            peer.key_failures_remaining -= 1
            return web.Response(status=503, text="unavailable")
        return web.Response(text="", headers={DEFAULT_PUBLIC_KEY_HEADER: peer.header_pem})

    async def key_endpoint_unexposed(_request: web.Request) -> web.Response:
        peer.key_fetches += 1
        return web.Response(text="", headers={"X-Other": "value"})

    async def echo(request: web.Request) -> web.Response:
        body = await record(request)
        wrapped_key = request.headers.get(DEFAULT_AES_KEY_HEADER)
        wrapped_iv = request.headers.get(DEFAULT_IV_HEADER)
        if not wrapped_key or not wrapped_iv:
            return web.json_response({"echo": json.loads(body) if body else None, "encrypted": False})
        try:
            payload = open_request(body, wrapped_key, wrapped_iv, peer.private_key)
        except DecryptionError:
            return web.json_response({"error": "undecryptable"}, status=400)
        # Fresh key/IV for the reply: the request's material already sealed a plaintext
        return sealed({"echo": payload, "method": request.method, "encrypted": True})

    async def item(request: web.Request) -> web.Response:
        await record(request)
        item_id = request.match_info["item_id"]
        wrapped_key = request.headers.get(DEFAULT_AES_KEY_HEADER)
        wrapped_iv = request.headers.get(DEFAULT_IV_HEADER)
        if not wrapped_key or not wrapped_iv:
            return web.json_response({"id": item_id, "encrypted": False})
        key, iv = unwrap_session_material(wrapped_key, wrapped_iv, peer.private_key)
        return sealed({"id": item_id, "encrypted": True}, key=key, iv=iv)

    async def public_data(request: web.Request) -> web.Response:
        await record(request)
        return web.json_response({"public": True})

    async def sealed_error(request: web.Request) -> web.Response:
        await record(request)
        return sealed(SEALED_ERROR, status=400)

    async def plain_error(request: web.Request) -> web.Response:
        await record(request)
        return web.json_response({"message": "boom"}, status=500)

    async def garbled_error(request: web.Request) -> web.Response:
        await record(request)
        reply = seal_response(SEALED_ERROR)
        return web.Response(
            text="not-a-ciphertext",
            status=422,
            headers=reply.headers(DEFAULT_AES_KEY_HEADER, DEFAULT_IV_HEADER),
        )

    async def tampered(request: web.Request) -> web.Response:
        await record(request)
        reply = seal_response({"secret": 1})
        # Ciphertext of a different exchange: tag check fails under these headers
        other = seal_response({"secret": 2})
        return web.Response(text=other.body, headers=reply.headers(DEFAULT_AES_KEY_HEADER, DEFAULT_IV_HEADER))

    app = web.Application()
    app.router.add_get("/crypto/init", key_endpoint)
    app.router.add_get("/crypto/init-unexposed", key_endpoint_unexposed)
    app.router.add_route("*", "/v1/echo", echo)
    app.router.add_get("/v1/items/{item_id}", item)
    app.router.add_get("/v1/public/data", public_data)
    app.router.add_route("*", "/v1/public/echo", echo)
    app.router.add_post("/v1/fail", sealed_error)
    app.router.add_get("/v1/fail-plain", plain_error)
    app.router.add_post("/v1/fail-garbled", garbled_error)
    app.router.add_get("/v1/tampered", tampered)
    return app


@pytest.fixture
async def peer_server(
    rsa_private_key: RSAPrivateKey,
    header_pem: str,
    header_pem_hash: str,
) -> AsyncIterator[PeerServer]:
    """Start the peer server on a free localhost port."""
    peer = PeerServer(
        server=None,  # type: ignore[arg-type]
        private_key=rsa_private_key,
        header_pem=header_pem,
        header_pem_hash=header_pem_hash,
    )
    server = TestServer(_build_peer_app(peer))
    await server.start_server()
    peer.server = server
    try:
        yield peer
    finally:
        await server.close()


@pytest.fixture
def sealed_error_payload() -> dict[str, Any]:
    """Error payload the peer seals into its 400 responses."""
    return dict(SEALED_ERROR)
