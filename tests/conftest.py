"""
Zeroute Test Configuration
==========================

[QA] Central pytest configuration with fixtures for all test types:
- Unit tests: isolated components with fakes
- E2E tests: full context against local aiohttp provider servers

[FIXTURES]
- make_provider: Provider factory
- fake_ledger_backend: in-memory ledger contract
- fake_directory: scripted discovery interface
- fake_issuer / fake_acknowledger: auth collaborators
- provider_server: real local HTTP providers with scripted behaviour
- make_config: validated Config for tests

Usage:
    pytest tests/unit/          # Fast unit tests
    pytest tests/e2e/           # End-to-end tests
"""

import asyncio
import itertools
import logging
import shutil
import sys
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, Generator, List, Optional

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from eth_account import Account
from eth_account.messages import encode_defunct

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

# Well-known throwaway keys, never funded
TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
TEE_SIGNER_KEY = "0x" + "22" * 32

ADDR_A = "0x" + "a" * 40
ADDR_B = "0x" + "b" * 40
ADDR_C = "0x" + "c" * 40
RANK0 = "0x3feE5a4dd5FDb8a32dDA97Bed899830605dBD9D3"
RANK1 = "0xf07240Efa67755B5311bc75784a061eDB47165Dd"

# Stand-ins for the compute contracts (presets carry zero placeholders)
LEDGER_CONTRACT = "0x" + "5" * 40
SERVING_CONTRACT = "0x" + "6" * 40


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "e2e: End-to-end tests (full stack)")
    config.addinivalue_line("markers", "slow: Slow tests (skip with -m 'not slow')")


def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on their path."""
    for item in items:
        if "/unit/" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "/e2e/" in str(item.fspath):
            item.add_marker(pytest.mark.e2e)


# ============================================================================
# Logging Configuration
# ============================================================================

@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


# ============================================================================
# Temporary Directory / Database Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp(prefix="zeroute_test_"))
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture(scope="function")
def isolated_db() -> Generator[str, None, None]:
    """In-memory SQLite for each test."""
    yield ":memory:"


@pytest_asyncio.fixture(scope="function")
async def store(isolated_db: str):
    """Open RouterStore on an isolated database."""
    from economy.storage import RouterStore

    store_instance = RouterStore(isolated_db)
    await store_instance.initialize()
    yield store_instance
    await store_instance.close()


# ============================================================================
# Provider Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def make_provider():
    """Factory for discovery.Provider."""
    from core.discovery import Provider, Verifiability

    def _create(
        address: str,
        endpoint: str = "http://127.0.0.1:9/none",
        model: str = "phala/llama-3.3-70b-instruct",
        verifiability: Verifiability = Verifiability.NONE,
        **kwargs: Any,
    ) -> Provider:
        return Provider(address=address, endpoint=endpoint, model=model, verifiability=verifiability, **kwargs)

    return _create


@pytest.fixture(scope="function")
def chat_request():
    """Single-turn ChatRequest."""
    from core.protocol import ChatRequest
    return ChatRequest.from_prompt("What is a prepaid ledger?", system="Be brief.")


# ============================================================================
# Fake Chain / Discovery / Auth Collaborators
# ============================================================================

class FakeLedgerBackend:
    """
    In-memory stand-in for ComputeLedgerContract.

    [KNOBS]
    - fail_reads: number of upcoming get_balance calls that raise
    - fail_topup: top_up returns an unsuccessful result
    - read_delay: seconds get_balance sleeps
    """

    def __init__(self, balance: int = 10**18):
        self.balance = balance
        self.exists = True
        self.fail_reads = 0
        self.fail_topup = False
        self.read_delay = 0.0
        self.read_calls = 0
        self.topups: List[int] = []
        self.created: List[int] = []

    async def get_balance(self) -> int:
        self.read_calls += 1
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        if self.fail_reads:
            self.fail_reads -= 1
            raise ConnectionError("rpc unavailable")
        return self.balance

    async def top_up(self, amount: int):
        from economy.chain import TopUpResult

        await asyncio.sleep(0)
        if self.fail_topup:
            return TopUpResult(success=False, amount=amount, error="execution reverted")
        self.topups.append(amount)
        self.balance += amount
        return TopUpResult(success=True, amount=amount, tx_id=f"0x{len(self.topups):064x}")

    async def account_exists(self) -> bool:
        return self.exists

    async def create_account(self, amount: int):
        from economy.chain import TopUpResult

        self.exists = True
        self.created.append(amount)
        self.balance += amount
        return TopUpResult(success=True, amount=amount, tx_id="0x" + "e" * 64)


class FakeDirectory:
    """Scripted discovery: each call pops the next result (list or exception)."""

    def __init__(self, providers: Optional[List[Any]] = None):
        self.providers = providers or []
        self.script: List[Any] = []
        self.delay = 0.0
        self.calls = 0

    async def list_providers(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.script:
            step = self.script.pop(0)
            if isinstance(step, Exception):
                raise step
            return list(step)
        return list(self.providers)


class FakeIssuer:
    """Header issuer with counter nonces; ``repeat=True`` hands out the same set."""

    def __init__(self, repeat: bool = False, fail_for: Optional[str] = None):
        self.address = Account.from_key(TEST_PRIVATE_KEY).address
        self.repeat = repeat
        self.fail_for = fail_for
        self.issued: List[Dict[str, str]] = []
        self._counter = itertools.count(1)

    async def issue_headers(self, provider_address: str, content: bytes, **kwargs: Any) -> Dict[str, str]:
        if self.fail_for and provider_address.lower() == self.fail_for.lower():
            raise RuntimeError("signer unavailable")
        nonce = 1 if self.repeat else next(self._counter)
        headers = {
            "Address": self.address,
            "Nonce": str(nonce),
            "Signature": f"sig-{provider_address.lower()}-{nonce}",
        }
        self.issued.append(headers)
        return headers


class FakeAcknowledger:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[str] = []

    async def acknowledge(self, provider_address: str) -> None:
        self.calls.append(provider_address)
        if self.fail:
            raise RuntimeError("acknowledge reverted")


@pytest.fixture(scope="function")
def fake_ledger_backend() -> FakeLedgerBackend:
    return FakeLedgerBackend()


@pytest.fixture(scope="function")
def fake_directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture(scope="function")
def fake_issuer() -> FakeIssuer:
    return FakeIssuer()


@pytest.fixture(scope="function")
def fake_acknowledger() -> FakeAcknowledger:
    return FakeAcknowledger()


# ============================================================================
# Local Provider HTTP Servers
# ============================================================================

@dataclass
class ReceivedCall:
    name: str
    headers: Dict[str, str]
    body: Dict[str, Any]


@dataclass
class ProviderServer:
    """
    One aiohttp server hosting many fake providers under ``/{name}``.

    [BEHAVIOURS] ok | overloaded | slow | insufficient | error500 | badjson
    | unavailable (503 with empty body) | badbytes (500, not UTF-8)
    | errorjson (200 with an error object instead of a completion)

    ``cancelled`` lists providers whose in-flight handler was cancelled
    because the client went away.
    """

    server: TestServer
    behaviours: Dict[str, str] = field(default_factory=dict)
    calls: List[ReceivedCall] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)
    signer: Any = field(default_factory=lambda: Account.from_key(TEE_SIGNER_KEY))
    release: asyncio.Event = field(default_factory=asyncio.Event)
    slow_delay: float = 5.0

    def endpoint(self, name: str) -> str:
        return str(self.server.make_url(f"/{name}"))

    def calls_for(self, name: str) -> List[ReceivedCall]:
        return [c for c in self.calls if c.name == name]

    async def wait_cancelled(self, name: str, within: float = 2.0) -> bool:
        """Wait until the handler serving ``name`` has been cancelled."""
        deadline = time.monotonic() + within
        while name not in self.cancelled and time.monotonic() < deadline:
            await asyncio.sleep(0.02)
        return name in self.cancelled

    @staticmethod
    def completion(name: str, chat_id: str) -> Dict[str, Any]:
        return {
            "id": chat_id,
            "object": "chat.completion",
            "model": f"model-{name}",
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": f"reply from {name}"},
                "finish_reason": "stop",
            }],
            "usage": {"prompt_tokens": 5, "completion_tokens": 7, "total_tokens": 12},
        }

    async def handle_chat(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        body = await request.json()
        self.calls.append(ReceivedCall(name=name, headers=dict(request.headers), body=body))
        behaviour = self.behaviours.get(name, "ok")

        if behaviour == "overloaded":
            return web.json_response({"error": "Provider overloaded, try later"}, status=503)
        if behaviour == "unavailable":
            return web.Response(status=503, text="")
        if behaviour == "insufficient":
            return web.json_response({"error": "insufficient balance for request"}, status=402)
        if behaviour == "error500":
            return web.json_response({"error": "internal model failure"}, status=500)
        if behaviour == "badjson":
            return web.Response(status=200, text="<html>not json</html>", content_type="text/html")
        if behaviour == "badbytes":
            return web.Response(status=500, body=b"\xff\xfe bad", content_type="text/plain")
        if behaviour == "errorjson":
            return web.json_response({"error": "upstream failed"})
        if behaviour == "slow":
            try:
                await asyncio.wait_for(self.release.wait(), self.slow_delay)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                self.cancelled.append(name)
                raise
        return web.json_response(self.completion(name, f"chat-{name}-{len(self.calls)}"))

    async def handle_signature(self, request: web.Request) -> web.Response:
        chat_id = request.match_info["chat_id"]
        text = f"{chat_id}:response-digest"
        signed = self.signer.sign_message(encode_defunct(text=text))
        return web.json_response({"text": text, "signature": "0x" + bytes(signed.signature).hex()})


@pytest_asyncio.fixture(scope="function")
async def provider_server() -> AsyncGenerator[ProviderServer, None]:
    """
    Real local HTTP providers.

    [USAGE]
        async def test_failover(provider_server):
            provider_server.behaviours["a"] = "overloaded"
            endpoint = provider_server.endpoint("a")
    """
    holder: Dict[str, ProviderServer] = {}

    async def chat(request: web.Request) -> web.Response:
        return await holder["server"].handle_chat(request)

    async def signature(request: web.Request) -> web.Response:
        return await holder["server"].handle_signature(request)

    app = web.Application()
    app.router.add_post("/{name}/chat/completions", chat)
    app.router.add_get("/{name}/signature/{chat_id}", signature)

    # TestServer cancels the handler when its client disconnects
    server = TestServer(app)
    await server.start_server()
    holder["server"] = ProviderServer(server=server)
    yield holder["server"]

    holder["server"].release.set()
    await server.close()


# ============================================================================
# Config Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def make_config():
    """Factory for a valid Config; keyword overrides apply to RoutingConfig."""
    from config import ChainConfig, Config, LedgerConfig, RoutingConfig, StorageConfig, WalletConfig

    def _create(known_providers=None, ledger: Optional[LedgerConfig] = None, **routing: Any) -> Config:
        routing.setdefault("discovery_retry_delay", 0.0)
        if known_providers is not None:
            routing["known_providers"] = known_providers
        return Config(
            chain=ChainConfig(ledger_contract=LEDGER_CONTRACT, serving_contract=SERVING_CONTRACT),
            wallet=WalletConfig(private_key=TEST_PRIVATE_KEY),
            ledger=ledger or LedgerConfig(),
            routing=RoutingConfig(**routing),
            storage=StorageConfig(state_db_path=""),
        ).validate()

    return _create


# ============================================================================
# Async Utilities
# ============================================================================

@pytest.fixture(scope="function")
def async_timeout():
    """Helper for async test timeouts."""
    async def _timeout(coro, seconds: float = 5.0):
        return await asyncio.wait_for(coro, timeout=seconds)
    return _timeout
