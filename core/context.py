"""
Router Context
==============

[WIRING] Builds every routing component from a validated Config and keeps
them together. There is no module-level broker: callers build one context
per process and pass it where it is needed.

[USAGE]
    config = load_config().validate()
    async with build_context(config) as ctx:
        response = await ctx.chat(ChatRequest.from_prompt("Hello"))

Every collaborator can be injected (tests replace the chain adapters and
the HTTP session).
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp

from agents.router import FailoverOrchestrator
from config import Config
from core.discovery import OnChainServiceDirectory, ProviderRegistry
from core.events import EventBus
from core.monitoring.health import StatusReporter, ServiceStatus
from core.protocol import ChatRequest, ChatResponse
from core.routing import ProviderPrioritizer
from core.security.attestation import ResponseVerifier, SignatureVerificationBackend
from core.security.auth import OnChainAcknowledger, RequestAuthenticator, SignedHeaderIssuer
from core.transport import InferenceExecutor
from economy.chain import ComputeLedgerContract, ServingContract
from economy.ledger import BalanceLedgerClient
from economy.storage import RouterStore

logger = logging.getLogger(__name__)


@dataclass
class RouterContext:
    config: Config
    bus: EventBus
    ledger: Any
    ledger_backend: Any
    directory: Any
    registry: ProviderRegistry
    prioritizer: ProviderPrioritizer
    authenticator: RequestAuthenticator
    executor: InferenceExecutor
    verifier: ResponseVerifier
    orchestrator: Any
    status_reporter: StatusReporter
    store: Any = None
    session: Optional[aiohttp.ClientSession] = None
    owns_session: bool = False

    async def start(self) -> "RouterContext":
        if self.store is not None and not self.store.is_open:
            await self.store.initialize()
            await self.store.attach(self.bus)
        if self.session is None:
            self.session = aiohttp.ClientSession()
            self.owns_session = True
            self.executor._session = self.session
            self.executor._owns_session = False
            backend = self.verifier.backend
            if isinstance(backend, SignatureVerificationBackend):
                backend._session = self.session
                backend._owns_session = False
        return self

    async def close(self) -> None:
        await self.executor.close()
        backend = self.verifier.backend
        if isinstance(backend, SignatureVerificationBackend):
            await backend.close()
        if self.owns_session and self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None
        if self.store is not None:
            await self.store.close()

    async def __aenter__(self) -> "RouterContext":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def chat(self, request: ChatRequest) -> ChatResponse:
        return await self.orchestrator.chat(request)

    async def status(self) -> ServiceStatus:
        return await self.status_reporter.get_status()


def build_context(
    config: Config,
    *,
    ledger_backend: Any = None,
    serving: Any = None,
    directory: Any = None,
    issuer: Any = None,
    acknowledger: Any = None,
    verification_backend: Any = None,
    session: Optional[aiohttp.ClientSession] = None,
    store: Any = None,
) -> RouterContext:
    """
    Wire the routing components.

    Raises:
        ConfigurationError: invalid configuration (nothing is built)
    """
    config.validate()
    chain = config.chain
    routing = config.routing
    private_key = config.wallet.private_key

    bus = EventBus()
    if store is None and config.storage.state_db_path:
        store = RouterStore(config.storage.state_db_path, max_attempts=config.storage.max_attempts)

    if ledger_backend is None:
        ledger_backend = ComputeLedgerContract(chain, private_key)
    if serving is None and (directory is None or acknowledger is None):
        serving = ServingContract(chain, private_key)
    if directory is None:
        directory = OnChainServiceDirectory(serving)
    if acknowledger is None:
        acknowledger = OnChainAcknowledger(serving)
    if issuer is None:
        issuer = SignedHeaderIssuer(private_key)
    if verification_backend is None:
        verification_backend = SignatureVerificationBackend(session, timeout=routing.verify_timeout)

    ledger = BalanceLedgerClient(
        backend=ledger_backend,
        owner_address=issuer.address if hasattr(issuer, "address") else "",
        min_balance=config.ledger.min_balance,
        topup_amount=config.ledger.topup_amount,
        read_timeout=chain.rpc_timeout,
        topup_timeout=chain.tx_timeout,
        store=store,
        bus=bus,
        serialize=config.ledger.serialize_funding,
    )
    registry = ProviderRegistry(
        directory,
        known_providers=routing.known_providers,
        timeout=routing.discovery_timeout,
        attempts=routing.discovery_attempts,
        retry_delay=routing.discovery_retry_delay,
        model_pattern=routing.model_pattern,
        cache_ttl=routing.discovery_cache_ttl,
    )
    prioritizer = ProviderPrioritizer(routing.rank_table)
    authenticator = RequestAuthenticator(
        issuer,
        acknowledger=acknowledger,
        require_acknowledgement=routing.require_acknowledgement,
        timeout=chain.tx_timeout,
    )
    executor = InferenceExecutor(default_timeout=routing.attempt_timeout, session=session)
    verifier = ResponseVerifier(verification_backend, timeout=routing.verify_timeout)

    orchestrator = FailoverOrchestrator(
        ledger=ledger,
        registry=registry,
        prioritizer=prioritizer,
        authenticator=authenticator,
        executor=executor,
        verifier=verifier,
        bus=bus,
        attempt_timeout=routing.attempt_timeout,
        exhausted_mode=routing.exhausted_mode,
        max_attempts=routing.max_attempts,
        default_preferred=routing.preferred_provider,
    )
    status_reporter = StatusReporter(
        ledger_backend,
        directory,
        network=chain.name,
        token_symbol=chain.token_symbol,
        timeout=routing.discovery_timeout,
    )

    logger.info(
        f"[ROUTER] Context ready on {chain.name} "
        f"({len(routing.known_providers)} known providers, exhausted_mode={routing.exhausted_mode})"
    )
    return RouterContext(
        config=config,
        bus=bus,
        ledger=ledger,
        ledger_backend=ledger_backend,
        directory=directory,
        registry=registry,
        prioritizer=prioritizer,
        authenticator=authenticator,
        executor=executor,
        verifier=verifier,
        orchestrator=orchestrator,
        status_reporter=status_reporter,
        store=store,
        session=session,
    )
