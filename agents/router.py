"""
Failover Orchestrator
=====================

[ROUTER] Top-level control loop for one chat request, written as an
explicit state machine:

    INIT -> ENSURE_FUNDS -> DISCOVER -> ORDER -> TRY_NEXT -> SUCCESS
                                                    |
                                                    +---> EXHAUSTED

TRY_NEXT takes the next candidate and runs Authenticate -> Execute ->
Verify. Any provider failure (busy, timeout, hard error, auth failure) is
recorded as an AttemptRecord and the loop moves on. Candidates are tried
strictly one at a time and each attempt (authentication included) shares
one ``attempt_timeout`` budget, so the worst case latency is
``len(candidates) * attempt_timeout`` plus funding and discovery.

[EXHAUSTED] ``exhausted_mode="error"`` returns ``ok=False``;
``"simulation"`` returns a clearly labeled DEGRADED response whose provider
and model are sentinels, never a real address.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, List, Optional

from config import SIMULATION_MODEL, SIMULATION_PROVIDER
from core.errors import ProviderError, ProviderHardError, ProviderTimeout
from core.events import ATTEMPT_RECORDED, RESPONSE_READY
from core.protocol import ChatRequest, ChatResponse, ResponseKind, Usage
from core.transport import AttemptRecord

logger = logging.getLogger(__name__)

SIMULATION_NOTICE = (
    "[SIMULATION] No inference provider is available right now. "
    "This placeholder was generated locally and is not a model response."
)


class RouterState(Enum):
    INIT = "init"
    ENSURE_FUNDS = "ensure_funds"
    DISCOVER = "discover"
    ORDER = "order"
    TRY_NEXT = "try_next"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"


class FailoverOrchestrator:
    """
    Routes one ChatRequest across the ordered candidate providers.

    All collaborators are injected (see core.context.build_context).
    """

    def __init__(
        self,
        ledger: Any,
        registry: Any,
        prioritizer: Any,
        authenticator: Any,
        executor: Any,
        verifier: Any,
        bus: Any = None,
        attempt_timeout: float = 20.0,
        exhausted_mode: str = "error",
        max_attempts: int = 0,
        default_preferred: Optional[str] = None,
    ):
        self.ledger = ledger
        self.registry = registry
        self.prioritizer = prioritizer
        self.authenticator = authenticator
        self.executor = executor
        self.verifier = verifier
        self.bus = bus
        self.attempt_timeout = attempt_timeout
        self.exhausted_mode = exhausted_mode
        self.max_attempts = max_attempts
        self.default_preferred = default_preferred

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """
        Route ``request``. Provider failures never raise; the result is
        always a ChatResponse.
        """
        rid = request.request_id
        self._transition(rid, RouterState.INIT, "request received")
        try:
            request.validate()
        except ValueError as e:
            logger.warning(f"[ROUTER] {rid[:8]} rejected: {e}")
            return await self._finish(ChatResponse(
                ok=False, kind=ResponseKind.ERROR, error=str(e), request_id=rid,
            ))

        balance: Optional[int] = None
        if self.ledger is not None:
            self._transition(rid, RouterState.ENSURE_FUNDS, "checking prepaid balance")
            funding = await self.ledger.ensure_funds()
            balance = funding.balance
            if funding.degraded:
                logger.warning(f"[ROUTER] {rid[:8]} funds not guaranteed: {funding.error or 'stale balance'}")

        self._transition(rid, RouterState.DISCOVER, "listing providers")
        discovered = await self.registry.discover()

        preferred = request.preferred_provider or self.default_preferred
        self._transition(rid, RouterState.ORDER, f"{len(discovered)} discovered, preferred={preferred}")
        candidates = self.prioritizer.order(discovered, preferred)
        if self.max_attempts > 0:
            candidates = candidates[:self.max_attempts]

        content = request.get_signing_data()
        attempts: List[AttemptRecord] = []
        for index, provider in enumerate(candidates, start=1):
            self._transition(
                rid, RouterState.TRY_NEXT,
                f"candidate {index}/{len(candidates)} {provider.address}",
            )
            record = await self._attempt(provider, request, content)
            attempts.append(record)
            if self.bus is not None:
                await self.bus.broadcast(ATTEMPT_RECORDED, record.to_dict())

            if record.succeeded:
                self._transition(rid, RouterState.SUCCESS, f"answered by {provider.address}")
                verified = await self.verifier.verify(provider, record.payload, record.attempt_id)
                if self.ledger is not None:
                    refreshed = await self.ledger.refresh()
                    if refreshed is not None:
                        balance = refreshed
                return await self._finish(ChatResponse(
                    ok=True,
                    kind=ResponseKind.PROVIDER,
                    provider_address=provider.address,
                    model=provider.model,
                    verified=bool(verified),
                    balance_snapshot=balance,
                    usage=record.usage,
                    payload=record.payload,
                    attempts=tuple(attempts),
                    request_id=rid,
                ))

        return await self._exhausted(request, attempts, balance)

    async def _attempt(self, provider, request: ChatRequest, content: bytes) -> AttemptRecord:
        """Authenticate and execute within one ``attempt_timeout`` budget."""
        rid = request.request_id
        started_at = time.time()
        deadline = time.monotonic() + self.attempt_timeout
        try:
            header = await asyncio.wait_for(
                self.authenticator.authenticate(provider, content), self.attempt_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"[ROUTER] Authentication with {provider.address} used up the attempt budget")
            error = ProviderTimeout(
                f"Authentication timed out after {self.attempt_timeout}s",
                provider_address=provider.address,
            )
            return AttemptRecord.from_error(provider, error, started_at, "auth", rid)
        except ProviderError as e:
            logger.error(f"[ROUTER] Authentication with {provider.address} failed: {e}")
            return AttemptRecord.from_error(provider, e, started_at, "auth", rid)

        remaining = max(deadline - time.monotonic(), 0.0)
        try:
            return await self.executor.execute(provider, header, request, remaining)
        except ProviderError as e:
            logger.error(f"[ROUTER] Attempt on {provider.address} failed: {e}")
            return AttemptRecord.from_error(provider, e, started_at, "execute", rid)
        except Exception as e:
            logger.error(f"[ROUTER] Unexpected failure on {provider.address}: {e!r}")
            error = ProviderHardError(f"Unexpected error: {e!r}", provider_address=provider.address)
            return AttemptRecord.from_error(provider, error, started_at, "execute", rid)

    async def _exhausted(
        self,
        request: ChatRequest,
        attempts: List[AttemptRecord],
        balance: Optional[int],
    ) -> ChatResponse:
        rid = request.request_id
        last_error = attempts[-1].error_detail if attempts else "No providers available"
        self._transition(rid, RouterState.EXHAUSTED, f"{len(attempts)} attempts failed")
        logger.warning(f"[ROUTER] {rid[:8]} all providers exhausted, last error: {last_error}")

        if self.exhausted_mode == "simulation":
            return await self._finish(ChatResponse(
                ok=True,
                kind=ResponseKind.DEGRADED,
                provider_address=SIMULATION_PROVIDER,
                model=SIMULATION_MODEL,
                verified=False,
                balance_snapshot=balance,
                usage=Usage(),
                payload=self._simulation_payload(rid),
                error=f"All providers failed: {last_error}",
                attempts=tuple(attempts),
                request_id=rid,
            ))

        return await self._finish(ChatResponse(
            ok=False,
            kind=ResponseKind.ERROR,
            balance_snapshot=balance,
            error=f"All providers failed. Last error: {last_error}",
            attempts=tuple(attempts),
            request_id=rid,
        ))

    @staticmethod
    def _simulation_payload(rid: str) -> dict:
        return {
            "id": f"simulation-{rid}",
            "object": "chat.completion",
            "model": SIMULATION_MODEL,
            "simulation": True,
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": SIMULATION_NOTICE},
                "finish_reason": "stop",
            }],
            "usage": Usage().to_dict(),
        }

    async def _finish(self, response: ChatResponse) -> ChatResponse:
        if self.bus is not None:
            await self.bus.broadcast(RESPONSE_READY, {
                "request_id": response.request_id,
                "ok": response.ok,
                "kind": response.kind.value,
                "provider_address": response.provider_address,
                "verified": response.verified,
                "attempts": len(response.attempts),
            })
        return response

    @staticmethod
    def _transition(rid: str, state: RouterState, reason: str) -> None:
        logger.debug(f"[ROUTER] {rid[:8]} -> {state.name}: {reason}")
