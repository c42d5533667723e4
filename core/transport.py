"""
Inference Transport
===================

[EXECUTOR] One bounded-time HTTP call to one provider:

    POST {endpoint}/chat/completions
    Content-Type: application/json + single-use auth headers

[CLASSIFY] Every call ends as exactly one Outcome:

    SUCCESS     2xx with a JSON completion carrying a non-empty "choices" list
    BUSY        429 / 503 / 504, busy / overload / offline / timeout markers,
                insufficient balance markers, provider unreachable
    TIMEOUT     no answer within the per-attempt timeout (call cancelled)
    HARD_ERROR  any other non-2xx, or a 2xx body that is not a completion

All but SUCCESS send the failover loop to the next candidate.
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import aiohttp

from .discovery import Provider
from .errors import ProviderError
from .protocol import ChatRequest, Usage

logger = logging.getLogger(__name__)

BUSY_STATUS_CODES = frozenset({429, 503, 504})

BUSY_MARKERS = (
    "busy",
    "overload",
    "offline",
    "timeout",
    "timed out",
    "temporarily unavailable",
    "too many requests",
    "rate limit",
)

INSUFFICIENT_BALANCE_MARKERS = (
    "insufficient balance",
    "insufficient funds",
    "not enough balance",
    "balance is not enough",
)

# Max characters of a provider body kept in error details
DETAIL_LIMIT = 300


class Outcome(Enum):
    """Result class of one attempt."""
    SUCCESS = "success"
    BUSY = "busy"
    HARD_ERROR = "hard_error"
    TIMEOUT = "timeout"

    @property
    def retriable(self) -> bool:
        return self is not Outcome.SUCCESS


def classify(status: int, body: str) -> Tuple[Outcome, Any]:
    """
    Classify a completed HTTP exchange.

    Returns:
        (Outcome.SUCCESS, parsed JSON) or (failure Outcome, error detail)
    """
    if 200 <= status < 300:
        try:
            payload = json.loads(body)
        except ValueError:
            return Outcome.HARD_ERROR, f"Invalid JSON in {status} response: {body[:DETAIL_LIMIT]}"
        choices = payload.get("choices") if isinstance(payload, dict) else None
        if not isinstance(choices, list) or not choices:
            return Outcome.HARD_ERROR, f"No completion choices in {status} response: {body[:DETAIL_LIMIT]}"
        return Outcome.SUCCESS, payload

    lowered = body.lower()
    detail = f"HTTP {status}: {body[:DETAIL_LIMIT]}"
    if any(marker in lowered for marker in INSUFFICIENT_BALANCE_MARKERS):
        return Outcome.BUSY, f"Insufficient balance at provider ({detail})"
    if status in BUSY_STATUS_CODES or any(marker in lowered for marker in BUSY_MARKERS):
        return Outcome.BUSY, detail
    return Outcome.HARD_ERROR, detail


@dataclass
class AttemptRecord:
    """
    One provider attempt, success or failure.

    ``stage`` is "auth" when the attempt failed before any HTTP call.
    """

    provider: Provider
    outcome: Outcome
    started_at: float
    finished_at: float
    attempt_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    error_detail: Optional[str] = None
    status_code: Optional[int] = None
    payload: Any = None
    usage: Usage = field(default_factory=Usage)
    stage: str = "execute"
    request_id: Optional[str] = None

    @property
    def latency(self) -> float:
        return self.finished_at - self.started_at

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @classmethod
    def from_error(
        cls,
        provider: Provider,
        error: ProviderError,
        started_at: float,
        stage: str,
        request_id: Optional[str] = None,
    ) -> "AttemptRecord":
        return cls(
            provider=provider,
            outcome=Outcome(error.outcome),
            started_at=started_at,
            finished_at=time.time(),
            error_detail=str(error),
            status_code=error.status_code,
            stage=stage,
            request_id=request_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "request_id": self.request_id,
            "provider": self.provider.address,
            "endpoint": self.provider.endpoint,
            "stage": self.stage,
            "outcome": self.outcome.value,
            "status_code": self.status_code,
            "error_detail": self.error_detail,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "latency": round(self.latency, 3),
            "usage": self.usage.to_dict(),
        }


class InferenceExecutor:
    """
    Executes chat completions against provider endpoints.

    [USAGE]
        executor = InferenceExecutor(default_timeout=20)
        record = await executor.execute(provider, auth_header, request)
        await executor.close()
    """

    def __init__(self, default_timeout: float = 20.0, session: Optional[aiohttp.ClientSession] = None):
        self.default_timeout = default_timeout
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def execute(
        self,
        provider: Provider,
        auth_header,
        request: ChatRequest,
        timeout: Optional[float] = None,
    ) -> AttemptRecord:
        """
        Run one attempt. Provider failures come back as the record's outcome.

        Raises:
            HeaderReuseError: ``auth_header`` was already used
        """
        headers = {"Content-Type": "application/json"}
        headers.update(auth_header.consume())

        timeout = timeout if timeout is not None else self.default_timeout
        url = f"{provider.endpoint.rstrip('/')}/chat/completions"
        body = request.completion_body(provider.model or request.model or "")
        started_at = time.time()

        try:
            status, text = await asyncio.wait_for(self._post(url, body, headers), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[EXECUTOR] {provider.address} timed out after {timeout}s")
            return self._record(provider, Outcome.TIMEOUT, started_at, request,
                                error_detail=f"Timed out after {timeout}s")
        except aiohttp.ClientError as e:
            logger.warning(f"[EXECUTOR] {provider.address} unreachable: {e}")
            return self._record(provider, Outcome.BUSY, started_at, request,
                                error_detail=f"Provider unreachable: {e}")

        outcome, result = classify(status, text)
        if outcome is Outcome.SUCCESS:
            usage = Usage.from_payload(result)
            logger.info(
                f"[EXECUTOR] {provider.address} answered in {time.time() - started_at:.2f}s "
                f"({usage.total_tokens} tokens)"
            )
            return self._record(provider, outcome, started_at, request,
                                status_code=status, payload=result, usage=usage)

        if outcome is Outcome.HARD_ERROR:
            logger.error(f"[EXECUTOR] {provider.address} hard error: {result}")
        else:
            logger.warning(f"[EXECUTOR] {provider.address} busy: {result}")
        return self._record(provider, outcome, started_at, request,
                            status_code=status, error_detail=result)

    async def _post(self, url: str, body: Dict[str, Any], headers: Dict[str, str]) -> Tuple[int, str]:
        session = await self._get_session()
        async with session.post(url, json=body, headers=headers) as response:
            # Providers are not trusted to send valid UTF-8
            raw = await response.read()
            return response.status, raw.decode("utf-8", errors="replace")

    @staticmethod
    def _record(
        provider: Provider,
        outcome: Outcome,
        started_at: float,
        request: ChatRequest,
        **kwargs: Any,
    ) -> AttemptRecord:
        return AttemptRecord(
            provider=provider,
            outcome=outcome,
            started_at=started_at,
            finished_at=time.time(),
            request_id=request.request_id,
            **kwargs,
        )
