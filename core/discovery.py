"""
Provider Discovery
==================

[REGISTRY] Finds the inference providers currently offered on the
marketplace. Providers appear and disappear, so the list is fetched again
for every request.

[FALLBACK] Discovery goes through a public RPC node and fails often
(504s, timeouts, empty answers). In every such case the registry returns
the static known-good table instead of raising:

    attempt 1 --error--> wait retry_delay --> attempt 2 --error--> fallback
    empty result / nothing chat-capable -------------------------> fallback

[CACHE] Optional, off by default. Only a genuine non-empty discovery result
is cached, so a fallback answer is never served from cache.
"""

import asyncio
import dataclasses
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .errors import DiscoveryDegraded

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class Verifiability(Enum):
    """Whether a provider's responses can be checked cryptographically."""
    NONE = "none"
    ATTESTED = "attested"

    @classmethod
    def parse(cls, value: Any) -> "Verifiability":
        """Map registry labels ("TeeML", "attested", "") to a member."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        if text in ("attested", "teeml", "tee", "tee-ml"):
            return cls.ATTESTED
        return cls.NONE


@dataclass(frozen=True)
class Provider:
    """
    One inference endpoint on the marketplace.

    ``priority_rank`` comes from the known-good table (None when unranked).
    ``signer_address`` is the execution environment's signing identity used
    to verify responses. Prices are per token in smallest units.
    """

    address: str
    endpoint: str
    model: str
    verifiability: Verifiability = Verifiability.NONE
    priority_rank: Optional[int] = None
    signer_address: str = ""
    input_price: int = 0
    output_price: int = 0
    service_type: str = "chatbot"

    def with_rank(self, rank: Optional[int]) -> "Provider":
        return dataclasses.replace(self, priority_rank=rank)

    def same_address(self, address: Optional[str]) -> bool:
        return bool(address) and self.address.lower() == address.lower()

    @classmethod
    def from_service(cls, service: Mapping[str, Any]) -> "Provider":
        """Build from a serving-contract record (economy.chain.SERVICE_FIELDS)."""
        signer = str(service.get("teeSignerAddress") or "")
        return cls(
            address=str(service["provider"]),
            endpoint=str(service.get("url") or "").rstrip("/"),
            model=str(service.get("model") or ""),
            verifiability=Verifiability.parse(service.get("verifiability")),
            signer_address="" if signer == ZERO_ADDRESS else signer,
            input_price=int(service.get("inputPrice") or 0),
            output_price=int(service.get("outputPrice") or 0),
            service_type=str(service.get("serviceType") or "chatbot"),
        )

    @classmethod
    def from_known(cls, known: Any) -> "Provider":
        """Build from a config.KnownProvider entry."""
        return cls(
            address=known.address,
            endpoint=known.endpoint.rstrip("/"),
            model=known.model,
            verifiability=Verifiability.parse(known.verifiability),
            priority_rank=known.rank,
            signer_address=known.signer_address,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "endpoint": self.endpoint,
            "model": self.model,
            "verifiability": self.verifiability.value,
            "priority_rank": self.priority_rank,
            "signer_address": self.signer_address,
            "input_price": str(self.input_price),
            "output_price": str(self.output_price),
            "service_type": self.service_type,
        }


class OnChainServiceDirectory:
    """Discovery interface backed by the serving contract."""

    def __init__(self, serving_contract: Any):
        self.serving = serving_contract

    async def list_providers(self) -> List[Provider]:
        services = await self.serving.list_services()
        providers = []
        for service in services:
            try:
                providers.append(Provider.from_service(service))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"[REGISTRY] Skipping malformed service record: {e}")
        return providers


class ProviderRegistry:
    """
    Bounded, retried discovery with static fallback.

    ``discover()`` never raises; ``last_error`` holds the DiscoveryDegraded
    reason of the most recent fallback (None after a genuine result).
    """

    def __init__(
        self,
        directory: Any,
        known_providers: Sequence[Any] = (),
        timeout: float = 10.0,
        attempts: int = 2,
        retry_delay: float = 2.0,
        model_pattern: Optional[str] = None,
        cache_ttl: float = 0.0,
    ):
        self.directory = directory
        self.known_providers = list(known_providers)
        self.timeout = timeout
        self.attempts = max(1, attempts)
        self.retry_delay = retry_delay
        self.model_filter = re.compile(model_pattern, re.IGNORECASE) if model_pattern else None
        self.cache_ttl = cache_ttl

        self.last_error: Optional[DiscoveryDegraded] = None
        self._cache: List[Provider] = []
        self._cached_at = 0.0

    @property
    def degraded(self) -> bool:
        return self.last_error is not None

    def fallback_providers(self) -> List[Provider]:
        """Known-good table entries that carry an endpoint, in rank order."""
        entries = sorted(self.known_providers, key=lambda k: k.rank)
        return [Provider.from_known(k) for k in entries if k.endpoint]

    async def discover(self) -> List[Provider]:
        if self.cache_ttl > 0 and self._cache and time.monotonic() - self._cached_at < self.cache_ttl:
            logger.debug(f"[REGISTRY] Serving {len(self._cache)} cached providers")
            return list(self._cache)

        providers: Optional[List[Provider]] = None
        reason = ""
        for attempt in range(1, self.attempts + 1):
            try:
                providers = await asyncio.wait_for(self.directory.list_providers(), self.timeout)
                break
            except asyncio.TimeoutError:
                reason = f"discovery timed out after {self.timeout}s"
            except Exception as e:
                reason = f"discovery failed: {e}"

            logger.warning(f"[REGISTRY] Attempt {attempt}/{self.attempts}: {reason}")
            if attempt < self.attempts:
                await asyncio.sleep(self.retry_delay)

        if providers is None:
            return self._fallback(reason)
        if not providers:
            return self._fallback("discovery returned no providers")

        usable = [p for p in providers if p.endpoint and self._is_chat_model(p.model)]
        if not usable:
            return self._fallback(f"none of {len(providers)} services is chat-capable")

        logger.info(f"[REGISTRY] Discovered {len(usable)} providers ({len(providers)} services)")
        self.last_error = None
        if self.cache_ttl > 0:
            self._cache = list(usable)
            self._cached_at = time.monotonic()
        return usable

    def invalidate(self) -> None:
        self._cache = []
        self._cached_at = 0.0

    def _is_chat_model(self, model: str) -> bool:
        return self.model_filter is None or bool(self.model_filter.search(model or ""))

    def _fallback(self, reason: str) -> List[Provider]:
        self.last_error = DiscoveryDegraded(reason)
        fallback = self.fallback_providers()
        logger.warning(f"[REGISTRY] {reason}; using {len(fallback)} known providers")
        return fallback
