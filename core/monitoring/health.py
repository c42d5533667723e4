"""
Service Status
==============

[HEALTH] Reports whether the router can serve requests:

- ledger:    balance readable over RPC
- discovery: serving contract answers with at least one provider

Each check is bounded by a timeout and reported as a ComponentHealth. An
unconfigured router (no signing key) reports UNHEALTHY without touching the
network.
"""

import asyncio
import time
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Dict, List, Any
from enum import Enum

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus
    message: str = ""
    last_check: float = field(default_factory=time.time)
    response_time_ms: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "last_check": self.last_check,
            "response_time_ms": self.response_time_ms,
            "details": self.details,
        }


@dataclass
class ServiceStatus:
    is_configured: bool
    has_private_key: bool
    available_providers: int = 0
    balance: Optional[str] = None
    network: Optional[str] = None
    error: Optional[str] = None
    components: List[ComponentHealth] = field(default_factory=list)

    @property
    def status(self) -> HealthStatus:
        if not self.is_configured:
            return HealthStatus.UNHEALTHY
        if not self.components:
            return HealthStatus.UNKNOWN
        if all(c.status is HealthStatus.HEALTHY for c in self.components):
            return HealthStatus.HEALTHY
        return HealthStatus.DEGRADED

    @classmethod
    def unconfigured(cls, error: str, has_private_key: bool = False) -> "ServiceStatus":
        return cls(is_configured=False, has_private_key=has_private_key, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "is_configured": self.is_configured,
            "has_private_key": self.has_private_key,
            "available_providers": self.available_providers,
            "balance": self.balance,
            "network": self.network,
            "error": self.error,
            "components": [c.to_dict() for c in self.components],
        }


class StatusReporter:
    """
    Runs the status checks.

    [USAGE]
        reporter = StatusReporter(ledger_contract, directory, network="0G Galileo Testnet")
        status = await reporter.get_status()
    """

    def __init__(
        self,
        ledger_backend: Any,
        directory: Any,
        network: Optional[str] = None,
        token_symbol: str = "OG",
        timeout: float = 10.0,
    ):
        self.ledger_backend = ledger_backend
        self.directory = directory
        self.network = network
        self.token_symbol = token_symbol
        self.timeout = timeout

    async def check_ledger(self) -> ComponentHealth:
        start = time.time()
        try:
            balance = await asyncio.wait_for(self.ledger_backend.get_balance(), self.timeout)
        except asyncio.TimeoutError:
            return ComponentHealth(
                name="ledger",
                status=HealthStatus.UNHEALTHY,
                message=f"Balance read timed out after {self.timeout}s",
                response_time_ms=(time.time() - start) * 1000,
            )
        except Exception as e:
            logger.warning(f"[LEDGER] Status balance check failed: {e}")
            return ComponentHealth(
                name="ledger",
                status=HealthStatus.UNHEALTHY,
                message=str(e),
                response_time_ms=(time.time() - start) * 1000,
            )

        amount = Decimal(balance) / Decimal(10**18)
        return ComponentHealth(
            name="ledger",
            status=HealthStatus.HEALTHY,
            message=f"{amount:.3f} {self.token_symbol}",
            response_time_ms=(time.time() - start) * 1000,
            details={"balance": str(balance)},
        )

    async def check_discovery(self) -> ComponentHealth:
        start = time.time()
        try:
            providers = await asyncio.wait_for(self.directory.list_providers(), self.timeout)
        except asyncio.TimeoutError:
            return ComponentHealth(
                name="discovery",
                status=HealthStatus.UNHEALTHY,
                message=f"Discovery timed out after {self.timeout}s",
                response_time_ms=(time.time() - start) * 1000,
            )
        except Exception as e:
            logger.warning(f"[REGISTRY] Status discovery check failed: {e}")
            return ComponentHealth(
                name="discovery",
                status=HealthStatus.UNHEALTHY,
                message=str(e),
                response_time_ms=(time.time() - start) * 1000,
            )

        return ComponentHealth(
            name="discovery",
            status=HealthStatus.HEALTHY if providers else HealthStatus.DEGRADED,
            message=f"{len(providers)} providers",
            response_time_ms=(time.time() - start) * 1000,
            details={"count": len(providers)},
        )

    async def get_status(self) -> ServiceStatus:
        ledger, discovery = await asyncio.gather(self.check_ledger(), self.check_discovery())
        return ServiceStatus(
            is_configured=True,
            has_private_key=True,
            available_providers=discovery.details.get("count", 0),
            balance=ledger.message if ledger.status is HealthStatus.HEALTHY else None,
            network=self.network,
            components=[ledger, discovery],
        )
