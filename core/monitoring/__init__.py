"""
Monitoring Module
=================

[COMPONENTS]
- StatusReporter: ledger and discovery checks
- ServiceStatus: aggregated router status
"""

from .health import (
    HealthStatus,
    ComponentHealth,
    ServiceStatus,
    StatusReporter,
)

__all__ = [
    "HealthStatus",
    "ComponentHealth",
    "ServiceStatus",
    "StatusReporter",
]
