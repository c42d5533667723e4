"""
Core Routing Module
===================
Building blocks of the inference routing layer:
- Discovery: provider list with static fallback
- Routing: candidate ordering
- Security: single-use request auth, response attestation
- Transport: bounded HTTP execution and outcome classification
- Context: wiring of all components (core.context.build_context)

Submodules are imported explicitly; this package stays import-light so that
config.py can depend on core.errors.
"""

from .errors import (
    RoutingError,
    ConfigurationError,
    DiscoveryDegraded,
    ProviderError,
    ProviderBusy,
    ProviderTimeout,
    ProviderHardError,
    AuthenticationFailed,
    HeaderReuseError,
    LedgerError,
    VerificationFailed,
    AllProvidersExhausted,
)

__all__ = [
    "RoutingError",
    "ConfigurationError",
    "DiscoveryDegraded",
    "ProviderError",
    "ProviderBusy",
    "ProviderTimeout",
    "ProviderHardError",
    "AuthenticationFailed",
    "HeaderReuseError",
    "LedgerError",
    "VerificationFailed",
    "AllProvidersExhausted",
]
