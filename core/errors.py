"""
Routing Errors
==============

[ERRORS] Taxonomy of the inference routing layer:

- ConfigurationError    fatal, raised before any routing
- DiscoveryDegraded     non-fatal, registry falls back to the static table
- ProviderBusy          retriable: 429/503/504, overload markers, timeout,
                        insufficient per-provider balance, unreachable
- ProviderHardError     retriable but logged loudly: other non-2xx, parse
                        errors, authentication failures
- LedgerError           balance read / top-up failures
- VerificationFailed    non-fatal, response returned with verified=False
- AllProvidersExhausted terminal for one request

[PROPAGATION] Provider-level errors never leave the failover loop: they are
turned into AttemptRecords. Only ConfigurationError and the exhausted
decision reach the caller.
"""

from typing import Any, Optional, Sequence


class RoutingError(Exception):
    """Base class for every error raised by the routing layer."""


class ConfigurationError(RoutingError):
    """Missing credential / RPC endpoint or malformed configuration."""


class DiscoveryDegraded(RoutingError):
    """Discovery timed out, failed or returned nothing usable."""


class ProviderError(RoutingError):
    """
    Failure attributable to one provider.

    Every provider error is retriable against the next candidate.
    ``outcome`` is the Outcome value the failover loop records.
    """

    retriable = True
    outcome = "hard_error"

    def __init__(
        self,
        message: str,
        provider_address: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.provider_address = provider_address
        self.status_code = status_code


class ProviderBusy(ProviderError):
    """Provider overloaded, rate limited, out of balance or unreachable."""

    outcome = "busy"


class ProviderTimeout(ProviderBusy):
    """Provider did not answer within the per-attempt timeout."""

    outcome = "timeout"


class ProviderHardError(ProviderError):
    """Unexpected non-2xx status or malformed response body."""

    outcome = "hard_error"


class AuthenticationFailed(ProviderHardError):
    """Handshake or header issuance failed for this attempt."""


class HeaderReuseError(AuthenticationFailed):
    """An auth header was presented for a second HTTP call."""


class LedgerError(RoutingError):
    """Ledger RPC failure (balance read, deposit, account creation)."""


class VerificationFailed(RoutingError):
    """Response authenticity could not be established."""


class AllProvidersExhausted(RoutingError):
    """Every candidate provider failed for one request."""

    def __init__(self, message: str, attempts: Sequence[Any] = ()):
        super().__init__(message)
        self.attempts = tuple(attempts)
