"""
Security Module
===============

[COMPONENTS]
- RequestAuthenticator: handshake + single-use signed headers
- SignedHeaderIssuer: EIP-191 header signing with the router wallet
- ResponseVerifier: non-blocking response attestation
"""

from .auth import (
    AuthHeader,
    SignedHeaderIssuer,
    OnChainAcknowledger,
    RequestAuthenticator,
)

from .attestation import (
    ResponseVerifier,
    SignatureVerificationBackend,
)

__all__ = [
    "AuthHeader",
    "SignedHeaderIssuer",
    "OnChainAcknowledger",
    "RequestAuthenticator",
    "ResponseVerifier",
    "SignatureVerificationBackend",
]
