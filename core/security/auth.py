"""
Request Authentication
======================

[AUTH] Every provider call carries a fresh, single-use header set:

    Step A  acknowledge the provider's signing identity (once per process)
    Step B  issue headers bound to (provider, hash of request content, nonce)

[HEADERS] SignedHeaderIssuer produces

    Address       router wallet address
    Fee           total fee offered for this request (smallest units)
    Input-Fee     input part of the fee
    Nonce         strictly increasing per issuer
    Request-Hash  sha256 of the exact request content
    Signature     EIP-191 signature over "provider|request-hash|nonce|fee"

[SINGLE-USE] An AuthHeader is consumed by exactly one HTTP call.
``consume()`` raises HeaderReuseError on a second use, and the authenticator
rejects an issuer that hands out the same header set twice.
"""

import asyncio
import hashlib
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from eth_account import Account
from eth_account.messages import encode_defunct

from ..errors import AuthenticationFailed, HeaderReuseError
from ..logger import redact

logger = logging.getLogger(__name__)

# Remembered header fingerprints
ISSUED_CACHE_SIZE: int = 10000


def content_hash(content: bytes) -> str:
    return "0x" + hashlib.sha256(content).hexdigest()


def signing_payload(provider_address: str, request_hash: str, nonce: int, fee: int) -> str:
    return f"{provider_address.lower()}|{request_hash}|{nonce}|{fee}"


@dataclass
class AuthHeader:
    """Headers for one HTTP call to one provider."""

    provider_address: str
    headers: Dict[str, str]
    content_hash: str
    issued_at: float = field(default_factory=time.time)
    _consumed: bool = field(default=False, repr=False)

    @property
    def consumed(self) -> bool:
        return self._consumed

    @property
    def fingerprint(self) -> str:
        signature = self.headers.get("Signature")
        if signature:
            return signature
        return "|".join(f"{k}={v}" for k, v in sorted(self.headers.items()))

    def consume(self) -> Dict[str, str]:
        """
        Hand out the headers for the one HTTP call they were issued for.

        Raises:
            HeaderReuseError: already consumed
        """
        if self._consumed:
            raise HeaderReuseError(
                "Auth header already used for an HTTP call",
                provider_address=self.provider_address,
            )
        self._consumed = True
        return dict(self.headers)


class SignedHeaderIssuer:
    """Header issuance with the router wallet key."""

    def __init__(self, private_key: str):
        self._account = Account.from_key(private_key)
        self.address = self._account.address
        self._last_nonce = 0
        self._lock = asyncio.Lock()

    def _next_nonce(self) -> int:
        self._last_nonce = max(self._last_nonce + 1, time.time_ns() // 1000)
        return self._last_nonce

    async def issue_headers(
        self,
        provider_address: str,
        content: bytes,
        input_price: int = 0,
        output_price: int = 0,
    ) -> Dict[str, str]:
        # Rough token count, the provider settles the exact fee
        input_fee = input_price * max(1, len(content.split()))
        fee = input_fee

        request_hash = content_hash(content)
        async with self._lock:
            nonce = self._next_nonce()

        message = encode_defunct(text=signing_payload(provider_address, request_hash, nonce, fee))
        signed = self._account.sign_message(message)

        return {
            "Address": self.address,
            "Fee": str(fee),
            "Input-Fee": str(input_fee),
            "Nonce": str(nonce),
            "Request-Hash": request_hash,
            "Signature": "0x" + bytes(signed.signature).hex(),
        }


class OnChainAcknowledger:
    """Acknowledges provider signers through the serving contract."""

    def __init__(self, serving_contract: Any):
        self.serving = serving_contract
        self._acknowledged: Set[str] = set()

    def is_acknowledged(self, provider_address: str) -> bool:
        return provider_address.lower() in self._acknowledged

    async def acknowledge(self, provider_address: str) -> None:
        key = provider_address.lower()
        if key in self._acknowledged:
            return
        await self.serving.acknowledge_provider(provider_address)
        self._acknowledged.add(key)


class RequestAuthenticator:
    """
    Runs the handshake and issues single-use headers for one attempt.

    Any failure raises AuthenticationFailed, which the failover loop treats
    as a hard error for this provider only.
    """

    def __init__(
        self,
        issuer: Any,
        acknowledger: Any = None,
        require_acknowledgement: bool = False,
        timeout: float = 60.0,
    ):
        """
        Args:
            issuer: object with ``issue_headers(provider_address, content, ...)``
            acknowledger: object with ``acknowledge(provider_address)``
            require_acknowledgement: acknowledgement failure blocks issuance
            timeout: bound for each step
        """
        self.issuer = issuer
        self.acknowledger = acknowledger
        self.require_acknowledgement = require_acknowledgement
        self.timeout = timeout
        self._issued: "OrderedDict[str, float]" = OrderedDict()

    async def authenticate(self, provider, request_content: bytes) -> AuthHeader:
        """
        Args:
            provider: discovery.Provider
            request_content: exact bytes the headers are bound to

        Raises:
            AuthenticationFailed: handshake (when required) or issuance failed
        """
        address = provider.address
        if self.acknowledger is not None:
            try:
                await asyncio.wait_for(self.acknowledger.acknowledge(address), self.timeout)
            except Exception as e:
                detail = "timed out" if isinstance(e, asyncio.TimeoutError) else str(e)
                if self.require_acknowledgement:
                    raise AuthenticationFailed(f"Acknowledgement failed: {detail}", provider_address=address)
                logger.warning(f"[AUTH] Acknowledgement of {address} failed ({detail}), continuing")

        try:
            headers = await asyncio.wait_for(
                self.issuer.issue_headers(
                    address,
                    request_content,
                    input_price=provider.input_price,
                    output_price=provider.output_price,
                ),
                self.timeout,
            )
        except asyncio.TimeoutError:
            raise AuthenticationFailed("Header issuance timed out", provider_address=address)
        except Exception as e:
            raise AuthenticationFailed(f"Header issuance failed: {e}", provider_address=address) from e

        if not headers:
            raise AuthenticationFailed("Issuer returned no headers", provider_address=address)

        header = AuthHeader(
            provider_address=address,
            headers={str(k): str(v) for k, v in headers.items()},
            content_hash=content_hash(request_content),
        )
        self._register(header)
        logger.debug(f"[AUTH] Issued headers for {address} (sig {redact(header.fingerprint)})")
        return header

    def _register(self, header: AuthHeader) -> None:
        fingerprint = header.fingerprint
        if fingerprint in self._issued:
            raise HeaderReuseError(
                "Issuer returned a header set that was already issued",
                provider_address=header.provider_address,
            )
        self._issued[fingerprint] = header.issued_at
        while len(self._issued) > ISSUED_CACHE_SIZE:
            self._issued.popitem(last=False)


def recover_signer(provider_address: str, headers: Dict[str, str]) -> Optional[str]:
    """Recover the signing address of a SignedHeaderIssuer header set."""
    try:
        payload = signing_payload(
            provider_address,
            headers["Request-Hash"],
            int(headers["Nonce"]),
            int(headers["Fee"]),
        )
        return Account.recover_message(encode_defunct(text=payload), signature=headers["Signature"])
    except (KeyError, ValueError) as e:
        logger.debug(f"[AUTH] Cannot recover signer: {e}")
        return None
