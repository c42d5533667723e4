"""
Response Attestation
====================

[VERIFY] Providers running inside a trusted execution environment sign
every chat completion. The signature is published at

    GET {endpoint}/signature/{chat_id}  ->  {"text": ..., "signature": ...}

and must recover to the provider's registered signer address.

[NON-BLOCKING] Verification never turns a successful answer into a failure:
any problem yields ``verified=False`` on the response.
"""

import asyncio
import logging
from typing import Any, Optional

import aiohttp
from eth_account import Account
from eth_account.messages import encode_defunct

from ..discovery import Provider, Verifiability
from ..errors import VerificationFailed

logger = logging.getLogger(__name__)


class SignatureVerificationBackend:
    """Checks provider signatures over completed chats."""

    def __init__(self, session: Optional[aiohttp.ClientSession] = None, timeout: float = 10.0):
        self._session = session
        self._owns_session = session is None
        self.timeout = timeout

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def verify(self, provider: Provider, raw_response: Any, attempt_id: str) -> bool:
        """
        Raises:
            VerificationFailed: no chat id, no signer, fetch or recovery error
        """
        chat_id = raw_response.get("id") if isinstance(raw_response, dict) else None
        if not chat_id:
            raise VerificationFailed("Response carries no chat id")
        if not provider.signer_address:
            raise VerificationFailed(f"No signer address known for {provider.address}")

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        url = f"{provider.endpoint.rstrip('/')}/signature/{chat_id}"
        params = {"model": provider.model} if provider.model else None
        try:
            async with self._session.get(
                url, params=params, timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if response.status != 200:
                    raise VerificationFailed(f"Signature fetch returned HTTP {response.status}")
                data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise VerificationFailed(f"Signature fetch failed: {e}")

        text = data.get("text") if isinstance(data, dict) else None
        signature = data.get("signature") if isinstance(data, dict) else None
        if not text or not signature:
            raise VerificationFailed("Signature document incomplete")

        try:
            signer = Account.recover_message(encode_defunct(text=text), signature=signature)
        except Exception as e:
            raise VerificationFailed(f"Cannot recover signer: {e}")

        matches = signer.lower() == provider.signer_address.lower()
        logger.debug(f"[VERIFY] attempt {attempt_id}: signer {signer} matches={matches}")
        return matches


class ResponseVerifier:
    """Wraps a verification backend so that it never raises."""

    def __init__(self, backend: Any = None, timeout: float = 10.0):
        self.backend = backend
        self.timeout = timeout

    async def verify(self, provider: Provider, raw_response: Any, attempt_id: str = "") -> Optional[bool]:
        """
        Returns:
            None for providers without verifiability, else True / False
        """
        if provider.verifiability is Verifiability.NONE:
            return None
        if self.backend is None:
            logger.warning(f"[VERIFY] No verification backend, {provider.address} unverified")
            return False

        try:
            result = await asyncio.wait_for(
                self.backend.verify(provider, raw_response, attempt_id), self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"[VERIFY] Verification of {provider.address} timed out")
            return False
        except Exception as e:
            logger.warning(f"[VERIFY] Verification of {provider.address} failed: {e}")
            return False

        if not result:
            logger.warning(f"[VERIFY] Response from {provider.address} did not verify")
        return bool(result)
