"""
0G Compute Chain Adapters
=========================

[CHAIN] web3 bindings for the two contracts the router consumes:

- Ledger contract:  prepaid balance of the router wallet
  (``getLedger``, ``depositFund``, ``addLedger``)
- Serving contract: registry of inference services
  (``getAllServices``, ``acknowledgeProviderSigner``)

[ASYNC] web3's HTTPProvider is blocking. Every RPC goes through
``asyncio.to_thread`` and is bounded with ``asyncio.wait_for`` so a hanging
node never stalls the failover loop.

[USAGE]
    ledger = ComputeLedgerContract(config.chain, private_key)
    balance = await ledger.get_balance()
    result = await ledger.top_up(to_units("0.1"))
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, TypeVar

from eth_account import Account

from core.errors import ConfigurationError, LedgerError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Lazy import
Web3 = None


def _ensure_web3():
    global Web3
    if Web3 is None:
        from web3 import Web3 as _Web3
        Web3 = _Web3
    return Web3


# ============================================================================
# Contract ABIs (only the functions the router calls)
# ============================================================================

LEDGER_ABI = [
    {
        "inputs": [{"name": "user", "type": "address"}],
        "name": "getLedger",
        "outputs": [{
            "components": [
                {"name": "user", "type": "address"},
                {"name": "availableBalance", "type": "uint256"},
                {"name": "totalBalance", "type": "uint256"},
                {"name": "additionalInfo", "type": "string"},
            ],
            "type": "tuple",
        }],
        "stateMutability": "view",
        "type": "function",
    },
    {"inputs": [{"name": "additionalInfo", "type": "string"}], "name": "addLedger", "outputs": [], "stateMutability": "payable", "type": "function"},
    {"inputs": [], "name": "depositFund", "outputs": [], "stateMutability": "payable", "type": "function"},
]

SERVING_ABI = [
    {
        "inputs": [],
        "name": "getAllServices",
        "outputs": [{
            "components": [
                {"name": "provider", "type": "address"},
                {"name": "serviceType", "type": "string"},
                {"name": "url", "type": "string"},
                {"name": "inputPrice", "type": "uint256"},
                {"name": "outputPrice", "type": "uint256"},
                {"name": "updatedAt", "type": "uint256"},
                {"name": "model", "type": "string"},
                {"name": "verifiability", "type": "string"},
                {"name": "teeSignerAddress", "type": "address"},
            ],
            "type": "tuple[]",
        }],
        "stateMutability": "view",
        "type": "function",
    },
    {"inputs": [{"name": "provider", "type": "address"}], "name": "acknowledgeProviderSigner", "outputs": [], "stateMutability": "nonpayable", "type": "function"},
]

SERVICE_FIELDS = (
    "provider",
    "serviceType",
    "url",
    "inputPrice",
    "outputPrice",
    "updatedAt",
    "model",
    "verifiability",
    "teeSignerAddress",
)


@dataclass
class TopUpResult:
    """Outcome of a deposit. ``tx_id`` on success, ``error`` otherwise."""
    success: bool
    amount: int = 0
    tx_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "amount": str(self.amount),
            "tx_id": self.tx_id,
            "error": self.error,
        }


# ============================================================================
# Base client
# ============================================================================

class ChainClient:
    """
    Shared web3 plumbing: connection, signing account, bounded calls and
    transaction submission.

    Construction performs no RPC. ``w3`` may be injected (tests).
    """

    def __init__(self, chain, private_key: str, w3: Any = None):
        """
        Args:
            chain: ChainConfig (rpc_url, chain_id, timeouts)
            private_key: Router wallet key
            w3: Pre-built Web3 instance
        """
        if not private_key:
            raise ConfigurationError("Private key required for chain access")

        self.chain = chain
        self.account = Account.from_key(private_key)
        self.address = self.account.address

        if w3 is None:
            Web3 = _ensure_web3()
            from web3.middleware import ExtraDataToPOAMiddleware
            w3 = Web3(Web3.HTTPProvider(chain.rpc_url, request_kwargs={"timeout": chain.rpc_timeout}))
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self.w3 = w3

    def _contract(self, address: str, abi: List[Dict[str, Any]]) -> Any:
        Web3 = _ensure_web3()
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    async def _call(self, fn: Callable[[], T], timeout: Optional[float] = None) -> T:
        """Run a blocking web3 call in a worker thread with a deadline."""
        return await asyncio.wait_for(
            asyncio.to_thread(fn),
            timeout=timeout if timeout is not None else self.chain.rpc_timeout,
        )

    def _transact(self, contract_fn: Any, value: int = 0) -> str:
        """Build, sign, send and confirm one transaction. Blocking."""
        Web3 = _ensure_web3()
        tx = contract_fn.build_transaction({
            "from": self.address,
            "value": value,
            "nonce": self.w3.eth.get_transaction_count(self.address),
            "gasPrice": self.w3.eth.gas_price,
            "chainId": self.chain.chain_id,
        })

        signed = self.account.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.chain.tx_timeout)

        tx_id = Web3.to_hex(tx_hash)
        if receipt["status"] != 1:
            raise LedgerError(f"Transaction reverted: {tx_id}")
        return tx_id

    @staticmethod
    def from_units(amount: int) -> Decimal:
        """Convert smallest units to OG."""
        return Decimal(amount) / Decimal(10**18)


# ============================================================================
# Ledger contract
# ============================================================================

class ComputeLedgerContract(ChainClient):
    """
    Prepaid compute balance of the router wallet.

    Implements the ledger interface consumed by BalanceLedgerClient:
    ``get_balance() -> int`` and ``top_up(amount) -> TopUpResult``.
    """

    def __init__(self, chain, private_key: str, w3: Any = None):
        super().__init__(chain, private_key, w3)
        self.contract = self._contract(chain.ledger_contract, LEDGER_ABI)

    async def get_balance(self) -> int:
        """
        Total ledger balance in smallest units.

        Raises:
            LedgerError: RPC failure, timeout or missing ledger account
        """
        try:
            ledger = await self._call(lambda: self.contract.functions.getLedger(self.address).call())
        except asyncio.TimeoutError:
            raise LedgerError(f"Balance read timed out after {self.chain.rpc_timeout}s")
        except Exception as e:
            raise LedgerError(f"Balance read failed: {e}")

        # (user, availableBalance, totalBalance, additionalInfo)
        return int(ledger[2])

    async def account_exists(self) -> bool:
        try:
            await self.get_balance()
            return True
        except LedgerError as e:
            if "timed out" in str(e):
                raise
            return False

    async def top_up(self, amount: int) -> TopUpResult:
        """Deposit ``amount`` into the existing ledger account."""
        return await self._submit("depositFund", amount, lambda: self.contract.functions.depositFund())

    async def create_account(self, amount: int, additional_info: str = "") -> TopUpResult:
        """Create the ledger account with an initial deposit."""
        return await self._submit(
            "addLedger", amount, lambda: self.contract.functions.addLedger(additional_info)
        )

    async def _submit(self, name: str, amount: int, build: Callable[[], Any]) -> TopUpResult:
        if amount <= 0:
            return TopUpResult(success=False, amount=amount, error="Amount must be > 0")
        try:
            tx_id = await self._call(
                lambda: self._transact(build(), value=amount),
                timeout=self.chain.tx_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[CHAIN] {name} timed out after {self.chain.tx_timeout}s")
            return TopUpResult(success=False, amount=amount, error=f"{name} timed out")
        except Exception as e:
            logger.warning(f"[CHAIN] {name} failed: {e}")
            return TopUpResult(success=False, amount=amount, error=str(e))

        logger.info(f"[CHAIN] {name} {self.from_units(amount)} {self.chain.token_symbol}: {tx_id}")
        return TopUpResult(success=True, amount=amount, tx_id=tx_id)


# ============================================================================
# Serving contract
# ============================================================================

class ServingContract(ChainClient):
    """Registry of inference services offered on the marketplace."""

    def __init__(self, chain, private_key: str, w3: Any = None):
        super().__init__(chain, private_key, w3)
        self.contract = self._contract(chain.serving_contract, SERVING_ABI)

    async def list_services(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """
        All registered services as plain dicts keyed by SERVICE_FIELDS.

        Raises:
            asyncio.TimeoutError: RPC exceeded ``timeout``
        """
        raw = await self._call(lambda: self.contract.functions.getAllServices().call(), timeout)
        services = []
        for entry in raw:
            if isinstance(entry, dict):
                services.append({name: entry.get(name) for name in SERVICE_FIELDS})
            else:
                services.append(dict(zip(SERVICE_FIELDS, entry)))
        return services

    async def acknowledge_provider(self, provider_address: str, timeout: Optional[float] = None) -> str:
        """Acknowledge a provider's signing identity. Returns tx hash."""
        Web3 = _ensure_web3()
        provider = Web3.to_checksum_address(provider_address)
        tx_id = await self._call(
            lambda: self._transact(self.contract.functions.acknowledgeProviderSigner(provider)),
            timeout if timeout is not None else self.chain.tx_timeout,
        )
        logger.info(f"[CHAIN] Acknowledged provider {provider}: {tx_id}")
        return tx_id
