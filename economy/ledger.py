"""
Balance Ledger Client
=====================

[LEDGER] Wraps the router's prepaid compute balance. Providers debit it per
request, so ``ensure_funds()`` runs before every routed request:

    read balance -> below minimum? -> top up -> re-read

[DEGRADATION] Ledger trouble never aborts a request:
- balance read fails  -> last known balance (memory, then local snapshot),
                         else assume exactly the minimum
- top-up fails        -> proceed without a funds guarantee; providers
                         answer "insufficient balance" and the executor
                         fails over
- re-read fails       -> known balance + deposited amount

[CONCURRENCY] Concurrent requests share one LedgerAccount. With
``serialize=True`` funding runs under an asyncio.Lock, so two requests that
both see a low balance trigger a single top-up.
"""

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from core.errors import LedgerError
from core.events import FUNDS_TOPPED_UP

logger = logging.getLogger(__name__)


@dataclass
class LedgerAccount:
    """
    Router's view of its prepaid account.

    ``stale`` is set when ``total_balance`` was not confirmed by the ledger
    on the last read (snapshot, assumption or estimate after a top-up).
    """

    owner_address: str
    total_balance: int = 0
    min_threshold: int = 0
    updated_at: float = 0.0
    stale: bool = True

    @property
    def is_known(self) -> bool:
        return self.updated_at > 0

    @property
    def is_sufficient(self) -> bool:
        return self.total_balance >= self.min_threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_address": self.owner_address,
            "total_balance": str(self.total_balance),
            "min_threshold": str(self.min_threshold),
            "updated_at": self.updated_at,
            "stale": self.stale,
        }


@dataclass
class FundingResult:
    """Result of ``ensure_funds``. ``degraded`` means funds are not guaranteed."""

    balance: int
    top_up_performed: bool = False
    degraded: bool = False
    error: Optional[str] = None
    tx_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "balance": str(self.balance),
            "top_up_performed": self.top_up_performed,
            "degraded": self.degraded,
            "error": self.error,
            "tx_id": self.tx_id,
        }


class BalanceLedgerClient:
    """
    Keeps the prepaid balance above the configured minimum.

    ``backend`` is the ledger interface: ``get_balance()``, ``top_up(amount)``
    and, for ``add_funds``, ``account_exists()`` / ``create_account(amount)``
    (see ``economy.chain.ComputeLedgerContract``).
    """

    def __init__(
        self,
        backend: Any,
        owner_address: str,
        min_balance: int,
        topup_amount: int,
        read_timeout: float = 15.0,
        topup_timeout: float = 60.0,
        store: Any = None,
        bus: Any = None,
        serialize: bool = True,
    ):
        self.backend = backend
        self.min_balance = min_balance
        self.topup_amount = topup_amount
        self.read_timeout = read_timeout
        self.topup_timeout = topup_timeout
        self.store = store
        self.bus = bus
        self.serialize = serialize

        self.account = LedgerAccount(owner_address=owner_address, min_threshold=min_balance)
        self._lock = asyncio.Lock()

    async def ensure_funds(self, min_amount: Optional[int] = None) -> FundingResult:
        """
        Make sure the balance covers ``min_amount`` (default: configured
        minimum). Never raises for ledger failures.
        """
        threshold = self.min_balance if min_amount is None else min_amount
        guard = self._lock if self.serialize else contextlib.nullcontext()
        async with guard:
            return await self._ensure_funds(threshold)

    async def _ensure_funds(self, threshold: int) -> FundingResult:
        balance = await self._read_balance()
        degraded = False
        if balance is None:
            balance = await self._last_known_balance(threshold)
            degraded = True

        if balance >= threshold:
            return FundingResult(balance=balance, degraded=degraded)

        logger.info(
            f"[LEDGER] Balance {balance} below minimum {threshold}, "
            f"topping up {self.topup_amount}"
        )
        try:
            result = await asyncio.wait_for(self.backend.top_up(self.topup_amount), self.topup_timeout)
        except asyncio.TimeoutError:
            return self._topup_failed(balance, f"Top-up timed out after {self.topup_timeout}s")
        except Exception as e:
            return self._topup_failed(balance, f"Top-up failed: {e}")

        if not result.success:
            return self._topup_failed(balance, f"Top-up failed: {result.error}")

        new_balance = await self._read_balance()
        if new_balance is None:
            new_balance = balance + self.topup_amount
            # An assumed starting balance stays unknown after the estimate
            self._remember(new_balance, stale=True, updated_at=None if self.account.is_known else 0.0)

        if self.bus is not None:
            await self.bus.broadcast(FUNDS_TOPPED_UP, {
                "amount": str(self.topup_amount),
                "tx_id": result.tx_id,
                "balance": str(new_balance),
            })

        logger.info(f"[LEDGER] Topped up, balance now {new_balance} (tx {result.tx_id})")
        return FundingResult(
            balance=new_balance,
            top_up_performed=True,
            degraded=self.account.stale,
            tx_id=result.tx_id,
        )

    def _topup_failed(self, balance: int, error: str) -> FundingResult:
        logger.warning(f"[LEDGER] {error}; proceeding without funds guarantee")
        return FundingResult(balance=balance, degraded=True, error=error)

    async def refresh(self) -> Optional[int]:
        """Re-read the balance; returns None when the read fails."""
        return await self._read_balance()

    async def add_funds(self, amount: int):
        """
        Deposit ``amount``, creating the ledger account when missing.

        Raises:
            LedgerError: deposit failed
        """
        if amount <= 0:
            raise LedgerError("Amount must be > 0")

        if await self.backend.account_exists():
            result = await self.backend.top_up(amount)
        else:
            logger.info("[LEDGER] No ledger account yet, creating one")
            result = await self.backend.create_account(amount)

        if not result.success:
            raise LedgerError(result.error or "Deposit failed")

        await self._read_balance()
        return result

    async def _read_balance(self) -> Optional[int]:
        try:
            balance = await asyncio.wait_for(self.backend.get_balance(), self.read_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[LEDGER] Balance read timed out after {self.read_timeout}s")
            return None
        except Exception as e:
            logger.warning(f"[LEDGER] Balance read failed: {e}")
            return None

        self._remember(balance, stale=False)
        if self.store is not None and self.store.is_open:
            try:
                await self.store.save_balance(self.account.owner_address, balance)
            except Exception as e:
                logger.warning(f"[STORE] Could not save balance snapshot: {e}")
        return balance

    async def _last_known_balance(self, threshold: int) -> int:
        if self.account.is_known:
            logger.warning(f"[LEDGER] Using last known balance {self.account.total_balance}")
            self.account.stale = True
            return self.account.total_balance

        if self.store is not None and self.store.is_open:
            try:
                snapshot = await self.store.load_balance(self.account.owner_address)
            except Exception as e:
                logger.warning(f"[STORE] Could not load balance snapshot: {e}")
                snapshot = None
            if snapshot is not None:
                balance, updated_at = snapshot
                logger.warning(f"[LEDGER] Using balance snapshot {balance} from {updated_at:.0f}")
                self._remember(balance, stale=True, updated_at=updated_at)
                return balance

        logger.warning(f"[LEDGER] Balance unknown, assuming minimum {threshold}")
        self._remember(threshold, stale=True, updated_at=0.0)
        return threshold

    def _remember(self, balance: int, stale: bool, updated_at: Optional[float] = None) -> None:
        self.account.total_balance = balance
        self.account.stale = stale
        self.account.updated_at = updated_at if updated_at is not None else time.time()
