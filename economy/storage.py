"""
Router Store
============

[PERSISTENCE] Local aiosqlite database of the router process:

- balance_snapshots: last ledger balance read per wallet, used when the
  ledger RPC is down
- attempts: journal of every provider attempt (outcome, latency, error),
  pruned to the newest ``max_attempts`` rows

The store subscribes to the context EventBus, so the failover loop never
writes to it directly.
"""

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from core.events import ATTEMPT_RECORDED, EventBus

logger = logging.getLogger(__name__)


class RouterStore:
    """Balance snapshots and attempt journal."""

    def __init__(self, db_path: str = "zeroute.db", max_attempts: int = 10000):
        self.db_path = db_path
        self.max_attempts = max_attempts
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._db is not None

    async def initialize(self) -> None:
        """Open the database and create tables if needed."""
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")

        # Balances are stored as TEXT: smallest units overflow INTEGER
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS balance_snapshots (
                owner TEXT PRIMARY KEY,
                balance TEXT NOT NULL,
                updated_at REAL NOT NULL
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS attempts (
                attempt_id TEXT PRIMARY KEY,
                request_id TEXT,
                provider TEXT NOT NULL,
                stage TEXT NOT NULL,
                outcome TEXT NOT NULL,
                status_code INTEGER,
                error_detail TEXT,
                started_at REAL NOT NULL,
                finished_at REAL NOT NULL,
                usage TEXT
            )
        """)
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_attempts_provider ON attempts(provider)"
        )
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_attempts_started ON attempts(started_at)"
        )
        await self._db.commit()
        logger.debug(f"[STORE] Opened {self.db_path}")

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def attach(self, bus: EventBus) -> None:
        """Journal every attempt published on ``bus``."""
        await bus.subscribe(ATTEMPT_RECORDED, self.record_attempt)

    # --- Balance snapshots ---

    async def save_balance(self, owner: str, balance: int) -> None:
        async with self._lock:
            await self._db.execute(
                """
                INSERT INTO balance_snapshots (owner, balance, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(owner) DO UPDATE SET
                    balance = excluded.balance,
                    updated_at = excluded.updated_at
                """,
                (owner.lower(), str(balance), time.time()),
            )
            await self._db.commit()

    async def load_balance(self, owner: str) -> Optional[Tuple[int, float]]:
        """Return ``(balance, updated_at)`` or None."""
        cursor = await self._db.execute(
            "SELECT balance, updated_at FROM balance_snapshots WHERE owner = ?",
            (owner.lower(),),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return int(row[0]), row[1]

    # --- Attempt journal ---

    async def record_attempt(self, record: Dict[str, Any]) -> None:
        """Insert one AttemptRecord.to_dict() payload."""
        async with self._lock:
            await self._db.execute(
                """
                INSERT OR REPLACE INTO attempts
                (attempt_id, request_id, provider, stage, outcome, status_code,
                 error_detail, started_at, finished_at, usage)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record["attempt_id"],
                    record.get("request_id"),
                    record["provider"],
                    record["stage"],
                    record["outcome"],
                    record.get("status_code"),
                    record.get("error_detail"),
                    record["started_at"],
                    record["finished_at"],
                    json.dumps(record.get("usage") or {}),
                ),
            )
            if self.max_attempts:
                await self._prune_attempts()
            await self._db.commit()

    async def _prune_attempts(self) -> None:
        """Drop journal rows beyond the newest ``max_attempts``."""
        cursor = await self._db.execute(
            """
            DELETE FROM attempts WHERE attempt_id NOT IN (
                SELECT attempt_id FROM attempts
                ORDER BY started_at DESC, rowid DESC LIMIT ?
            )
            """,
            (self.max_attempts,),
        )
        if cursor.rowcount > 0:
            logger.debug(f"[STORE] Pruned {cursor.rowcount} old attempts")

    async def get_attempts(
        self,
        provider: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Most recent attempts first."""
        if provider:
            cursor = await self._db.execute(
                """
                SELECT attempt_id, request_id, provider, stage, outcome, status_code,
                       error_detail, started_at, finished_at, usage
                FROM attempts WHERE provider = ?
                ORDER BY started_at DESC LIMIT ?
                """,
                (provider, limit),
            )
        else:
            cursor = await self._db.execute(
                """
                SELECT attempt_id, request_id, provider, stage, outcome, status_code,
                       error_detail, started_at, finished_at, usage
                FROM attempts ORDER BY started_at DESC LIMIT ?
                """,
                (limit,),
            )
        rows = await cursor.fetchall()
        return [
            {
                "attempt_id": row[0],
                "request_id": row[1],
                "provider": row[2],
                "stage": row[3],
                "outcome": row[4],
                "status_code": row[5],
                "error_detail": row[6],
                "started_at": row[7],
                "finished_at": row[8],
                "usage": json.loads(row[9]) if row[9] else {},
            }
            for row in rows
        ]

    async def get_stats(self) -> Dict[str, Any]:
        """Attempt counts per outcome."""
        cursor = await self._db.execute("SELECT outcome, COUNT(*) FROM attempts GROUP BY outcome")
        by_outcome = {row[0]: row[1] for row in await cursor.fetchall()}
        return {
            "total_attempts": sum(by_outcome.values()),
            "by_outcome": by_outcome,
        }
