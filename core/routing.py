"""
Provider Prioritizer
====================

[ORDER] Candidate order for one request, fixed before the first attempt:

1. the caller's preferred provider, if discovery returned it
2. known-good providers by rank (ties keep discovery order)
3. every other discovered provider, in discovery order

The output is a pure function of its inputs; nothing is reordered while a
request fails over.
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence

from .discovery import Provider

logger = logging.getLogger(__name__)


class ProviderPrioritizer:
    """Orders providers using the known-good rank table."""

    def __init__(self, rank_table: Optional[Mapping[str, int]] = None):
        """
        Args:
            rank_table: address -> rank (lower is tried first)
        """
        self.rank_table: Dict[str, int] = {
            address.lower(): rank for address, rank in (rank_table or {}).items()
        }

    def rank_of(self, address: str) -> Optional[int]:
        return self.rank_table.get(address.lower())

    def order(
        self,
        discovered: Sequence[Provider],
        preferred: Optional[str] = None,
    ) -> List[Provider]:
        """Return a new list; every Provider carries its table rank or None."""
        ranked_all = [p.with_rank(self.rank_of(p.address)) for p in discovered]

        head: List[Provider] = []
        rest = ranked_all
        if preferred:
            for i, provider in enumerate(ranked_all):
                if provider.same_address(preferred):
                    head = [provider]
                    rest = ranked_all[:i] + ranked_all[i + 1:]
                    break
            else:
                logger.info(f"[ROUTER] Preferred provider {preferred} not among discovered providers")

        # sorted() is stable, equal ranks keep discovery order
        known = sorted((p for p in rest if p.priority_rank is not None), key=lambda p: p.priority_rank)
        unknown = [p for p in rest if p.priority_rank is None]
        return head + known + unknown
